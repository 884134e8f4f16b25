from __future__ import annotations

import json
import logging
from functools import lru_cache

import redis
import stripe
from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse

from fuelrefund.core.config import get_webhook_secret_list, settings
from fuelrefund.core.observability import sentry_breadcrumb, sentry_set_tags
from fuelrefund.core.tasks import process_billing_event

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])

DEDUP_TTL_SECONDS = 7 * 24 * 3600


@lru_cache(maxsize=1)
def _get_redis_client() -> redis.Redis:
    """Cached Redis client used for the SET NX duplicate marker."""
    return redis.Redis.from_url(settings.REDIS_URL, decode_responses=True)


def _seen_before(event_id: str) -> bool:
    """Best-effort fast path; the ledger in the worker is authoritative."""
    try:
        first = _get_redis_client().set(name=f"billing:webhook:{event_id}", value="1", nx=True, ex=DEDUP_TTL_SECONDS)
    except redis.RedisError as exc:
        logger.warning("[billing] redis dedup check failed: %s", exc)
        return False
    return not first


def _forget(event_id: str) -> None:
    try:
        _get_redis_client().delete(f"billing:webhook:{event_id}")
    except redis.RedisError as exc:
        logger.warning("[billing] could not clear dedup marker id=%s: %s", event_id, exc)


@router.post("/webhooks/stripe")
async def stripe_webhook(request: Request):
    """Verify a Stripe webhook and queue it for the quota ledger.

    Responds 400 when no configured secret matches the signature.
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")
    endpoint_secrets = get_webhook_secret_list()
    if not endpoint_secrets:
        logger.error("STRIPE_WEBHOOK_SECRET not configured")
        raise HTTPException(status_code=500, detail="Webhook not configured")

    verified = False
    last_sig_error: Exception | None = None
    for secret in endpoint_secrets:
        try:
            stripe.Webhook.construct_event(payload=payload, sig_header=sig_header, secret=secret)
            verified = True
            break
        except stripe.SignatureVerificationError as e:
            last_sig_error = e
        except ValueError as e:
            logger.warning("[billing] unparsable webhook payload: %s", e)
            raise HTTPException(status_code=400, detail="Invalid payload")
    if not verified:
        logger.warning("Invalid Stripe signature after trying %d secrets: %s", len(endpoint_secrets), last_sig_error)
        raise HTTPException(status_code=400, detail="Invalid signature")

    event = json.loads(payload)
    event_id = event.get("id")
    event_type = event.get("type", "")
    sentry_set_tags({"billing.event_type": event_type})

    if event_id and _seen_before(event_id):
        logger.info("[billing] duplicate webhook event ignored id=%s", event_id)
        return JSONResponse(status_code=200, content={"received": True, "duplicate": True, "id": event_id})

    sentry_breadcrumb(category="billing", message=f"webhook:{event_type}", data={"id": event_id})
    try:
        process_billing_event.send(event)
    except Exception:
        # Let the provider retry delivery
        if event_id:
            _forget(event_id)
        raise
    return {"received": True, "queued": True}
