"""Apply billing provider events to quota state.

Handled events (Stripe names):

* ``checkout.session.completed`` with metadata ``accountId`` and
  ``fiscalYear``. ``kind`` selects the effect: ``subscription``
  (default) activates the fiscal year, ``receipt_pack`` records a pack
  of ``packSize`` receipts.
* ``customer.subscription.deleted`` with the same metadata cancels.

Each applied event is written to the ``billing_events`` ledger in the
same transaction as its effect, so a replayed event is a no-op. Events
missing required metadata are logged and dropped; they never raise.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from fuelrefund.core.config import settings
from fuelrefund.core.observability import sentry_breadcrumb
from fuelrefund.models.tables import ProcessedBillingEvent
from fuelrefund.services.fiscal import is_fiscal_year_label
from fuelrefund.services.quota_service import QuotaService

logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"
HANDLED_EVENTS = (CHECKOUT_COMPLETED, SUBSCRIPTION_DELETED)

KIND_SUBSCRIPTION = "subscription"
KIND_RECEIPT_PACK = "receipt_pack"


@dataclass(frozen=True)
class BillingTarget:
    account_id: int
    fiscal_year: str


def _data_object(event: Dict[str, Any]) -> Dict[str, Any]:
    obj = (event.get("data") or {}).get("object") or {}
    return obj if isinstance(obj, dict) else {}


def _target(event_id: str, metadata: Dict[str, Any]) -> Optional[BillingTarget]:
    raw_account = metadata.get("accountId")
    fiscal_year = metadata.get("fiscalYear")
    try:
        account_id = int(raw_account)
    except (TypeError, ValueError):
        logger.warning("[billing] malformed event %s: accountId=%r", event_id, raw_account)
        return None
    if not isinstance(fiscal_year, str) or not is_fiscal_year_label(fiscal_year):
        logger.warning("[billing] malformed event %s: fiscalYear=%r", event_id, fiscal_year)
        return None
    return BillingTarget(account_id=account_id, fiscal_year=fiscal_year)


def _optional_int(value: Any) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


async def apply_billing_event(db: AsyncSession, event: Dict[str, Any], quota: Optional[QuotaService] = None) -> str:
    """Apply one event and commit. Returns an outcome label.

    Outcomes: ``activated``, ``pack_added``, ``canceled``, the
    ``ignored_*`` / ``duplicate_*`` variants from :class:`QuotaService`,
    ``duplicate`` (already in the ledger), ``unhandled`` and
    ``malformed``.
    """
    quota = quota or QuotaService()
    event_id = event.get("id") if isinstance(event, dict) else None
    event_type = event.get("type", "") if isinstance(event, dict) else ""
    if not event_id:
        logger.warning("[billing] dropping event without id type=%s", event_type)
        return "malformed"
    if event_type not in HANDLED_EVENTS:
        logger.debug("[billing] unhandled event type=%s id=%s", event_type, event_id)
        return "unhandled"

    seen = await db.execute(select(ProcessedBillingEvent.id).where(ProcessedBillingEvent.id == event_id))
    if seen.scalar_one_or_none() is not None:
        logger.info("[billing] duplicate event ignored id=%s", event_id)
        return "duplicate"

    obj = _data_object(event)
    metadata = obj.get("metadata")
    if not isinstance(metadata, dict):
        metadata = {}
    target = _target(event_id, metadata)
    if target is None:
        return "malformed"

    if event_type == CHECKOUT_COMPLETED:
        kind = metadata.get("kind") or KIND_SUBSCRIPTION
        if kind == KIND_RECEIPT_PACK:
            pack_size = _optional_int(metadata.get("packSize")) or settings.RECEIPT_PACK_SIZE
            if pack_size <= 0:
                logger.warning("[billing] malformed event %s: packSize=%r", event_id, metadata.get("packSize"))
                return "malformed"
            reference = obj.get("payment_intent") or obj.get("id") or event_id
            outcome = await quota.add_pack(
                db,
                target.account_id,
                target.fiscal_year,
                receipts_added=pack_size,
                payment_reference=str(reference),
                price_cents=_optional_int(obj.get("amount_total")),
            )
        elif kind == KIND_SUBSCRIPTION:
            outcome = await quota.activate(db, target.account_id, target.fiscal_year)
        else:
            logger.warning("[billing] malformed event %s: kind=%r", event_id, kind)
            return "malformed"
    else:
        outcome = await quota.cancel(db, target.account_id, target.fiscal_year)

    db.add(
        ProcessedBillingEvent(
            id=event_id,
            event_type=event_type,
            account_id=target.account_id,
            fiscal_year=target.fiscal_year,
            outcome=outcome,
        )
    )
    try:
        await db.commit()
    except IntegrityError:
        # Another delivery of the same event committed first
        await db.rollback()
        logger.info("[billing] duplicate event lost commit race id=%s", event_id)
        return "duplicate"
    logger.info(
        "[billing] applied event id=%s type=%s account_id=%s fiscal_year=%s outcome=%s",
        event_id, event_type, target.account_id, target.fiscal_year, outcome,
    )
    sentry_breadcrumb(category="billing", message=f"event:{event_type}", data={"outcome": outcome})
    return outcome
