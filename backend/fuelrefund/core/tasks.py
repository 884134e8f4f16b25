"""Dramatiq actors for background processing.

Receipt extraction and billing-event handling run outside the request
path. Each actor drives an async service coroutine through
``asyncio.run`` using a worker-local session factory.

Start a worker with:

```bash
dramatiq fuelrefund.worker --processes 1 --threads 4
```

The broker URL is ``DRAMATIQ_BROKER_URL`` (falls back to ``REDIS_URL``).
Set ``DRAMATIQ_BROKER=stub`` to keep messages in memory (tests).
"""

from __future__ import annotations

import asyncio
import logging
from functools import lru_cache
from typing import Optional

import dramatiq
from dramatiq.brokers.redis import RedisBroker
from dramatiq.brokers.stub import StubBroker
from dramatiq.middleware import AgeLimit, CurrentMessage, Retries, ShutdownNotifications, TimeLimit
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fuelrefund.core.config import broker_url, settings
from fuelrefund.services.billing_events import apply_billing_event
from fuelrefund.services.extraction_service import ExtractionService
from fuelrefund.services.storage_service import BlobStore, create_blob_store
from fuelrefund.services.transcription_worker import process_extraction_job, resume_stalled_extractions

logger = logging.getLogger(__name__)


def _has_mw(broker: dramatiq.Broker, mw_cls: type) -> bool:
    return any(isinstance(m, mw_cls) for m in broker.middleware)


def _configure_broker() -> dramatiq.Broker:
    if settings.DRAMATIQ_BROKER.lower() == "stub":
        new_broker: dramatiq.Broker = StubBroker()
        new_broker.emit_after("process_boot")
    else:
        new_broker = RedisBroker(url=broker_url())
    if not _has_mw(new_broker, AgeLimit):
        new_broker.add_middleware(AgeLimit())
    if not _has_mw(new_broker, TimeLimit):
        new_broker.add_middleware(TimeLimit())
    if not _has_mw(new_broker, ShutdownNotifications):
        new_broker.add_middleware(ShutdownNotifications())
    if not _has_mw(new_broker, Retries):
        new_broker.add_middleware(Retries(max_retries=3, min_backoff=5000, max_backoff=60000))
    if not _has_mw(new_broker, CurrentMessage):
        new_broker.add_middleware(CurrentMessage())
    dramatiq.set_broker(new_broker)
    logger.info("Dramatiq broker configured (%s)", type(new_broker).__name__)
    return new_broker


broker = _configure_broker()


@lru_cache(maxsize=1)
def worker_session_factory() -> async_sessionmaker[AsyncSession]:
    from fuelrefund.core.database import create_worker_sessionmaker

    return create_worker_sessionmaker()


@lru_cache(maxsize=1)
def worker_blob_store() -> BlobStore:
    return create_blob_store()


def _current_message_id() -> Optional[str]:
    message = CurrentMessage.get_current_message()
    return message.message_id if message else None


# Enough for the extraction timeout plus storage round trips
EXTRACTION_ACTOR_TIME_LIMIT_MS = int((settings.EXTRACTION_TIMEOUT_SECONDS + 60) * 1000)


@dramatiq.actor(max_retries=3, time_limit=EXTRACTION_ACTOR_TIME_LIMIT_MS)
def extract_receipt(receipt_id: int) -> None:
    """Extract one receipt. Safe to redeliver.

    Extraction failures end as ``failed`` receipts and do not raise;
    only infrastructure errors (database down) propagate and trigger a
    Dramatiq retry.
    """
    status = asyncio.run(
        process_extraction_job(
            worker_session_factory(),
            receipt_id,
            blob_store=worker_blob_store(),
            extractor=ExtractionService(),
            timeout=settings.EXTRACTION_TIMEOUT_SECONDS,
            message_id=_current_message_id(),
            claim_ttl=settings.JOB_STALE_AFTER_SECONDS,
        )
    )
    logger.info("[worker] extract_receipt receipt_id=%s status=%s", receipt_id, getattr(status, "value", status))


def enqueue_extraction(receipt_id: int) -> Optional[str]:
    """Send an extraction message; returns its message id."""
    return extract_receipt.send(receipt_id).message_id


@dramatiq.actor(max_retries=5)
def process_billing_event(event: dict) -> None:
    """Apply a verified billing webhook event. Idempotent via the ledger."""

    async def _run() -> str:
        async with worker_session_factory()() as db:
            return await apply_billing_event(db, event)

    outcome = asyncio.run(_run())
    logger.info("[billing] process_billing_event id=%s outcome=%s", event.get("id"), outcome)


@dramatiq.actor(max_retries=0)
def resume_stale_extractions() -> None:
    """Re-dispatch extraction jobs stuck in queued/running."""
    resumed = asyncio.run(
        resume_stalled_extractions(
            worker_session_factory(),
            enqueue_extraction,
            stale_after_seconds=settings.JOB_STALE_AFTER_SECONDS,
            max_attempts=settings.JOB_MAX_ATTEMPTS,
        )
    )
    logger.info("[sweep] resume_stale_extractions resumed=%d", len(resumed))
