"""Background transcription of uploaded receipts.

A job carries only a receipt id and is safe to deliver more than once:

1. *Claim*: load the receipt. A terminal receipt means the job already
   ran, so it is discarded. So is a delivery racing one that claimed
   the job moments ago. Otherwise the receipt moves to ``processing``
   and the durable job row to ``running``.
2. *Extract*: fetch the image and call the extraction collaborator,
   bounded by a timeout. No database connection is held meanwhile.
3. *Finish*: in one transaction, either apply the transcription and
   mark the receipt ``completed``, or mark it ``failed`` with the error
   message and apply nothing else. The job row is closed in the same
   transaction.

A crash between 1 and 3 leaves the job ``running``;
:func:`resume_stalled_extractions` re-dispatches such jobs until they
have been claimed ``JOB_MAX_ATTEMPTS`` times, then fails the receipt.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
from typing import Callable, Dict, FrozenSet, List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fuelrefund.core.config import settings
from fuelrefund.core.errors import InvalidTransition
from fuelrefund.core.observability import sentry_breadcrumb
from fuelrefund.models.enums import JobStatus, ReceiptStatus
from fuelrefund.models.schemas import ReceiptTranscription
from fuelrefund.models.tables import ExtractionJob, Receipt
from fuelrefund.services.extraction_service import Extractor
from fuelrefund.services.fiscal import fiscal_year_for
from fuelrefund.services.storage_service import BlobStore
from fuelrefund.utils.helpers import parse_iso_date, utcnow
from fuelrefund.utils.numeric import parse_decimal

logger = logging.getLogger(__name__)

DATE_FALLBACK_WARNING = "Date could not be read - please verify"
UNKNOWN_STATION_NAME = "Unknown station"
MAX_ERROR_LENGTH = 1000

ALLOWED_TRANSITIONS: Dict[ReceiptStatus, FrozenSet[ReceiptStatus]] = {
    ReceiptStatus.PENDING: frozenset({ReceiptStatus.PROCESSING}),
    # processing -> processing happens when a job is redelivered
    ReceiptStatus.PROCESSING: frozenset({ReceiptStatus.PROCESSING, ReceiptStatus.COMPLETED, ReceiptStatus.FAILED}),
    ReceiptStatus.COMPLETED: frozenset(),
    ReceiptStatus.FAILED: frozenset(),
}


def ensure_transition(current: ReceiptStatus, target: ReceiptStatus) -> None:
    if target not in ALLOWED_TRANSITIONS[ReceiptStatus(current)]:
        raise InvalidTransition(ReceiptStatus(current), target)


def transition(receipt: Receipt, target: ReceiptStatus) -> None:
    ensure_transition(receipt.processing_status, target)
    receipt.processing_status = target


def _normalize_state(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    state = value.strip().upper()
    if len(state) != 2 or not state.isalpha():
        logger.warning("[worker] discarding unreadable seller state %r", value)
        return None
    return state


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def apply_transcription(receipt: Receipt, transcription: ReceiptTranscription, today: dt.date) -> None:
    """Copy an extraction result onto ``receipt`` and complete it."""
    resolved = parse_iso_date(transcription.date)
    warning: Optional[str] = None
    if resolved is None:
        resolved = today
        warning = DATE_FALLBACK_WARNING
    receipt.date = resolved
    receipt.station_name = _clean(transcription.station_name) or UNKNOWN_STATION_NAME
    receipt.seller_street = _clean(transcription.seller_street)
    receipt.seller_city = _clean(transcription.seller_city)
    receipt.seller_state = _normalize_state(transcription.seller_state)
    receipt.seller_zip = _clean(transcription.seller_zip)
    receipt.gallons = parse_decimal(transcription.gallons, "gallons")
    receipt.price_per_gallon = parse_decimal(transcription.price_per_gallon, "price_per_gallon")
    receipt.total_amount = parse_decimal(transcription.total_amount, "total_amount")
    receipt.fiscal_year = fiscal_year_for(resolved)
    receipt.processing_error = warning
    transition(receipt, ReceiptStatus.COMPLETED)


async def _job_for(db: AsyncSession, receipt_id: int) -> ExtractionJob:
    result = await db.execute(select(ExtractionJob).where(ExtractionJob.receipt_id == receipt_id))
    job = result.scalar_one_or_none()
    if job is None:
        job = ExtractionJob(receipt_id=receipt_id, status=JobStatus.QUEUED, attempts=0, enqueued_at=utcnow())
        db.add(job)
    return job


def _claimed_recently(job: ExtractionJob, claim_ttl: float) -> bool:
    if job.status != JobStatus.RUNNING or job.started_at is None:
        return False
    return utcnow() - job.started_at < dt.timedelta(seconds=claim_ttl)


def _close_job(job: ExtractionJob, status: JobStatus, error: Optional[str] = None) -> None:
    job.status = status
    job.last_error = error
    job.completed_at = utcnow()


async def process_extraction_job(
    session_factory: async_sessionmaker[AsyncSession],
    receipt_id: int,
    blob_store: BlobStore,
    extractor: Extractor,
    timeout: Optional[float] = None,
    message_id: Optional[str] = None,
    today: Optional[dt.date] = None,
    claim_ttl: Optional[float] = None,
) -> Optional[ReceiptStatus]:
    """Drive one receipt to a terminal state; returns that state.

    ``None`` means the receipt no longer exists (deleted while queued).
    When ``claim_ttl`` is given, a delivery that finds the job claimed by
    another delivery less than ``claim_ttl`` seconds ago is dropped and
    ``processing`` is returned.
    """
    async with session_factory() as db:
        receipt = await db.get(Receipt, receipt_id)
        if receipt is None:
            logger.warning("[worker] receipt %s vanished; dropping job", receipt_id)
            return None
        job = await _job_for(db, receipt_id)
        if receipt.processing_status.is_terminal:
            if job.status not in (JobStatus.COMPLETED, JobStatus.FAILED):
                _close_job(job, JobStatus.COMPLETED)
            await db.commit()
            logger.info("[worker] receipt %s already %s; redelivery discarded", receipt_id, receipt.processing_status.value)
            return receipt.processing_status
        if claim_ttl is not None and _claimed_recently(job, claim_ttl):
            logger.info("[worker] receipt %s already being extracted; duplicate delivery dropped", receipt_id)
            return receipt.processing_status
        transition(receipt, ReceiptStatus.PROCESSING)
        job.status = JobStatus.RUNNING
        job.attempts = (job.attempts or 0) + 1
        job.started_at = utcnow()
        if message_id:
            job.message_id = message_id
        image_ref, mime_type = receipt.image_ref, receipt.mime_type
        await db.commit()
    sentry_breadcrumb(category="worker", message="extraction.start", data={"receipt_id": receipt_id})

    async def _fetch_and_extract() -> ReceiptTranscription:
        data = await blob_store.get(image_ref)
        return await extractor.extract(data, mime_type)

    transcription: Optional[ReceiptTranscription] = None
    error: Optional[str] = None
    try:
        transcription = await asyncio.wait_for(_fetch_and_extract(), timeout=timeout)
    except asyncio.TimeoutError:
        error = f"Extraction timed out after {timeout:g} seconds"
    except Exception as exc:
        error = str(exc) or exc.__class__.__name__

    async with session_factory() as db:
        receipt = await db.get(Receipt, receipt_id)
        if receipt is None:
            logger.warning("[worker] receipt %s deleted during extraction", receipt_id)
            return None
        if receipt.processing_status.is_terminal:
            # A concurrent delivery finished first
            logger.info("[worker] receipt %s finished elsewhere as %s", receipt_id, receipt.processing_status.value)
            return receipt.processing_status
        job = await _job_for(db, receipt_id)
        if transcription is not None:
            apply_transcription(receipt, transcription, today or utcnow().date())
            _close_job(job, JobStatus.COMPLETED)
            logger.info("[worker] receipt %s completed fiscal_year=%s", receipt_id, receipt.fiscal_year)
        else:
            message = (error or "Extraction failed")[:MAX_ERROR_LENGTH]
            transition(receipt, ReceiptStatus.FAILED)
            receipt.processing_error = message
            _close_job(job, JobStatus.FAILED, message)
            logger.warning("[worker] receipt %s failed: %s", receipt_id, message)
        await db.commit()
        return receipt.processing_status


async def resume_stalled_extractions(
    session_factory: async_sessionmaker[AsyncSession],
    dispatch: Callable[[int], Optional[str]],
    stale_after_seconds: int,
    now: Optional[dt.datetime] = None,
    batch_limit: int = 200,
    max_attempts: Optional[int] = None,
) -> List[int]:
    """Re-dispatch jobs that were queued or running for too long.

    Jobs whose receipt already reached a terminal state are closed
    instead. A job that has been claimed ``max_attempts`` times is given
    up: its receipt is marked ``failed`` and the job closed in the same
    transaction. Returns the ids of the receipts that were re-dispatched.
    """
    now = now or utcnow()
    max_attempts = max_attempts or settings.JOB_MAX_ATTEMPTS
    cutoff = now - dt.timedelta(seconds=stale_after_seconds)
    resumed: List[int] = []
    abandoned: List[int] = []
    async with session_factory() as db:
        result = await db.execute(
            select(ExtractionJob, Receipt)
            .join(Receipt, Receipt.id == ExtractionJob.receipt_id)
            .where(
                ExtractionJob.status.in_([JobStatus.QUEUED, JobStatus.RUNNING]),
                func.coalesce(ExtractionJob.started_at, ExtractionJob.enqueued_at) < cutoff,
            )
            .order_by(ExtractionJob.enqueued_at)
            .limit(batch_limit)
        )
        for job, receipt in result.all():
            if receipt.processing_status.is_terminal:
                _close_job(job, JobStatus.COMPLETED)
                continue
            if (job.attempts or 0) >= max_attempts:
                _abandon(receipt, job)
                abandoned.append(job.receipt_id)
                continue
            try:
                job.message_id = dispatch(job.receipt_id)
            except Exception:
                logger.exception("[sweep] could not re-dispatch receipt %s; will retry next sweep", job.receipt_id)
                continue
            job.status = JobStatus.QUEUED
            job.enqueued_at = now
            job.started_at = None
            resumed.append(job.receipt_id)
        await db.commit()
    if abandoned:
        logger.warning("[sweep] gave up on %d extraction(s) after %d attempts: %s", len(abandoned), max_attempts, abandoned)
    if resumed:
        logger.info("[sweep] re-dispatched %d stalled extraction(s): %s", len(resumed), resumed)
    return resumed


def _abandon(receipt: Receipt, job: ExtractionJob) -> None:
    message = f"Extraction abandoned after {job.attempts} attempts"
    if job.last_error:
        message = f"{message}: {job.last_error}"
    message = message[:MAX_ERROR_LENGTH]
    if receipt.processing_status == ReceiptStatus.PENDING:
        transition(receipt, ReceiptStatus.PROCESSING)
    transition(receipt, ReceiptStatus.FAILED)
    receipt.processing_error = message
    _close_job(job, JobStatus.FAILED, message)
