from __future__ import annotations

import datetime as dt
from decimal import Decimal

import pytest
from hypothesis import given, strategies as st
from sqlalchemy import select

from fuelrefund.core.errors import InvalidTransition
from fuelrefund.models.enums import JobStatus, ReceiptStatus
from fuelrefund.models.tables import PLACEHOLDER_STATION_NAME, ExtractionJob, Receipt
from fuelrefund.services.receipt_service import list_receipts
from fuelrefund.services.transcription_worker import (
    DATE_FALLBACK_WARNING,
    UNKNOWN_STATION_NAME,
    ensure_transition,
    process_extraction_job,
    resume_stalled_extractions,
)
from fuelrefund.utils.helpers import utcnow

UPLOAD_DAY = dt.date(2026, 10, 18)

GOOD_RESULT = {
    "date": "2024-06-30",
    "stationName": "QuikTrip #123",
    "sellerStreet": "1 Main St",
    "sellerCity": "Columbia",
    "sellerState": "mo",
    "sellerZip": "65201",
    "gallons": "10.5",
    "pricePerGallon": "$3.459",
    "totalAmount": 36.32,
}


async def _pending_receipt(session_factory, blob_store, status=ReceiptStatus.PENDING, **fields) -> int:
    ref = await blob_store.put(b"image-bytes", "image/jpeg", namespace="1")
    async with session_factory() as db:
        receipt = Receipt(
            account_id=1,
            image_ref=ref,
            mime_type="image/jpeg",
            date=UPLOAD_DAY,
            station_name=PLACEHOLDER_STATION_NAME,
            processing_status=status,
            fiscal_year="2026-2027",
            upload_fiscal_year="2026-2027",
            **fields,
        )
        receipt.job = ExtractionJob(status=JobStatus.QUEUED, attempts=0, enqueued_at=utcnow())
        db.add(receipt)
        await db.commit()
        return receipt.id


async def _load(session_factory, receipt_id):
    async with session_factory() as db:
        receipt = await db.get(Receipt, receipt_id)
        job = (await db.execute(select(ExtractionJob).where(ExtractionJob.receipt_id == receipt_id))).scalar_one_or_none()
        return receipt, job


@pytest.mark.asyncio
async def test_successful_extraction_completes_receipt(session_factory, blob_store, make_extractor):
    rid = await _pending_receipt(session_factory, blob_store)
    extractor = make_extractor(result=GOOD_RESULT)

    status = await process_extraction_job(session_factory, rid, blob_store, extractor, timeout=5, message_id="m-1")

    assert status == ReceiptStatus.COMPLETED
    receipt, job = await _load(session_factory, rid)
    assert receipt.station_name == "QuikTrip #123"
    assert receipt.seller_state == "MO"
    assert receipt.gallons == Decimal("10.500")
    assert receipt.price_per_gallon == Decimal("3.459")
    assert receipt.total_amount == Decimal("36.32")
    assert receipt.date == dt.date(2024, 6, 30)
    # Fiscal year follows the purchase date; the quota year does not move
    assert receipt.fiscal_year == "2023-2024"
    assert receipt.upload_fiscal_year == "2026-2027"
    assert receipt.processing_error is None
    assert job.status == JobStatus.COMPLETED
    assert job.attempts == 1
    assert job.message_id == "m-1"
    assert extractor.calls == [(b"image-bytes", "image/jpeg")]


@pytest.mark.asyncio
async def test_out_of_range_numbers_are_dropped(session_factory, blob_store, make_extractor):
    rid = await _pending_receipt(session_factory, blob_store)
    result = dict(GOOD_RESULT, gallons="9" * 29, pricePerGallon="1e30")

    status = await process_extraction_job(session_factory, rid, blob_store, make_extractor(result=result), timeout=5)

    assert status == ReceiptStatus.COMPLETED
    receipt, _ = await _load(session_factory, rid)
    assert receipt.gallons is None
    assert receipt.price_per_gallon is None
    assert receipt.total_amount == Decimal("36.32")

    async with session_factory() as db:
        listing = await list_receipts(db, 1, home_jurisdiction="MO")
    [annotated] = listing.receipts
    assert annotated.eligible is False
    assert annotated.tax_refund == Decimal("0.00")


@pytest.mark.asyncio
async def test_unreadable_date_falls_back_to_today_with_warning(session_factory, blob_store, make_extractor):
    rid = await _pending_receipt(session_factory, blob_store)
    extractor = make_extractor(result={**GOOD_RESULT, "date": "not a date", "stationName": "  "})

    await process_extraction_job(session_factory, rid, blob_store, extractor, today=dt.date(2025, 7, 2))

    receipt, _ = await _load(session_factory, rid)
    assert receipt.processing_status == ReceiptStatus.COMPLETED
    assert receipt.date == dt.date(2025, 7, 2)
    assert receipt.fiscal_year == "2025-2026"
    assert receipt.processing_error == DATE_FALLBACK_WARNING
    assert receipt.station_name == UNKNOWN_STATION_NAME


@pytest.mark.asyncio
async def test_extraction_error_fails_receipt_without_partial_fields(session_factory, blob_store, make_extractor):
    rid = await _pending_receipt(session_factory, blob_store)
    extractor = make_extractor(error=RuntimeError("model unavailable"))

    status = await process_extraction_job(session_factory, rid, blob_store, extractor)

    assert status == ReceiptStatus.FAILED
    receipt, job = await _load(session_factory, rid)
    assert receipt.processing_error == "model unavailable"
    assert receipt.station_name == PLACEHOLDER_STATION_NAME
    assert receipt.gallons is None
    assert receipt.seller_state is None
    assert receipt.date == UPLOAD_DAY
    assert job.status == JobStatus.FAILED
    assert job.last_error == "model unavailable"


@pytest.mark.asyncio
async def test_extraction_timeout_fails_receipt(session_factory, blob_store, make_extractor):
    rid = await _pending_receipt(session_factory, blob_store)
    extractor = make_extractor(result=GOOD_RESULT, delay=2)

    status = await process_extraction_job(session_factory, rid, blob_store, extractor, timeout=0.05)

    assert status == ReceiptStatus.FAILED
    receipt, _ = await _load(session_factory, rid)
    assert "timed out" in receipt.processing_error
    assert receipt.station_name == PLACEHOLDER_STATION_NAME


@pytest.mark.asyncio
async def test_missing_image_fails_receipt(session_factory, blob_store, make_extractor):
    rid = await _pending_receipt(session_factory, blob_store)
    blob_store.blobs.clear()
    extractor = make_extractor(result=GOOD_RESULT)

    assert await process_extraction_job(session_factory, rid, blob_store, extractor) == ReceiptStatus.FAILED
    assert extractor.calls == []


@pytest.mark.parametrize("terminal", [ReceiptStatus.COMPLETED, ReceiptStatus.FAILED])
@pytest.mark.asyncio
async def test_redelivery_after_terminal_state_is_discarded(session_factory, blob_store, make_extractor, terminal):
    rid = await _pending_receipt(session_factory, blob_store, status=terminal)
    extractor = make_extractor(result=GOOD_RESULT)

    status = await process_extraction_job(session_factory, rid, blob_store, extractor)

    assert status == terminal
    assert extractor.calls == []
    receipt, job = await _load(session_factory, rid)
    assert receipt.processing_status == terminal
    assert receipt.station_name == PLACEHOLDER_STATION_NAME
    assert job.status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_redelivery_while_processing_runs_again(session_factory, blob_store, make_extractor):
    rid = await _pending_receipt(session_factory, blob_store, status=ReceiptStatus.PROCESSING)
    status = await process_extraction_job(session_factory, rid, blob_store, make_extractor(result=GOOD_RESULT))
    assert status == ReceiptStatus.COMPLETED


@pytest.mark.asyncio
async def test_deleted_receipt_drops_job(session_factory, blob_store, make_extractor):
    assert await process_extraction_job(session_factory, 999, blob_store, make_extractor()) is None


TERMINAL_MOVES = [
    (current, target)
    for current in (ReceiptStatus.COMPLETED, ReceiptStatus.FAILED)
    for target in ReceiptStatus
    if target != current
]


@pytest.mark.parametrize("current, target", TERMINAL_MOVES)
def test_terminal_states_never_move(current, target):
    with pytest.raises(InvalidTransition):
        ensure_transition(current, target)


@given(
    st.sampled_from([ReceiptStatus.COMPLETED, ReceiptStatus.FAILED]),
    st.sampled_from(list(ReceiptStatus)),
)
def test_no_transition_leaves_a_terminal_state(current, target):
    with pytest.raises(InvalidTransition):
        ensure_transition(current, target)


def test_forward_transitions_are_allowed():
    ensure_transition(ReceiptStatus.PENDING, ReceiptStatus.PROCESSING)
    ensure_transition(ReceiptStatus.PROCESSING, ReceiptStatus.COMPLETED)
    ensure_transition(ReceiptStatus.PROCESSING, ReceiptStatus.FAILED)
    with pytest.raises(InvalidTransition):
        ensure_transition(ReceiptStatus.PROCESSING, ReceiptStatus.PENDING)
    with pytest.raises(InvalidTransition):
        ensure_transition(ReceiptStatus.PENDING, ReceiptStatus.COMPLETED)


@pytest.mark.asyncio
async def test_sweep_redispatches_only_stale_open_jobs(session_factory, blob_store, dispatcher):
    stale = await _pending_receipt(session_factory, blob_store)
    fresh = await _pending_receipt(session_factory, blob_store)
    finished = await _pending_receipt(session_factory, blob_store, status=ReceiptStatus.COMPLETED)

    now = utcnow()
    async with session_factory() as db:
        jobs = {j.receipt_id: j for j in (await db.execute(select(ExtractionJob))).scalars()}
        jobs[stale].enqueued_at = now - dt.timedelta(minutes=30)
        jobs[finished].enqueued_at = now - dt.timedelta(minutes=30)
        jobs[fresh].enqueued_at = now
        await db.commit()

    resumed = await resume_stalled_extractions(session_factory, dispatcher, stale_after_seconds=300, now=now)

    assert resumed == [stale]
    assert dispatcher.sent == [stale]
    _, stale_job = await _load(session_factory, stale)
    assert stale_job.status == JobStatus.QUEUED
    assert stale_job.message_id == f"msg-{stale}-1"
    _, finished_job = await _load(session_factory, finished)
    assert finished_job.status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_sweep_keeps_job_when_dispatch_fails(session_factory, blob_store, dispatcher):
    rid = await _pending_receipt(session_factory, blob_store)
    dispatcher.fail = True
    later = utcnow() + dt.timedelta(hours=1)

    assert await resume_stalled_extractions(session_factory, dispatcher, stale_after_seconds=300, now=later) == []
    _, job = await _load(session_factory, rid)
    assert job.status == JobStatus.QUEUED


async def _set_job(session_factory, receipt_id, **fields):
    async with session_factory() as db:
        job = (await db.execute(select(ExtractionJob).where(ExtractionJob.receipt_id == receipt_id))).scalar_one()
        for name, value in fields.items():
            setattr(job, name, value)
        await db.commit()


@pytest.mark.asyncio
async def test_sweep_gives_up_after_max_attempts(session_factory, blob_store, dispatcher):
    rid = await _pending_receipt(session_factory, blob_store, status=ReceiptStatus.PROCESSING)
    now = utcnow()
    await _set_job(
        session_factory,
        rid,
        status=JobStatus.RUNNING,
        attempts=3,
        started_at=now - dt.timedelta(hours=1),
        last_error="database unavailable",
    )

    resumed = await resume_stalled_extractions(
        session_factory, dispatcher, stale_after_seconds=300, now=now, max_attempts=3
    )

    assert resumed == []
    assert dispatcher.sent == []
    receipt, job = await _load(session_factory, rid)
    assert receipt.processing_status == ReceiptStatus.FAILED
    assert receipt.processing_error == "Extraction abandoned after 3 attempts: database unavailable"
    assert job.status == JobStatus.FAILED
    assert job.last_error == receipt.processing_error

    # Nothing left for the next sweep
    later = now + dt.timedelta(hours=1)
    assert await resume_stalled_extractions(session_factory, dispatcher, stale_after_seconds=300, now=later) == []


@pytest.mark.asyncio
async def test_sweep_retries_below_max_attempts(session_factory, blob_store, dispatcher):
    rid = await _pending_receipt(session_factory, blob_store, status=ReceiptStatus.PROCESSING)
    now = utcnow()
    await _set_job(session_factory, rid, status=JobStatus.RUNNING, attempts=2, started_at=now - dt.timedelta(hours=1))

    assert await resume_stalled_extractions(
        session_factory, dispatcher, stale_after_seconds=300, now=now, max_attempts=3
    ) == [rid]
    receipt, _ = await _load(session_factory, rid)
    assert receipt.processing_status == ReceiptStatus.PROCESSING


@pytest.mark.asyncio
async def test_delivery_racing_a_fresh_claim_is_dropped(session_factory, blob_store, make_extractor):
    rid = await _pending_receipt(session_factory, blob_store, status=ReceiptStatus.PROCESSING)
    await _set_job(session_factory, rid, status=JobStatus.RUNNING, attempts=1, started_at=utcnow())
    extractor = make_extractor(result=GOOD_RESULT)

    status = await process_extraction_job(session_factory, rid, blob_store, extractor, claim_ttl=300)

    assert status == ReceiptStatus.PROCESSING
    assert extractor.calls == []
    _, job = await _load(session_factory, rid)
    assert job.attempts == 1


@pytest.mark.asyncio
async def test_stale_claim_is_taken_over(session_factory, blob_store, make_extractor):
    rid = await _pending_receipt(session_factory, blob_store, status=ReceiptStatus.PROCESSING)
    await _set_job(
        session_factory, rid, status=JobStatus.RUNNING, attempts=1, started_at=utcnow() - dt.timedelta(hours=1)
    )

    status = await process_extraction_job(
        session_factory, rid, blob_store, make_extractor(result=GOOD_RESULT), claim_ttl=300
    )

    assert status == ReceiptStatus.COMPLETED
    _, job = await _load(session_factory, rid)
    assert job.attempts == 2
