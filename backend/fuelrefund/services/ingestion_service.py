"""Receipt ingestion.

An upload is admitted by the Quota Guard, stored, recorded as a
``pending`` placeholder receipt together with its durable extraction
job, and only then handed to the background worker. The caller gets the
placeholder back immediately and polls it.

The quota increment, the receipt row and the job row commit in one
transaction. The blob is written inside that transaction's window and
removed again if the commit fails. Dispatch happens after the commit;
if the broker is unreachable the job stays ``queued`` and the recovery
sweep picks it up.
"""

from __future__ import annotations

import datetime as dt
import logging
from typing import Callable, Iterable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from fuelrefund.core.config import settings
from fuelrefund.core.errors import QuotaExceeded, ValidationError
from fuelrefund.core.observability import sentry_breadcrumb
from fuelrefund.models.enums import JobStatus, ReceiptStatus
from fuelrefund.models.tables import PLACEHOLDER_STATION_NAME, ExtractionJob, Receipt
from fuelrefund.services.fiscal import fiscal_year_for
from fuelrefund.services.quota_service import QuotaService
from fuelrefund.services.storage_service import BlobStore
from fuelrefund.utils.helpers import today as utc_today
from fuelrefund.utils.helpers import utcnow

logger = logging.getLogger(__name__)

JobDispatcher = Callable[[int], Optional[str]]


class IngestionService:
    """Accepts uploads and schedules their extraction."""

    def __init__(
        self,
        blob_store: BlobStore,
        dispatch: JobDispatcher,
        quota: Optional[QuotaService] = None,
        max_upload_size: Optional[int] = None,
        allowed_types: Optional[Iterable[str]] = None,
    ) -> None:
        self.blob_store = blob_store
        self.dispatch = dispatch
        self.quota = quota or QuotaService()
        self.max_upload_size = max_upload_size or settings.MAX_UPLOAD_SIZE
        self.allowed_types = set(allowed_types or settings.ALLOWED_UPLOAD_TYPES)

    def validate_upload(self, data: bytes, mime_type: Optional[str]) -> str:
        if not data:
            raise ValidationError("Uploaded file is empty", field="file")
        if len(data) > self.max_upload_size:
            raise ValidationError(
                f"File too large: {len(data)} bytes (max {self.max_upload_size})", field="file"
            )
        mime = (mime_type or "").split(";", 1)[0].strip().lower()
        if mime not in self.allowed_types:
            raise ValidationError(f"Unsupported file type {mime or 'unknown'}", field="file")
        return mime

    async def ingest(
        self,
        db: AsyncSession,
        account_id: int,
        data: bytes,
        mime_type: Optional[str],
        vehicle_id: Optional[str] = None,
        uploaded_by: Optional[str] = None,
        today: Optional[dt.date] = None,
    ) -> Receipt:
        mime = self.validate_upload(data, mime_type)
        upload_day = today or utc_today()
        fiscal_year = fiscal_year_for(upload_day)

        try:
            await self.quota.reserve_upload(db, account_id, fiscal_year)
        except QuotaExceeded:
            # Keeps a trial marked expired; nothing else is pending yet
            await db.commit()
            raise

        try:
            image_ref = await self.blob_store.put(data, mime, namespace=str(account_id))
        except Exception:
            await db.rollback()
            raise

        receipt = Receipt(
            account_id=account_id,
            vehicle_id=vehicle_id,
            uploaded_by=uploaded_by,
            image_ref=image_ref,
            mime_type=mime,
            date=upload_day,
            station_name=PLACEHOLDER_STATION_NAME,
            processing_status=ReceiptStatus.PENDING,
            fiscal_year=fiscal_year,
            upload_fiscal_year=fiscal_year,
        )
        receipt.job = ExtractionJob(status=JobStatus.QUEUED, attempts=0, enqueued_at=utcnow())
        db.add(receipt)
        try:
            await db.commit()
        except Exception:
            await db.rollback()
            logger.error("[ingest] commit failed; removing orphan blob %s", image_ref)
            await self.blob_store.delete(image_ref)
            raise

        logger.info(
            "[ingest] receipt %s accepted account_id=%s fiscal_year=%s", receipt.id, account_id, fiscal_year
        )
        sentry_breadcrumb(category="ingest", message="receipt.accepted", data={"receipt_id": receipt.id})
        await self._dispatch(db, receipt)
        return receipt

    async def _dispatch(self, db: AsyncSession, receipt: Receipt) -> None:
        try:
            message_id = self.dispatch(receipt.id)
        except Exception:
            logger.exception("[ingest] dispatch failed for receipt %s; left queued for recovery", receipt.id)
            return
        if message_id:
            receipt.job.message_id = message_id
            await db.commit()
