"""Receipt upload, polling, correction and deletion.

Authorization for ``account_id`` is enforced upstream; these handlers
only scope every query to the account in the path.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, Query, Response, UploadFile, status
from sqlalchemy.ext.asyncio import AsyncSession

from fuelrefund.api.dependencies import (
    get_blob_store,
    get_home_jurisdiction,
    get_ingestion_service,
    get_uploader_id,
)
from fuelrefund.core.database import get_db
from fuelrefund.core.observability import sentry_set_tags
from fuelrefund.models.schemas import AnnotatedReceiptOut, ReceiptListOut, ReceiptOut, ReceiptUpdate
from fuelrefund.services import receipt_service
from fuelrefund.services.ingestion_service import IngestionService
from fuelrefund.services.storage_service import BlobStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/accounts/{account_id}/receipts", tags=["receipts"])


@router.post("/upload", response_model=ReceiptOut, status_code=status.HTTP_201_CREATED)
async def upload_receipt(
    account_id: int,
    file: UploadFile = File(...),
    vehicle_id: Optional[str] = Form(default=None, alias="vehicleId"),
    db: AsyncSession = Depends(get_db),
    ingestion: IngestionService = Depends(get_ingestion_service),
    uploader_id: Optional[str] = Depends(get_uploader_id),
):
    """Accept a receipt image and schedule extraction.

    Returns the ``pending`` placeholder straight away; poll
    ``GET /accounts/{account_id}/receipts/{id}`` until it is
    ``completed`` or ``failed``. Responds 400 with a reason code when
    the quota refuses the upload.
    """
    sentry_set_tags({"account_id": account_id})
    data = await file.read()
    receipt = await ingestion.ingest(
        db,
        account_id,
        data,
        file.content_type,
        vehicle_id=vehicle_id or None,
        uploaded_by=uploader_id,
    )
    return ReceiptOut.model_validate(receipt)


@router.get("", response_model=ReceiptListOut)
async def list_receipts(
    account_id: int,
    fiscal_year: Optional[str] = Query(default=None, alias="fiscalYear"),
    db: AsyncSession = Depends(get_db),
    home: str = Depends(get_home_jurisdiction),
):
    """Receipts with refund annotations plus refund totals per fiscal year."""
    return await receipt_service.list_receipts(db, account_id, home, fiscal_year=fiscal_year)


@router.get("/{receipt_id}", response_model=AnnotatedReceiptOut)
async def get_receipt(
    account_id: int,
    receipt_id: int,
    db: AsyncSession = Depends(get_db),
    home: str = Depends(get_home_jurisdiction),
):
    return await receipt_service.get_annotated_receipt(db, account_id, receipt_id, home)


@router.put("/{receipt_id}", response_model=AnnotatedReceiptOut)
async def update_receipt(
    account_id: int,
    receipt_id: int,
    body: ReceiptUpdate,
    db: AsyncSession = Depends(get_db),
    home: str = Depends(get_home_jurisdiction),
):
    await receipt_service.update_receipt(db, account_id, receipt_id, body)
    return await receipt_service.get_annotated_receipt(db, account_id, receipt_id, home)


@router.delete("/{receipt_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_receipt(
    account_id: int,
    receipt_id: int,
    db: AsyncSession = Depends(get_db),
    blob_store: BlobStore = Depends(get_blob_store),
):
    await receipt_service.delete_receipt(db, blob_store, account_id, receipt_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
