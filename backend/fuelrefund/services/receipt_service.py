"""Reading, correcting and deleting receipts."""

from __future__ import annotations

import logging
import re
from typing import List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fuelrefund.core.errors import ReceiptNotFound, ValidationError
from fuelrefund.models.schemas import AnnotatedReceiptOut, ReceiptListOut, ReceiptOut, ReceiptUpdate
from fuelrefund.models.tables import Receipt
from fuelrefund.services.fiscal import fiscal_year_for
from fuelrefund.services.refund_service import (
    RefundResult,
    RoundingMode,
    aggregate_refunds,
    annotate_receipts,
)
from fuelrefund.services.storage_service import BlobStore
from fuelrefund.utils.helpers import parse_iso_date
from fuelrefund.utils.numeric import FIELD_LIMITS, MAX_MAGNITUDE, parse_decimal

logger = logging.getLogger(__name__)

_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_TEXT_FIELDS = ("seller_street", "seller_city", "seller_zip", "vehicle_id")
_NUMERIC_FIELDS = {"gallons": "gallons", "price_per_gallon": "pricePerGallon", "total_amount": "totalAmount"}


async def get_receipt(db: AsyncSession, account_id: int, receipt_id: int) -> Receipt:
    result = await db.execute(
        select(Receipt).where(Receipt.id == receipt_id, Receipt.account_id == account_id)
    )
    receipt = result.scalar_one_or_none()
    if receipt is None:
        raise ReceiptNotFound(receipt_id)
    return receipt


def to_annotated(receipt: Receipt, refund: RefundResult) -> AnnotatedReceiptOut:
    return AnnotatedReceiptOut.model_validate(
        {
            **{name: getattr(receipt, name) for name in ReceiptOut.model_fields},
            "tax_refund": refund.display_refund,
            "tax_base_rate": refund.base_rate,
            "tax_increase": refund.increase,
            "eligible": refund.eligible,
            "ineligible_reason": refund.reason,
        }
    )


async def list_receipts(
    db: AsyncSession,
    account_id: int,
    home_jurisdiction: str,
    fiscal_year: Optional[str] = None,
    rounding: RoundingMode = RoundingMode.PER_GROUP,
) -> ReceiptListOut:
    stmt = select(Receipt).where(Receipt.account_id == account_id)
    if fiscal_year:
        stmt = stmt.where(Receipt.fiscal_year == fiscal_year)
    result = await db.execute(stmt.order_by(Receipt.created_at.desc(), Receipt.id.desc()))
    receipts = list(result.scalars().all())
    annotated = await annotate_receipts(db, receipts, home_jurisdiction)
    return ReceiptListOut(
        receipts=[to_annotated(r, refund) for r, refund in annotated],
        refund_totals=aggregate_refunds(((r.fiscal_year, refund) for r, refund in annotated), rounding),
    )


async def get_annotated_receipt(
    db: AsyncSession, account_id: int, receipt_id: int, home_jurisdiction: str
) -> AnnotatedReceiptOut:
    receipt = await get_receipt(db, account_id, receipt_id)
    [(receipt, refund)] = await annotate_receipts(db, [receipt], home_jurisdiction)
    return to_annotated(receipt, refund)


def apply_manual_edit(receipt: Receipt, update: ReceiptUpdate) -> List[str]:
    """Apply user corrections to content fields; returns the changed field names.

    Validation happens before anything is assigned, so a rejected edit
    leaves the receipt untouched.
    """
    fields = update.model_dump(exclude_unset=True)
    changes: List[Tuple[str, object]] = []

    if "date" in fields:
        raw = fields["date"]
        parsed = parse_iso_date(raw) if raw and _DATE_RE.match(raw.strip()) else None
        if parsed is None:
            raise ValidationError("date must be a valid YYYY-MM-DD date", field="date")
        changes.append(("date", parsed))

    if "station_name" in fields:
        name = (fields["station_name"] or "").strip()
        if not name:
            raise ValidationError("stationName must not be empty", field="stationName")
        changes.append(("station_name", name))

    if "seller_state" in fields:
        state = (fields["seller_state"] or "").strip().upper() or None
        if state is not None and (len(state) != 2 or not state.isalpha()):
            raise ValidationError("sellerState must be a two-letter code", field="sellerState")
        changes.append(("seller_state", state))

    for name in _TEXT_FIELDS:
        if name in fields:
            value = fields[name]
            changes.append((name, (value.strip() or None) if isinstance(value, str) else value))

    for name, alias in _NUMERIC_FIELDS.items():
        if name in fields:
            raw = fields[name]
            value = parse_decimal(raw, name)
            if value is None and raw is not None and str(raw).strip():
                limit = FIELD_LIMITS.get(name, MAX_MAGNITUDE)
                raise ValidationError(f"{alias} must be a number below {limit:,}", field=alias)
            changes.append((name, value))

    for name, value in changes:
        setattr(receipt, name, value)
    receipt.fiscal_year = fiscal_year_for(receipt.date)
    return [name for name, _ in changes]


async def update_receipt(db: AsyncSession, account_id: int, receipt_id: int, update: ReceiptUpdate) -> Receipt:
    receipt = await get_receipt(db, account_id, receipt_id)
    changed = apply_manual_edit(receipt, update)
    await db.commit()
    logger.info("[receipts] receipt %s edited fields=%s fiscal_year=%s", receipt_id, changed, receipt.fiscal_year)
    return receipt


async def delete_receipt(db: AsyncSession, blob_store: BlobStore, account_id: int, receipt_id: int) -> None:
    """Remove the image, then the row.

    The row delete is flushed first but committed only after the blob is
    gone. A failed blob delete rolls back and leaves the receipt intact.
    """
    receipt = await get_receipt(db, account_id, receipt_id)
    image_ref = receipt.image_ref
    await db.delete(receipt)
    await db.flush()
    try:
        await blob_store.delete(image_ref)
    except Exception:
        await db.rollback()
        raise
    await db.commit()
    logger.info("[receipts] receipt %s deleted blob=%s", receipt_id, image_ref)
