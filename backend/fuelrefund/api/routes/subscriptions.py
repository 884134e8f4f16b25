from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from fuelrefund.api.dependencies import get_quota_service
from fuelrefund.core.database import get_db
from fuelrefund.core.errors import ValidationError
from fuelrefund.models.schemas import SubscriptionStatusOut
from fuelrefund.services.fiscal import current_fiscal_year, is_fiscal_year_label
from fuelrefund.services.quota_service import QuotaService

router = APIRouter(prefix="/accounts/{account_id}", tags=["subscriptions"])


@router.get("/subscription", response_model=SubscriptionStatusOut)
async def get_subscription_status(
    account_id: int,
    fiscal_year: Optional[str] = Query(default=None, alias="fiscalYear"),
    db: AsyncSession = Depends(get_db),
    quota: QuotaService = Depends(get_quota_service),
):
    """Current quota state; defaults to the current fiscal year."""
    if fiscal_year is not None and not is_fiscal_year_label(fiscal_year):
        raise ValidationError("fiscalYear must look like 2024-2025", field="fiscalYear")
    return await quota.status(db, account_id, fiscal_year or current_fiscal_year())
