"""Pydantic schemas for request and response bodies.

Wire names are camelCase (``stationName``, ``processingStatus``) to
match the web client; Python code uses snake_case and relies on the
alias generator. Decimals serialise as strings so no precision is lost
in transit.
"""

from __future__ import annotations

import datetime as dt
from decimal import Decimal
from typing import Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .enums import IneligibleReason, QuotaDenialReason, ReceiptStatus, SubscriptionStatus

NumericInput = Optional[Union[str, float, int]]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class ReceiptTranscription(CamelModel):
    """Structured result returned by the extraction collaborator.

    Every field is optional: the model may fail to read any of them.
    Numeric fields are kept raw and normalised by the worker.
    """

    date: Optional[str] = Field(default=None, description="Purchase date as YYYY-MM-DD")
    station_name: Optional[str] = Field(default=None, description="Fuel station or merchant name")
    seller_street: Optional[str] = None
    seller_city: Optional[str] = None
    seller_state: Optional[str] = Field(default=None, description="Two letter state code")
    seller_zip: Optional[str] = None
    gallons: NumericInput = None
    price_per_gallon: NumericInput = None
    total_amount: NumericInput = None


class ReceiptUpdate(CamelModel):
    """Manual correction of content fields. Status fields are not editable."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    date: Optional[str] = None
    station_name: Optional[str] = None
    seller_street: Optional[str] = None
    seller_city: Optional[str] = None
    seller_state: Optional[str] = None
    seller_zip: Optional[str] = None
    gallons: NumericInput = None
    price_per_gallon: NumericInput = None
    total_amount: NumericInput = None
    vehicle_id: Optional[str] = None


class ReceiptOut(CamelModel):
    id: int
    account_id: int
    vehicle_id: Optional[str] = None
    uploaded_by: Optional[str] = None
    image_ref: str
    mime_type: str
    date: dt.date
    station_name: str
    seller_street: Optional[str] = None
    seller_city: Optional[str] = None
    seller_state: Optional[str] = None
    seller_zip: Optional[str] = None
    gallons: Optional[Decimal] = None
    price_per_gallon: Optional[Decimal] = None
    total_amount: Optional[Decimal] = None
    processing_status: ReceiptStatus
    processing_error: Optional[str] = None
    fiscal_year: str
    created_at: dt.datetime


class AnnotatedReceiptOut(ReceiptOut):
    """A receipt plus its refund estimate."""

    tax_refund: Decimal = Field(description="Refund rounded half-up to cents")
    tax_base_rate: Optional[Decimal] = None
    tax_increase: Optional[Decimal] = None
    eligible: bool
    ineligible_reason: Optional[IneligibleReason] = None


class ReceiptListOut(CamelModel):
    receipts: List[AnnotatedReceiptOut]
    refund_totals: Dict[str, Decimal] = Field(description="Fiscal year label to total refund")


class SubscriptionStatusOut(CamelModel):
    account_id: int
    fiscal_year: str
    status: SubscriptionStatus
    trial_days_remaining: Optional[int] = None
    receipt_count: int
    receipt_limit: int
    can_upload: bool
    upgrade_required: bool
    reason: Optional[QuotaDenialReason] = None
