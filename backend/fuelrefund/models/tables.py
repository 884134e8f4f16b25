"""SQLAlchemy ORM models for the refund engine.

Money and measurement columns are ``Numeric`` and surface as
``decimal.Decimal``. Timestamps are naive UTC (see
:func:`fuelrefund.utils.helpers.utcnow`).

If you extend or modify these models remember to add an Alembic
migration; ``init_db`` only creates missing tables.
"""

from __future__ import annotations

from sqlalchemy import (
    Column,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from fuelrefund.core.database import Base
from fuelrefund.utils.helpers import utcnow
from .enums import JobStatus, ReceiptStatus, SubscriptionStatus

PLACEHOLDER_STATION_NAME = "Processing..."


def _str_enum(enum_cls):
    # Persist the lowercase values rather than member names
    return Enum(
        enum_cls,
        values_callable=lambda members: [m.value for m in members],
        native_enum=False,
        length=20,
    )


class Receipt(Base):
    """One uploaded fuel purchase."""

    __tablename__ = "receipts"

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(Integer, nullable=False, index=True)
    vehicle_id = Column(String, nullable=True)
    uploaded_by = Column(String, nullable=True)

    image_ref = Column(String, nullable=False)
    mime_type = Column(String, nullable=False, default="image/jpeg")

    date = Column(Date, nullable=False)
    station_name = Column(String, nullable=False, default=PLACEHOLDER_STATION_NAME)
    seller_street = Column(String, nullable=True)
    seller_city = Column(String, nullable=True)
    seller_state = Column(String(2), nullable=True)
    seller_zip = Column(String, nullable=True)

    gallons = Column(Numeric(10, 3), nullable=True)
    price_per_gallon = Column(Numeric(10, 3), nullable=True)
    total_amount = Column(Numeric(10, 2), nullable=True)

    processing_status = Column(_str_enum(ReceiptStatus), nullable=False, default=ReceiptStatus.PENDING, index=True)
    processing_error = Column(Text, nullable=True)

    # Derived from ``date``; re-derived whenever the date changes
    fiscal_year = Column(String(9), nullable=False, index=True)
    # Fiscal year whose quota paid for this upload; never re-derived
    upload_fiscal_year = Column(String(9), nullable=False)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    job = relationship(
        "ExtractionJob",
        back_populates="receipt",
        uselist=False,
        cascade="all, delete-orphan",
    )

    __table_args__ = (Index("ix_receipts_account_created_at", "account_id", "created_at"),)


class TaxRate(Base):
    """A window during which an incremental fuel-tax rate applied.

    Windows are half open, ``[start_date, end_date)``; a null
    ``end_date`` means the rate is still current.
    """

    __tablename__ = "tax_rates"

    id = Column(Integer, primary_key=True, index=True)
    fuel_type = Column(String, nullable=False, default="Motor Fuel")
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=True)
    base_rate = Column(Numeric(10, 3), nullable=False)
    increase = Column(Numeric(10, 3), nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (Index("ix_tax_rates_fuel_type_start", "fuel_type", "start_date"),)


class AccountSubscription(Base):
    """Quota state for one account in one fiscal year."""

    __tablename__ = "account_subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(Integer, nullable=False, index=True)
    fiscal_year = Column(String(9), nullable=False)
    status = Column(_str_enum(SubscriptionStatus), nullable=False, default=SubscriptionStatus.TRIAL)
    trial_started_at = Column(DateTime, nullable=True)
    trial_ends_at = Column(DateTime, nullable=True)
    activated_at = Column(DateTime, nullable=True)
    canceled_at = Column(DateTime, nullable=True)
    receipt_count = Column(Integer, nullable=False, default=0)
    receipt_limit = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (UniqueConstraint("account_id", "fiscal_year", name="uq_account_subscriptions_account_fy"),)


class ReceiptPack(Base):
    """An add-on purchase raising a fiscal year's receipt ceiling. Immutable."""

    __tablename__ = "receipt_packs"

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(Integer, nullable=False, index=True)
    fiscal_year = Column(String(9), nullable=False)
    receipts_added = Column(Integer, nullable=False)
    price_cents = Column(Integer, nullable=True)
    payment_reference = Column(String, nullable=False, unique=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class ExtractionJob(Base):
    """Durable record of a receipt waiting for (or done with) extraction."""

    __tablename__ = "extraction_jobs"

    id = Column(Integer, primary_key=True)
    receipt_id = Column(Integer, ForeignKey("receipts.id", ondelete="CASCADE"), nullable=False, unique=True)
    status = Column(_str_enum(JobStatus), nullable=False, default=JobStatus.QUEUED, index=True)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    message_id = Column(String, nullable=True)  # last Dramatiq message id
    enqueued_at = Column(DateTime, default=utcnow, nullable=False)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    receipt = relationship("Receipt", back_populates="job")


class ProcessedBillingEvent(Base):
    """Ledger of billing events already applied to quota state."""

    __tablename__ = "billing_events"

    id = Column(String, primary_key=True)  # provider event id
    event_type = Column(String, nullable=False)
    account_id = Column(Integer, nullable=True)
    fiscal_year = Column(String(9), nullable=True)
    outcome = Column(String, nullable=False)
    processed_at = Column(DateTime, default=utcnow, nullable=False)
