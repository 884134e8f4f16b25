"""Enumeration types used throughout the refund engine.

Enumerations constrain the values stored in the database and passed
through the API. When adding a member remember to update the Alembic
migration that declares the corresponding column.
"""

from enum import Enum


class ReceiptStatus(str, Enum):
    """Processing states for a receipt.

    The state only moves forward: ``pending -> processing -> completed``
    or ``failed``. See :func:`fuelrefund.services.transcription_worker.ensure_transition`.
    """

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ReceiptStatus.COMPLETED, ReceiptStatus.FAILED)


class SubscriptionStatus(str, Enum):
    """Quota state of an account for one fiscal year."""

    TRIAL = "trial"
    ACTIVE = "active"
    CANCELED = "canceled"
    EXPIRED = "expired"


class QuotaDenialReason(str, Enum):
    """Why the Quota Guard refused an upload."""

    TRIAL_EXPIRED = "trial_expired"
    RECEIPT_LIMIT_REACHED = "receipt_limit_reached"
    SUBSCRIPTION_CANCELED = "subscription_canceled"


class IneligibleReason(str, Enum):
    """Why a receipt carries no refund."""

    NOT_COMPLETED = "not_completed"
    OUT_OF_STATE = "out_of_state"
    NO_TAX_RATE = "no_tax_rate"
    PARSE_ERROR = "parse_error"


class JobStatus(str, Enum):
    """Lifecycle of a durable extraction job."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
