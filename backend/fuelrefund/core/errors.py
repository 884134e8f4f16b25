"""Domain exceptions.

Every error that may reach an HTTP caller derives from
:class:`DomainError` and carries a stable ``code`` that the exception
handlers in :mod:`fuelrefund.api.error_handlers` put on the wire.
Infrastructure failures inside the worker are not modelled here; they
are converted into the receipt's own ``failed`` state.
"""

from __future__ import annotations

from typing import Optional

from fuelrefund.models.enums import QuotaDenialReason, ReceiptStatus


class DomainError(Exception):
    code: str = "domain_error"
    status_code: int = 400

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)
        self.message = message or self.code


class ValidationError(DomainError):
    """Bad input on upload or manual edit; no state was changed."""

    code = "validation_error"

    def __init__(self, message: str, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.field = field


class QuotaExceeded(DomainError):
    """The Quota Guard refused an upload."""

    code = "quota_exceeded"

    def __init__(self, reason: QuotaDenialReason, message: str = "") -> None:
        super().__init__(message or f"upload not permitted: {reason.value}")
        self.reason = reason


class ReceiptNotFound(DomainError):
    code = "receipt_not_found"
    status_code = 404

    def __init__(self, receipt_id: int) -> None:
        super().__init__(f"Receipt {receipt_id} not found")
        self.receipt_id = receipt_id


class InvalidTransition(DomainError):
    """A processing-status change that would move a receipt backwards."""

    code = "invalid_transition"
    status_code = 409

    def __init__(self, current: ReceiptStatus, target: ReceiptStatus) -> None:
        super().__init__(f"cannot move receipt from {current.value} to {target.value}")
        self.current = current
        self.target = target


class ExtractionFailure(DomainError):
    """The extraction collaborator failed, timed out or returned garbage."""

    code = "extraction_failed"
    status_code = 502


class BlobNotFound(DomainError):
    code = "blob_not_found"
    status_code = 404
