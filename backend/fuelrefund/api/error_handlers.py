"""
Exception handlers for FastAPI.
Domain errors carry a stable code so clients can show the right message or upsell.
"""

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.status import HTTP_422_UNPROCESSABLE_ENTITY, HTTP_500_INTERNAL_SERVER_ERROR

from fuelrefund.core.errors import DomainError, QuotaExceeded, ValidationError
from fuelrefund.core.observability import capture_exception


def domain_exception_handler(request: Request, exc: DomainError):
    content = {"error": exc.code, "detail": exc.message}
    if isinstance(exc, QuotaExceeded):
        content["reason"] = exc.reason.value
    if isinstance(exc, ValidationError) and exc.field:
        content["field"] = exc.field
    return JSONResponse(status_code=exc.status_code, content=content)


def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error": "Validation error",
            "details": jsonable_encoder(exc.errors()),
        },
    )


def generic_exception_handler(request: Request, exc: Exception):
    capture_exception(exc)
    return JSONResponse(
        status_code=HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Internal server error",
            "details": str(exc),
        },
    )


def register_exception_handlers(app) -> None:
    app.add_exception_handler(DomainError, domain_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
