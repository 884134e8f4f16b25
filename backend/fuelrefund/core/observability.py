"""Observability helpers (Sentry init and scrubbing).

Sentry initialisation is shared by the API and the worker so the two
never drift. Everything here is a no-op while ``SENTRY_DSN`` is unset.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from fuelrefund.core.config import settings

_SCRUBBED_HEADERS = ("authorization", "cookie", "set-cookie", "x-api-key", "stripe-signature")


def _before_send(event: Dict[str, Any], hint: Dict[str, Any] | None = None):
    """Drop credentials and raw request bodies (uploaded receipts) before sending."""
    req = event.get("request") or {}
    headers = req.get("headers") or {}
    for k in list(headers.keys()):
        if k.lower() in _SCRUBBED_HEADERS:
            headers.pop(k, None)
    req.pop("data", None)
    event["request"] = req
    return event


def init_sentry(service: str) -> bool:
    """Initialise Sentry once per process; returns True when enabled."""
    if not settings.SENTRY_DSN:
        return False
    if getattr(init_sentry, "_done", False):
        return True
    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        integrations=[FastApiIntegration(), SqlalchemyIntegration()],
        traces_sample_rate=float(settings.SENTRY_TRACES_SAMPLE_RATE or 0),
        environment=settings.ENVIRONMENT,
        release=settings.SENTRY_RELEASE,
        before_send=_before_send,
    )
    sentry_sdk.set_tag("service", service)
    init_sentry._done = True  # type: ignore[attr-defined]
    return True


def sentry_set_tags(tags: Dict[str, Any]) -> None:
    """Set tags on the current scope (values coerced to short strings)."""
    if not settings.SENTRY_DSN:
        return
    for k, v in (tags or {}).items():
        sentry_sdk.set_tag(str(k), str(v)[:128] if v is not None else "")


def sentry_breadcrumb(category: str, message: str, level: str = "info", data: Optional[Dict[str, Any]] = None) -> None:
    """Record a breadcrumb for an important lifecycle step."""
    if not settings.SENTRY_DSN:
        return
    sentry_sdk.add_breadcrumb(category=category, message=message, level=level, data=data or {})


def capture_exception(exc: BaseException) -> None:
    if settings.SENTRY_DSN:
        sentry_sdk.capture_exception(exc)


__all__ = ["init_sentry", "sentry_set_tags", "sentry_breadcrumb", "capture_exception"]
