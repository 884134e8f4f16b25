"""Miscellaneous helper functions."""

from __future__ import annotations

import datetime as dt
from typing import Optional


def utcnow() -> dt.datetime:
    """Naive UTC timestamp, matching how every ``DateTime`` column is stored."""
    return dt.datetime.now(dt.timezone.utc).replace(tzinfo=None)


def today() -> dt.date:
    return utcnow().date()


def parse_iso_date(value: str | None) -> Optional[dt.date]:
    """Parse a ``YYYY-MM-DD`` string; ``None`` when empty or malformed.

    A trailing time component (``2024-07-01T00:00:00Z``) is tolerated and
    dropped, since extraction models occasionally return one.
    """
    if not value:
        return None
    value = value.strip()
    if "T" in value:
        value = value.split("T", 1)[0]
    try:
        return dt.date.fromisoformat(value)
    except ValueError:
        return None
