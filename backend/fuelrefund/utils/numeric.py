"""Lenient parsing of money and volume values.

Receipts arrive with values like ``"$1,234.56"`` or ``" 12.500 "``.
Parsing never raises: anything that does not yield a finite decimal
small enough for its column becomes ``None`` and a warning is logged so
the degradation is visible.
"""

from __future__ import annotations

import logging
import re
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

logger = logging.getLogger(__name__)

_STRIP_RE = re.compile(r"[$,\s]")

# Gallons, prices and tax rates are Numeric(10, 3); totals are Numeric(10, 2)
MAX_MAGNITUDE = Decimal(10) ** 7
FIELD_LIMITS = {"total_amount": Decimal(10) ** 8}


def parse_decimal(value: Any, field: str = "value") -> Optional[Decimal]:
    """Return ``value`` as a finite :class:`~decimal.Decimal` or ``None``."""
    if value is None:
        return None
    if isinstance(value, bool):
        logger.warning("[numeric] boolean is not a number field=%s", field)
        return None
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, int):
        result = Decimal(value)
    elif isinstance(value, float):
        # str() keeps the shortest repr (0.075 rather than 0.07499999...)
        result = Decimal(str(value))
    else:
        cleaned = _STRIP_RE.sub("", str(value))
        if not cleaned:
            return None
        try:
            result = Decimal(cleaned)
        except InvalidOperation:
            logger.warning("[numeric] unparsable field=%s value=%r", field, value)
            return None
    if not result.is_finite():
        logger.warning("[numeric] non-finite field=%s value=%r", field, value)
        return None
    if abs(result) >= FIELD_LIMITS.get(field, MAX_MAGNITUDE):
        logger.warning("[numeric] out of range field=%s value=%r", field, value)
        return None
    return result

