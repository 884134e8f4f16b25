"""Fiscal year labels.

The fiscal year runs July 1 to June 30 and is labelled
``"{startYear}-{endYear}"``. Every call site (upload, extraction,
manual edit, quota, subscription status) must go through
:func:`fiscal_year_for` so the label never diverges.
"""

from __future__ import annotations

import datetime as dt
from typing import Optional

from fuelrefund.utils.helpers import today

FISCAL_YEAR_START_MONTH = 7


def fiscal_year_for(value: dt.date) -> str:
    if isinstance(value, dt.datetime):
        value = value.date()
    if value.month >= FISCAL_YEAR_START_MONTH:
        return f"{value.year}-{value.year + 1}"
    return f"{value.year - 1}-{value.year}"


def current_fiscal_year(now: Optional[dt.date] = None) -> str:
    return fiscal_year_for(now or today())


def is_fiscal_year_label(label: str) -> bool:
    start, sep, end = label.partition("-")
    return bool(sep) and start.isdigit() and end.isdigit() and int(end) == int(start) + 1
