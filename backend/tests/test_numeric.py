from __future__ import annotations

import logging
from decimal import Decimal

import pytest

from fuelrefund.utils.numeric import parse_decimal


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("$1,234.56", Decimal("1234.56")),
        (" 12.500 ", Decimal("12.500")),
        (0.075, Decimal("0.075")),
        (10, Decimal("10")),
        (Decimal("3.459"), Decimal("3.459")),
    ],
)
def test_parse_decimal_accepts_receipt_formats(raw, expected):
    assert parse_decimal(raw) == expected


@pytest.mark.parametrize("raw", [None, "", "   ", True, "NaN", "Infinity", "twelve", "1e30", "10000000"])
def test_parse_decimal_rejects_without_raising(raw):
    assert parse_decimal(raw, "gallons") is None


def test_unparsable_value_is_logged(caplog):
    with caplog.at_level(logging.WARNING, logger="fuelrefund.utils.numeric"):
        assert parse_decimal("12.5 gal", "gallons") is None
    assert "gallons" in caplog.text


def test_limits_follow_the_column():
    assert parse_decimal("9999999.999", "gallons") == Decimal("9999999.999")
    assert parse_decimal("10000000", "gallons") is None
    assert parse_decimal("10000000", "total_amount") == Decimal("10000000")
    assert parse_decimal("-1e8", "total_amount") is None
