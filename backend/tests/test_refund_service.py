from __future__ import annotations

import types
from decimal import Decimal

from hypothesis import given, strategies as st

from fuelrefund.models.enums import IneligibleReason, ReceiptStatus
from fuelrefund.services.refund_service import (
    RefundResult,
    RoundingMode,
    aggregate_refunds,
    calculate_refund,
    refund_for_receipt,
    round_money,
)

RATE = types.SimpleNamespace(base_rate=Decimal("0.170"), increase=Decimal("0.075"))


def _receipt(status=ReceiptStatus.COMPLETED, state="MO", gallons="10.5"):
    return types.SimpleNamespace(processing_status=status, seller_state=state, gallons=gallons)


def test_refund_is_gallons_times_increase():
    result = calculate_refund("MO", Decimal("10.5"), RATE, "MO")
    assert result.eligible is True
    assert result.refund == Decimal("0.7875")
    assert result.display_refund == Decimal("0.79")
    assert result.base_rate == Decimal("0.170")
    assert result.increase == Decimal("0.075")


def test_state_match_is_case_insensitive():
    assert calculate_refund(" mo ", "10", RATE, "MO").eligible is True


def test_out_of_state_purchase_is_ineligible():
    result = calculate_refund("KS", Decimal("10.5"), RATE, "MO")
    assert result.eligible is False
    assert result.refund == Decimal("0")
    assert result.reason == IneligibleReason.OUT_OF_STATE


def test_missing_state_counts_as_out_of_state():
    assert calculate_refund(None, "10", RATE, "MO").reason == IneligibleReason.OUT_OF_STATE


def test_missing_rate_is_ineligible():
    result = calculate_refund("MO", "10", None, "MO")
    assert result.reason == IneligibleReason.NO_TAX_RATE
    assert result.display_refund == Decimal("0.00")


def test_unparsable_gallons_degrade_to_zero():
    result = calculate_refund("MO", "lots", RATE, "MO")
    assert result.eligible is False
    assert result.refund == Decimal("0")
    assert result.reason == IneligibleReason.PARSE_ERROR


def test_bad_rate_data_degrades_to_zero():
    broken = types.SimpleNamespace(base_rate="n/a", increase="n/a")
    assert calculate_refund("MO", "10", broken, "MO").reason == IneligibleReason.PARSE_ERROR


def test_unfinished_receipt_is_not_completed():
    result = refund_for_receipt(_receipt(status=ReceiptStatus.PROCESSING), RATE, "MO")
    assert result.reason == IneligibleReason.NOT_COMPLETED
    assert result.refund == Decimal("0")


def test_round_money_is_half_up():
    assert round_money(Decimal("0.125")) == Decimal("0.13")
    assert round_money(Decimal("0.0049")) == Decimal("0.00")


def test_per_group_rounding_avoids_drift():
    small = calculate_refund("MO", "0.5", RATE, "MO")  # 0.0375 each
    items = [("2024-2025", small)] * 3
    assert aggregate_refunds(items) == {"2024-2025": Decimal("0.11")}
    assert aggregate_refunds(items, RoundingMode.PER_ITEM) == {"2024-2025": Decimal("0.12")}


def test_ineligible_receipts_still_list_their_fiscal_year():
    pending = refund_for_receipt(_receipt(status=ReceiptStatus.PENDING), RATE, "MO")
    eligible = calculate_refund("MO", "10", RATE, "MO")
    totals = aggregate_refunds([("2023-2024", pending), ("2024-2025", eligible)])
    assert totals == {"2023-2024": Decimal("0.00"), "2024-2025": Decimal("0.75")}


_refunds = st.builds(
    lambda eligible, cents: RefundResult(eligible=eligible, refund=Decimal(cents) / Decimal(10000)),
    st.booleans(),
    st.integers(min_value=0, max_value=500000),
)
_items = st.lists(st.tuples(st.sampled_from(["2023-2024", "2024-2025", "2025-2026"]), _refunds), max_size=40)


@given(_items.flatmap(lambda items: st.tuples(st.just(items), st.permutations(items))))
def test_totals_do_not_depend_on_order(pair):
    items, shuffled = pair
    for mode in RoundingMode:
        assert aggregate_refunds(items, mode) == aggregate_refunds(shuffled, mode)


@given(_items)
def test_every_fiscal_year_present_appears(items):
    totals = aggregate_refunds(items)
    assert set(totals) == {fy for fy, _ in items}
    assert all(total >= 0 for total in totals.values())


def test_oversized_gallons_are_a_parse_error():
    result = calculate_refund("MO", "1e30", RATE, "MO")
    assert result.eligible is False
    assert result.reason == IneligibleReason.PARSE_ERROR


def test_rounding_a_value_beyond_the_context_reports_zero():
    huge = RefundResult(eligible=True, refund=Decimal("9" * 40))
    assert huge.display_refund == Decimal("0.00")
    assert aggregate_refunds([("2024-2025", huge)]) == {"2024-2025": Decimal("0.00")}
