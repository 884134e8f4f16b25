"""Refund Calculator and Refund Aggregator.

The refund is the incremental (non-base) portion of the fuel tax:
``gallons * increase``. Only purchases made in the home jurisdiction
with a known tax window are eligible. Estimates are advisory, so the
calculator never raises: bad input yields a zero refund with an
explicit ineligibility reason and a logged warning.

Unrounded refunds are kept internally. Rounding (half up, to cents)
happens once for the per-receipt display value and once per fiscal
year total, so totals do not drift across many small receipts.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from fuelrefund.models.enums import IneligibleReason, ReceiptStatus
from fuelrefund.models.tables import Receipt, TaxRate
from fuelrefund.services.tax_rates import TaxRateResolver
from fuelrefund.utils.numeric import parse_decimal

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0")


def round_money(value: Decimal) -> Decimal:
    """Round half up to cents; a value the context cannot quantize becomes zero."""
    try:
        return value.quantize(CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        logger.warning("[refund] cannot round %r to cents; reporting zero", value)
        return ZERO.quantize(CENT)


@dataclass(frozen=True)
class RefundResult:
    eligible: bool
    refund: Decimal  # unrounded
    reason: Optional[IneligibleReason] = None
    base_rate: Optional[Decimal] = None
    increase: Optional[Decimal] = None

    @property
    def display_refund(self) -> Decimal:
        return round_money(self.refund)


def _ineligible(reason: IneligibleReason, rate: Optional[TaxRate] = None) -> RefundResult:
    return RefundResult(
        eligible=False,
        refund=ZERO,
        reason=reason,
        base_rate=parse_decimal(getattr(rate, "base_rate", None), "base_rate") if rate is not None else None,
        increase=parse_decimal(getattr(rate, "increase", None), "increase") if rate is not None else None,
    )


def calculate_refund(seller_state, gallons, rate: Optional[TaxRate], home_jurisdiction: str) -> RefundResult:
    """Refund for one purchase. Never raises."""
    try:
        state = (str(seller_state).strip() if seller_state is not None else "").upper()
        if state != home_jurisdiction.strip().upper():
            return _ineligible(IneligibleReason.OUT_OF_STATE, rate)
        if rate is None:
            return _ineligible(IneligibleReason.NO_TAX_RATE)
        gallons_value = parse_decimal(gallons, "gallons")
        increase = parse_decimal(rate.increase, "increase")
        if gallons_value is None or increase is None:
            logger.warning("[refund] parse error gallons=%r increase=%r", gallons, rate.increase)
            return _ineligible(IneligibleReason.PARSE_ERROR, rate)
        return RefundResult(
            eligible=True,
            refund=gallons_value * increase,
            base_rate=parse_decimal(rate.base_rate, "base_rate"),
            increase=increase,
        )
    except Exception as exc:
        logger.warning("[refund] calculation degraded to zero: %s", exc)
        return _ineligible(IneligibleReason.PARSE_ERROR)


def refund_for_receipt(receipt: Receipt, rate: Optional[TaxRate], home_jurisdiction: str) -> RefundResult:
    if receipt.processing_status != ReceiptStatus.COMPLETED:
        return _ineligible(IneligibleReason.NOT_COMPLETED, rate)
    return calculate_refund(receipt.seller_state, receipt.gallons, rate, home_jurisdiction)


class RoundingMode(str, Enum):
    """Where rounding happens when summing refunds."""

    PER_GROUP = "per_group"  # sum unrounded, round each fiscal year once
    PER_ITEM = "per_item"  # round every receipt first, then sum


def aggregate_refunds(
    items: Iterable[Tuple[str, RefundResult]],
    rounding: RoundingMode = RoundingMode.PER_GROUP,
) -> Dict[str, Decimal]:
    """Total refund per fiscal year.

    ``items`` pairs each receipt's fiscal year with its refund result.
    Ineligible receipts (including ones not yet completed) contribute
    zero but still make their fiscal year appear in the result.
    """
    totals: Dict[str, Decimal] = {}
    for fiscal_year, result in items:
        amount = ZERO
        if result.eligible:
            amount = result.display_refund if rounding == RoundingMode.PER_ITEM else result.refund
        totals[fiscal_year] = totals.get(fiscal_year, ZERO) + amount
    return {fy: round_money(total) for fy, total in sorted(totals.items())}


async def annotate_receipts(
    session: AsyncSession,
    receipts: Sequence[Receipt],
    home_jurisdiction: str,
) -> List[Tuple[Receipt, RefundResult]]:
    """Pair each receipt with its refund, resolving each distinct date once."""
    resolver = TaxRateResolver(session)
    rates = await resolver.resolve_many(r.date for r in receipts)
    return [(r, refund_for_receipt(r, rates.get(r.date), home_jurisdiction)) for r in receipts]
