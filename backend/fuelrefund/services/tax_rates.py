"""Tax Rate Resolver.

Maps a purchase date to the :class:`~fuelrefund.models.tables.TaxRate`
window containing it. Resolution is done per batch: the distinct dates
of a listing are resolved once each and the mapping is discarded with
the resolver. Nothing is cached across requests, so a rate edited by an
admin is visible on the next request.
"""

from __future__ import annotations

import datetime as dt
import logging
from typing import Dict, Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fuelrefund.models.tables import TaxRate

logger = logging.getLogger(__name__)

DEFAULT_FUEL_TYPE = "Motor Fuel"


def rate_for_date(rates: Iterable[TaxRate], day: dt.date) -> Optional[TaxRate]:
    """Return the rate whose ``[start_date, end_date)`` window contains ``day``."""
    for rate in rates:
        if rate.start_date <= day and (rate.end_date is None or day < rate.end_date):
            return rate
    return None


class TaxRateResolver:
    """Batch-scoped resolver; create one per request."""

    def __init__(self, session: AsyncSession, fuel_type: str = DEFAULT_FUEL_TYPE) -> None:
        self.session = session
        self.fuel_type = fuel_type
        self._cache: Dict[dt.date, Optional[TaxRate]] = {}
        self._rates: Optional[List[TaxRate]] = None

    async def _load_rates(self) -> List[TaxRate]:
        if self._rates is None:
            result = await self.session.execute(
                select(TaxRate).where(TaxRate.fuel_type == self.fuel_type).order_by(TaxRate.start_date)
            )
            self._rates = list(result.scalars().all())
        return self._rates

    async def resolve_many(self, dates: Iterable[Optional[dt.date]]) -> Dict[dt.date, Optional[TaxRate]]:
        """Resolve every distinct date exactly once."""
        distinct = {d for d in dates if d is not None}
        pending = distinct - self._cache.keys()
        if pending:
            rates = await self._load_rates()
            for day in pending:
                rate = rate_for_date(rates, day)
                if rate is None:
                    logger.warning("[refund] no tax rate covers date=%s fuel_type=%s", day, self.fuel_type)
                self._cache[day] = rate
        return {d: self._cache[d] for d in distinct}

    async def resolve(self, day: dt.date) -> Optional[TaxRate]:
        return (await self.resolve_many([day]))[day]
