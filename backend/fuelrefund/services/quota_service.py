"""Quota Guard: upload admission per (account, fiscal year).

State machine of an :class:`~fuelrefund.models.tables.AccountSubscription`:

* ``trial``: created on the first upload of a fiscal year, capped by a
  receipt count and a day window starting at first use.
* ``active``: entered when billing reports a completed purchase.
* ``expired`` / ``canceled``: no further uploads for the fiscal year;
  existing receipts stay readable. An expired trial may still be
  activated by a purchase; a canceled subscription may not.

``receipt_limit`` is always ``base limit for the status + sum of pack
sizes bought for the fiscal year`` and never decreases.

Admission and the usage increment are a single conditional ``UPDATE``
so two uploads racing for the last slot cannot both win.
"""

from __future__ import annotations

import datetime as dt
import logging
import math
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from fuelrefund.core.config import settings
from fuelrefund.core.errors import QuotaExceeded
from fuelrefund.core.observability import sentry_breadcrumb, sentry_set_tags
from fuelrefund.models.enums import QuotaDenialReason, SubscriptionStatus
from fuelrefund.models.schemas import SubscriptionStatusOut
from fuelrefund.models.tables import AccountSubscription, ReceiptPack
from fuelrefund.utils.helpers import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlanLimits:
    trial_receipts: int
    trial_days: int
    active_receipts: int

    @classmethod
    def from_settings(cls) -> "PlanLimits":
        return cls(
            trial_receipts=settings.TRIAL_RECEIPT_LIMIT,
            trial_days=settings.TRIAL_DAYS,
            active_receipts=settings.ACTIVE_BASE_RECEIPT_LIMIT,
        )

    def base_limit(self, status: SubscriptionStatus) -> int:
        return self.active_receipts if status == SubscriptionStatus.ACTIVE else self.trial_receipts


@dataclass(frozen=True)
class QuotaDecision:
    allowed: bool
    reason: Optional[QuotaDenialReason] = None


def trial_expired(sub: AccountSubscription, now: dt.datetime) -> bool:
    return sub.status == SubscriptionStatus.TRIAL and (sub.trial_ends_at is None or sub.trial_ends_at <= now)


def denial_reason(sub: AccountSubscription, now: dt.datetime) -> Optional[QuotaDenialReason]:
    """Why ``sub`` refuses another upload at ``now``; ``None`` if it admits one."""
    if sub.status == SubscriptionStatus.CANCELED:
        return QuotaDenialReason.SUBSCRIPTION_CANCELED
    if sub.status == SubscriptionStatus.EXPIRED or trial_expired(sub, now):
        return QuotaDenialReason.TRIAL_EXPIRED
    if sub.receipt_count >= sub.receipt_limit:
        return QuotaDenialReason.RECEIPT_LIMIT_REACHED
    return None


class QuotaService:
    """Encapsulates quota reads, admission and billing-driven transitions.

    None of the methods commit; the caller owns the transaction so that
    a quota increment lands together with the receipt it paid for.
    """

    def __init__(self, limits: Optional[PlanLimits] = None) -> None:
        self.limits = limits or PlanLimits.from_settings()

    # --- Reads ---------------------------------------------------------
    @staticmethod
    def _subscription_query(account_id: int, fiscal_year: str, refresh: bool):
        stmt = select(AccountSubscription).where(
            AccountSubscription.account_id == account_id,
            AccountSubscription.fiscal_year == fiscal_year,
        )
        if refresh:
            stmt = stmt.execution_options(populate_existing=True)
        return stmt

    async def get_subscription(
        self, db: AsyncSession, account_id: int, fiscal_year: str, refresh: bool = False
    ) -> Optional[AccountSubscription]:
        result = await db.execute(self._subscription_query(account_id, fiscal_year, refresh))
        return result.scalar_one_or_none()

    async def _existing_subscription(self, db: AsyncSession, account_id: int, fiscal_year: str) -> AccountSubscription:
        """Reload a row known to exist; raises ``NoResultFound`` otherwise."""
        result = await db.execute(self._subscription_query(account_id, fiscal_year, refresh=True))
        return result.scalar_one()

    async def pack_total(self, db: AsyncSession, account_id: int, fiscal_year: str) -> int:
        result = await db.execute(
            select(func.coalesce(func.sum(ReceiptPack.receipts_added), 0)).where(
                ReceiptPack.account_id == account_id,
                ReceiptPack.fiscal_year == fiscal_year,
            )
        )
        return int(result.scalar() or 0)

    async def can_upload(
        self, db: AsyncSession, account_id: int, fiscal_year: str, now: Optional[dt.datetime] = None
    ) -> QuotaDecision:
        """Read-only admission check. A missing row admits (a trial starts)."""
        now = now or utcnow()
        sub = await self.get_subscription(db, account_id, fiscal_year)
        if sub is None:
            return QuotaDecision(allowed=True)
        reason = denial_reason(sub, now)
        return QuotaDecision(allowed=reason is None, reason=reason)

    async def status(
        self, db: AsyncSession, account_id: int, fiscal_year: str, now: Optional[dt.datetime] = None
    ) -> SubscriptionStatusOut:
        now = now or utcnow()
        sub = await self.get_subscription(db, account_id, fiscal_year)
        if sub is None:
            packs = await self.pack_total(db, account_id, fiscal_year)
            return SubscriptionStatusOut(
                account_id=account_id,
                fiscal_year=fiscal_year,
                status=SubscriptionStatus.TRIAL,
                trial_days_remaining=self.limits.trial_days,
                receipt_count=0,
                receipt_limit=self.limits.trial_receipts + packs,
                can_upload=True,
                upgrade_required=False,
            )
        reason = denial_reason(sub, now)
        status = SubscriptionStatus.EXPIRED if trial_expired(sub, now) else sub.status
        days_remaining: Optional[int] = None
        if status in (SubscriptionStatus.TRIAL, SubscriptionStatus.EXPIRED) and sub.trial_ends_at is not None:
            days_remaining = max(0, math.ceil((sub.trial_ends_at - now).total_seconds() / 86400))
        return SubscriptionStatusOut(
            account_id=account_id,
            fiscal_year=fiscal_year,
            status=status,
            trial_days_remaining=days_remaining,
            receipt_count=sub.receipt_count,
            receipt_limit=sub.receipt_limit,
            can_upload=reason is None,
            upgrade_required=reason is not None,
            reason=reason,
        )

    # --- Admission -----------------------------------------------------
    async def reserve_upload(
        self, db: AsyncSession, account_id: int, fiscal_year: str, now: Optional[dt.datetime] = None
    ) -> AccountSubscription:
        """Admit one upload and count it, atomically.

        Raises :class:`QuotaExceeded` with the denial reason when the
        account may not upload. A trial that is found to have run out is
        marked ``expired`` in the caller's transaction.
        """
        now = now or utcnow()
        for _attempt in range(2):
            if await self._conditional_increment(db, account_id, fiscal_year, now):
                return await self._existing_subscription(db, account_id, fiscal_year)
            sub = await self.get_subscription(db, account_id, fiscal_year, refresh=True)
            if sub is None:
                created = await self._create_subscription(
                    db, account_id, fiscal_year, SubscriptionStatus.TRIAL, now, receipt_count=1
                )
                if created is not None:
                    logger.info("[quota] trial started account_id=%s fiscal_year=%s", account_id, fiscal_year)
                    return created
                # Lost the insert race; the row exists now, so go round again
                continue
            reason = denial_reason(sub, now) or QuotaDenialReason.RECEIPT_LIMIT_REACHED
            if reason == QuotaDenialReason.TRIAL_EXPIRED and sub.status == SubscriptionStatus.TRIAL:
                sub.status = SubscriptionStatus.EXPIRED
            logger.info(
                "[quota] upload denied account_id=%s fiscal_year=%s reason=%s count=%s limit=%s",
                account_id, fiscal_year, reason.value, sub.receipt_count, sub.receipt_limit,
            )
            sentry_set_tags({"quota.denied": True, "quota.reason": reason.value})
            sentry_breadcrumb(category="quota", message="upload.denied", data={"reason": reason.value})
            raise QuotaExceeded(reason)
        raise QuotaExceeded(QuotaDenialReason.RECEIPT_LIMIT_REACHED)

    async def _conditional_increment(
        self, db: AsyncSession, account_id: int, fiscal_year: str, now: dt.datetime
    ) -> bool:
        admissible = or_(
            AccountSubscription.status == SubscriptionStatus.ACTIVE,
            and_(
                AccountSubscription.status == SubscriptionStatus.TRIAL,
                AccountSubscription.trial_ends_at > now,
            ),
        )
        stmt = (
            update(AccountSubscription)
            .where(
                AccountSubscription.account_id == account_id,
                AccountSubscription.fiscal_year == fiscal_year,
                AccountSubscription.receipt_count < AccountSubscription.receipt_limit,
                admissible,
            )
            .values(receipt_count=AccountSubscription.receipt_count + 1, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        return result.rowcount == 1

    async def _create_subscription(
        self,
        db: AsyncSession,
        account_id: int,
        fiscal_year: str,
        status: SubscriptionStatus,
        now: dt.datetime,
        receipt_count: int = 0,
    ) -> Optional[AccountSubscription]:
        """Insert the row inside a savepoint; ``None`` if another writer beat us."""
        packs = await self.pack_total(db, account_id, fiscal_year)
        sub = AccountSubscription(
            account_id=account_id,
            fiscal_year=fiscal_year,
            status=status,
            trial_started_at=now if status == SubscriptionStatus.TRIAL else None,
            trial_ends_at=now + dt.timedelta(days=self.limits.trial_days) if status == SubscriptionStatus.TRIAL else None,
            activated_at=now if status == SubscriptionStatus.ACTIVE else None,
            receipt_count=receipt_count,
            receipt_limit=self.limits.base_limit(status) + packs,
            created_at=now,
            updated_at=now,
        )
        try:
            async with db.begin_nested():
                db.add(sub)
        except IntegrityError:
            logger.info("[quota] concurrent subscription insert account_id=%s fiscal_year=%s", account_id, fiscal_year)
            return None
        return sub

    async def _get_or_create(
        self, db: AsyncSession, account_id: int, fiscal_year: str, status: SubscriptionStatus, now: dt.datetime
    ) -> AccountSubscription:
        sub = await self.get_subscription(db, account_id, fiscal_year, refresh=True)
        if sub is None:
            sub = await self._create_subscription(db, account_id, fiscal_year, status, now)
        if sub is None:
            # Another writer inserted it first
            sub = await self._existing_subscription(db, account_id, fiscal_year)
        return sub

    async def recompute_limit(self, db: AsyncSession, sub: AccountSubscription) -> int:
        packs = await self.pack_total(db, sub.account_id, sub.fiscal_year)
        computed = self.limits.base_limit(sub.status) + packs
        # Never lower a limit already granted
        sub.receipt_limit = max(sub.receipt_limit or 0, computed)
        return sub.receipt_limit

    # --- Billing-driven transitions -------------------------------------
    async def activate(
        self, db: AsyncSession, account_id: int, fiscal_year: str, now: Optional[dt.datetime] = None
    ) -> str:
        """Apply a completed purchase. Returns the outcome recorded in the ledger."""
        now = now or utcnow()
        sub = await self._get_or_create(db, account_id, fiscal_year, SubscriptionStatus.ACTIVE, now)
        if sub.status == SubscriptionStatus.CANCELED:
            logger.warning(
                "[quota] purchase ignored for canceled subscription account_id=%s fiscal_year=%s",
                account_id, fiscal_year,
            )
            return "ignored_canceled"
        if sub.status != SubscriptionStatus.ACTIVE:
            sub.status = SubscriptionStatus.ACTIVE
            sub.activated_at = now
        await self.recompute_limit(db, sub)
        logger.info(
            "[quota] activated account_id=%s fiscal_year=%s limit=%s", account_id, fiscal_year, sub.receipt_limit
        )
        return "activated"

    async def add_pack(
        self,
        db: AsyncSession,
        account_id: int,
        fiscal_year: str,
        receipts_added: int,
        payment_reference: str,
        price_cents: Optional[int] = None,
        now: Optional[dt.datetime] = None,
    ) -> str:
        """Record a receipt pack once per payment reference and raise the limit."""
        now = now or utcnow()
        existing = await db.execute(select(ReceiptPack.id).where(ReceiptPack.payment_reference == payment_reference))
        if existing.scalar_one_or_none() is not None:
            logger.info("[quota] pack already applied payment_reference=%s", payment_reference)
            return "duplicate_pack"
        pack = ReceiptPack(
            account_id=account_id,
            fiscal_year=fiscal_year,
            receipts_added=receipts_added,
            price_cents=price_cents,
            payment_reference=payment_reference,
            created_at=now,
        )
        try:
            async with db.begin_nested():
                db.add(pack)
        except IntegrityError:
            logger.info("[quota] concurrent pack insert payment_reference=%s", payment_reference)
            return "duplicate_pack"
        sub = await self._get_or_create(db, account_id, fiscal_year, SubscriptionStatus.TRIAL, now)
        await self.recompute_limit(db, sub)
        logger.info(
            "[quota] pack applied account_id=%s fiscal_year=%s added=%s limit=%s",
            account_id, fiscal_year, receipts_added, sub.receipt_limit,
        )
        return "pack_added"

    async def cancel(
        self, db: AsyncSession, account_id: int, fiscal_year: str, now: Optional[dt.datetime] = None
    ) -> str:
        now = now or utcnow()
        sub = await self.get_subscription(db, account_id, fiscal_year, refresh=True)
        if sub is None:
            logger.warning("[quota] cancel for unknown subscription account_id=%s fiscal_year=%s", account_id, fiscal_year)
            return "ignored_missing"
        if sub.status != SubscriptionStatus.CANCELED:
            sub.status = SubscriptionStatus.CANCELED
            sub.canceled_at = now
        logger.info("[quota] canceled account_id=%s fiscal_year=%s", account_id, fiscal_year)
        return "canceled"


__all__ = ["PlanLimits", "QuotaDecision", "QuotaService", "denial_reason", "trial_expired"]
