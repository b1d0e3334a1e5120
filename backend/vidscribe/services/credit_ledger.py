"""Credit ledger for metered transcription minutes.

Minutes come from two buckets: a per-period subscription allowance and a
perpetual top-up balance. Subscription usage is computed on read by summing
usage rows recorded inside the billing window, so refunding subscription
minutes only needs the rows deleted. The top-up balance is a mutable counter
on the profile.

Every balance mutation runs inside a single transaction while holding the
user's balance lock: the profile row is selected ``FOR UPDATE`` and an
in-process per-user ``asyncio.Lock`` serializes callers sharing this process
(SQLite has no row locks).
"""

from __future__ import annotations

import asyncio
import math
import weakref
from contextlib import AsyncExitStack
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Iterable, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from vidscribe.config import settings
from vidscribe.database import AsyncSessionLocal
from vidscribe.logging_config import get_logger
from vidscribe.models.profile import Profile
from vidscribe.models.topup_purchase import TopupPurchase
from vidscribe.models.transcription_usage import UsageRecord, UsageSource

logger = get_logger(__name__)


class CreditReason(str, Enum):
    OK = "OK"
    NOT_ENTITLED = "NOT_ENTITLED"
    NO_ACCOUNT = "NO_ACCOUNT"
    INSUFFICIENT_CREDITS = "INSUFFICIENT_CREDITS"


class LedgerError(Exception):
    """Raised when a ledger operation cannot be applied."""

    def __init__(self, reason: str, message: str):
        self.reason = reason
        self.message = message
        super().__init__(f"[{reason}] {message}")


@dataclass(frozen=True, slots=True)
class BillingWindow:
    """Billing period bounds supplied by the caller on every ledger call."""

    start: datetime
    end: datetime

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment < self.end


@dataclass(frozen=True, slots=True)
class CreditCheck:
    allowed: bool
    reason: CreditReason
    subscription_remaining: int = 0
    topup_remaining: int = 0
    total_remaining: int = 0
    minutes_needed: int = 0
    will_use_topup: bool = False


@dataclass(frozen=True, slots=True)
class ConsumeResult:
    allowed: bool
    reason: CreditReason
    minutes_from_subscription: int = 0
    minutes_from_topup: int = 0
    subscription_remaining: int = 0
    topup_remaining: int = 0

    @property
    def total_remaining(self) -> int:
        return self.subscription_remaining + self.topup_remaining


@dataclass(frozen=True, slots=True)
class RefundResult:
    minutes_refunded: int = 0
    topup_restored: int = 0


@dataclass(frozen=True, slots=True)
class TopupResult:
    already_processed: bool
    minutes_added: int
    new_balance: int


@dataclass(frozen=True, slots=True)
class UsageStats:
    is_entitled: bool
    subscription_used: int
    subscription_limit: int
    subscription_remaining: int
    topup_minutes: int
    period_start: datetime
    period_end: datetime

    @property
    def total_remaining(self) -> int:
        return self.subscription_remaining + self.topup_minutes


def is_entitled(tier: Optional[str]) -> bool:
    return bool(tier) and tier.lower() in settings.entitled_tier_set


def subscription_limit_for(tier: Optional[str]) -> int:
    """Per-period subscription allowance, in minutes, for an account tier."""
    if not is_entitled(tier):
        return 0
    return settings.pro_transcription_minutes


def minutes_for_duration(duration_seconds: float) -> int:
    """Round a duration up to whole billable minutes (at least one)."""
    return max(1, math.ceil(max(0.0, float(duration_seconds)) / 60))


def billing_period_for(
    profile: Optional[Profile], now: Optional[datetime] = None
) -> BillingWindow:
    """Return the billing window containing ``now`` for a profile.

    The profile's subscription period is used when it covers ``now``;
    otherwise the calendar month (UTC) is the window.
    """
    now = now or datetime.utcnow()
    start = profile.subscription_current_period_start if profile else None
    end = profile.subscription_current_period_end if profile else None
    if start and end and start <= now < end:
        return BillingWindow(start=start, end=end)

    month_start = datetime(now.year, now.month, 1)
    if now.month == 12:
        month_end = datetime(now.year + 1, 1, 1)
    else:
        month_end = datetime(now.year, now.month + 1, 1)
    return BillingWindow(start=month_start, end=month_end)


_balance_locks: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, dict[int, asyncio.Lock]]" = (
    weakref.WeakKeyDictionary()
)


def _balance_lock(user_id: int) -> asyncio.Lock:
    loop = asyncio.get_running_loop()
    locks = _balance_locks.setdefault(loop, {})
    lock = locks.get(user_id)
    if lock is None:
        lock = locks[user_id] = asyncio.Lock()
    return lock


class CreditLedger:
    """Check, consume, refund and top up transcription minutes."""

    def __init__(self, session_factory: Callable[[], AsyncSession] = AsyncSessionLocal):
        self._session_factory = session_factory

    async def _subscription_usage(
        self, session: AsyncSession, user_id: int, window: BillingWindow
    ) -> int:
        result = await session.execute(
            select(func.coalesce(func.sum(UsageRecord.minutes_used), 0)).where(
                UsageRecord.user_id == user_id,
                UsageRecord.source == UsageSource.SUBSCRIPTION.value,
                UsageRecord.period_start == window.start,
                UsageRecord.period_end == window.end,
            )
        )
        return int(result.scalar_one() or 0)

    async def check_available(
        self,
        user_id: int,
        minutes_needed: int,
        window: BillingWindow,
        subscription_limit: Optional[int] = None,
    ) -> CreditCheck:
        """Read-only pre-flight check of the user's combined balance."""
        async with self._session_factory() as session:
            profile = await session.get(Profile, user_id)
            if profile is None:
                return CreditCheck(False, CreditReason.NO_ACCOUNT, minutes_needed=minutes_needed)
            if not is_entitled(profile.subscription_tier):
                return CreditCheck(False, CreditReason.NOT_ENTITLED, minutes_needed=minutes_needed)

            limit = (
                subscription_limit
                if subscription_limit is not None
                else subscription_limit_for(profile.subscription_tier)
            )
            used = await self._subscription_usage(session, user_id, window)
            subscription_remaining = max(0, limit - used)
            topup = int(profile.transcription_minutes_topup or 0)
            total = subscription_remaining + topup
            allowed = total >= minutes_needed
            return CreditCheck(
                allowed=allowed,
                reason=CreditReason.OK if allowed else CreditReason.INSUFFICIENT_CREDITS,
                subscription_remaining=subscription_remaining,
                topup_remaining=topup,
                total_remaining=total,
                minutes_needed=minutes_needed,
                will_use_topup=subscription_remaining < minutes_needed and topup > 0,
            )

    async def consume_atomic(
        self,
        user_id: int,
        job_id: str,
        minutes_needed: int,
        subscription_limit: int,
        window: BillingWindow,
    ) -> ConsumeResult:
        """Charge minutes for a job, subscription bucket first, all or nothing."""
        if minutes_needed <= 0:
            raise LedgerError("INVALID_AMOUNT", "minutes_needed must be positive")

        async with _balance_lock(user_id):
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        select(Profile).where(Profile.id == user_id).with_for_update()
                    )
                    profile = result.scalar_one_or_none()
                    if profile is None:
                        return ConsumeResult(False, CreditReason.NO_ACCOUNT)
                    if not is_entitled(profile.subscription_tier):
                        return ConsumeResult(False, CreditReason.NOT_ENTITLED)

                    used = await self._subscription_usage(session, user_id, window)
                    subscription_remaining = max(0, subscription_limit - used)
                    topup = int(profile.transcription_minutes_topup or 0)

                    if subscription_remaining >= minutes_needed:
                        from_subscription, from_topup = minutes_needed, 0
                    elif subscription_remaining + topup >= minutes_needed:
                        from_subscription = subscription_remaining
                        from_topup = minutes_needed - subscription_remaining
                    else:
                        logger.info(
                            "Consumption denied for job %s: needed=%s subscription=%s topup=%s",
                            job_id,
                            minutes_needed,
                            subscription_remaining,
                            topup,
                        )
                        return ConsumeResult(
                            False,
                            CreditReason.INSUFFICIENT_CREDITS,
                            subscription_remaining=subscription_remaining,
                            topup_remaining=topup,
                        )

                    if from_subscription > 0:
                        session.add(
                            UsageRecord(
                                user_id=user_id,
                                job_id=job_id,
                                minutes_used=from_subscription,
                                source=UsageSource.SUBSCRIPTION.value,
                                period_start=window.start,
                                period_end=window.end,
                            )
                        )
                    if from_topup > 0:
                        session.add(
                            UsageRecord(
                                user_id=user_id,
                                job_id=job_id,
                                minutes_used=from_topup,
                                source=UsageSource.TOPUP.value,
                            )
                        )
                        profile.transcription_minutes_topup = topup - from_topup

            logger.info(
                "Consumed %s minute(s) for job %s (subscription=%s, topup=%s)",
                minutes_needed,
                job_id,
                from_subscription,
                from_topup,
            )
            return ConsumeResult(
                True,
                CreditReason.OK,
                minutes_from_subscription=from_subscription,
                minutes_from_topup=from_topup,
                subscription_remaining=subscription_remaining - from_subscription,
                topup_remaining=topup - from_topup,
            )

    async def refund(self, job_id: str) -> RefundResult:
        """Reverse every usage row of a job. A job without usage is a no-op.

        The owning profiles are locked before the usage rows are read, so two
        workers refunding the same job serialize and the second sees no rows.
        """
        async with self._session_factory() as session:
            result = await session.execute(
                select(UsageRecord.user_id).where(UsageRecord.job_id == job_id).distinct()
            )
            user_ids = sorted(result.scalars().all())
        if not user_ids:
            return RefundResult()

        async with AsyncExitStack() as stack:
            for user_id in user_ids:
                await stack.enter_async_context(_balance_lock(user_id))
            async with self._session_factory() as session:
                async with session.begin():
                    profiles = {
                        profile.id: profile
                        for profile in (
                            await session.execute(
                                select(Profile)
                                .where(Profile.id.in_(user_ids))
                                .order_by(Profile.id)
                                .with_for_update()
                            )
                        ).scalars().all()
                    }
                    rows = (
                        await session.execute(
                            select(UsageRecord)
                            .where(UsageRecord.job_id == job_id)
                            .with_for_update()
                        )
                    ).scalars().all()
                    total, restored = self._reverse_rows(profiles, rows)
                    if rows:
                        await session.execute(
                            delete(UsageRecord).where(
                                UsageRecord.id.in_([row.id for row in rows])
                            )
                        )

        if total:
            logger.info(
                "Refunded %s minute(s) for job %s (topup restored=%s)", total, job_id, restored
            )
        return RefundResult(minutes_refunded=total, topup_restored=restored)

    @staticmethod
    def _reverse_rows(
        profiles: dict[int, Profile], rows: Iterable[UsageRecord]
    ) -> tuple[int, int]:
        total = 0
        restored = 0
        for row in rows:
            total += row.minutes_used
            # Subscription rows simply stop counting once deleted.
            if row.source != UsageSource.TOPUP.value:
                continue
            profile = profiles.get(row.user_id)
            if profile is None:
                continue
            profile.transcription_minutes_topup = (
                int(profile.transcription_minutes_topup or 0) + row.minutes_used
            )
            restored += row.minutes_used
        return total, restored

    async def credit_topup(
        self, user_id: int, payment_intent_id: str, minutes: int, amount_paid: int
    ) -> TopupResult:
        """Add purchased minutes once per payment intent."""
        if minutes <= 0:
            raise LedgerError("INVALID_AMOUNT", "minutes must be positive")
        if amount_paid < 0:
            raise LedgerError("INVALID_AMOUNT", "amount_paid must not be negative")

        async with _balance_lock(user_id):
            try:
                async with self._session_factory() as session:
                    async with session.begin():
                        profile = (
                            await session.execute(
                                select(Profile).where(Profile.id == user_id).with_for_update()
                            )
                        ).scalar_one_or_none()
                        if profile is None:
                            raise LedgerError(CreditReason.NO_ACCOUNT.value, "Profile not found")

                        existing = (
                            await session.execute(
                                select(TopupPurchase.id).where(
                                    TopupPurchase.payment_intent_id == payment_intent_id
                                )
                            )
                        ).scalar_one_or_none()
                        if existing is not None:
                            logger.info("Top-up %s already processed", payment_intent_id)
                            return TopupResult(
                                already_processed=True,
                                minutes_added=0,
                                new_balance=int(profile.transcription_minutes_topup or 0),
                            )

                        session.add(
                            TopupPurchase(
                                user_id=user_id,
                                payment_intent_id=payment_intent_id,
                                minutes_purchased=minutes,
                                amount_paid=amount_paid,
                            )
                        )
                        new_balance = int(profile.transcription_minutes_topup or 0) + minutes
                        profile.transcription_minutes_topup = new_balance
            except IntegrityError:
                # A concurrent writer outside this process recorded the same intent first.
                logger.warning("Top-up %s raced with another writer", payment_intent_id)
                async with self._session_factory() as session:
                    profile = await session.get(Profile, user_id)
                    balance = int(profile.transcription_minutes_topup or 0) if profile else 0
                return TopupResult(already_processed=True, minutes_added=0, new_balance=balance)

        logger.info(
            "Credited %s top-up minute(s) to user %s (intent=%s)",
            minutes,
            user_id,
            payment_intent_id,
        )
        return TopupResult(already_processed=False, minutes_added=minutes, new_balance=new_balance)

    async def usage_stats(
        self, user_id: int, window: Optional[BillingWindow] = None
    ) -> Optional[UsageStats]:
        """Summarize both buckets for the current (or given) billing window."""
        async with self._session_factory() as session:
            profile = await session.get(Profile, user_id)
            if profile is None:
                return None
            window = window or billing_period_for(profile)
            limit = subscription_limit_for(profile.subscription_tier)
            used = await self._subscription_usage(session, user_id, window)
            return UsageStats(
                is_entitled=is_entitled(profile.subscription_tier),
                subscription_used=used,
                subscription_limit=limit,
                subscription_remaining=max(0, limit - used),
                topup_minutes=int(profile.transcription_minutes_topup or 0),
                period_start=window.start,
                period_end=window.end,
            )

    async def job_usage_minutes(self, job_id: str) -> int:
        """Total minutes currently charged to a job."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(func.coalesce(func.sum(UsageRecord.minutes_used), 0)).where(
                    UsageRecord.job_id == job_id
                )
            )
            return int(result.scalar_one() or 0)


ledger = CreditLedger()
