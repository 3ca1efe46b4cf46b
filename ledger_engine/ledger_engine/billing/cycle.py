"""Cycle Manager: monthly quota resets.

A reset is idempotent: while the stored ``next_quota_reset`` lies in the
future nothing happens.  Once it has passed, the next reset date is moved
forward by whole calendar months until it is in the future again, and a
free grant expiring at that date is issued with a per-cycle operation id.
"""

from __future__ import annotations

import calendar
import logging
from datetime import UTC, datetime

from sqlalchemy.ext.asyncio import AsyncSession

from ledger_engine.billing.grants import grant_credit_operation
from ledger_engine.config import Settings
from ledger_engine.errors import OwnerNotFoundError
from ledger_engine.metering import AnalyticsEventType, EventCollector, track_event
from ledger_engine.models import GrantType, ResetResult
from ledger_engine.state.database import TransactionRunner
from ledger_engine.state.repository import BillingUserRepository, CreditGrantRepository, ReferralRepository

logger = logging.getLogger(__name__)

DEFAULT_FREE_CREDITS = 1000
MAX_FREE_CREDITS = 2000


# ---------------------------------------------------------------------------
# Date arithmetic
# ---------------------------------------------------------------------------


def add_months(value: datetime, months: int) -> datetime:
    """Shift *value* by whole calendar months, clamping the day to the month length."""
    years, month_index = divmod(value.month - 1 + months, 12)
    year = value.year + years
    month = month_index + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def next_quota_reset_after(anchor: datetime, now: datetime) -> datetime:
    """Return the first ``anchor + k months`` (k >= 1) strictly after *now*.

    Every candidate is computed from *anchor* itself, so a reset anchored
    on the 31st lands on the last day of short months and returns to the
    31st afterwards.  Long dormancy is skipped in one step.
    """
    months = max((now.year - anchor.year) * 12 + (now.month - anchor.month), 1)
    candidate = add_months(anchor, months)
    while candidate <= now:
        months += 1
        candidate = add_months(anchor, months)
    return candidate


def cycle_operation_id(user_id: str, next_reset: datetime) -> str:
    return f"free-{user_id}-{next_reset:%Y-%m-%d}"


# ---------------------------------------------------------------------------
# Grant amount inputs
# ---------------------------------------------------------------------------


async def get_previous_free_grant_amount(
    session: AsyncSession,
    user_id: str,
    *,
    now: datetime | None = None,
    default: int = DEFAULT_FREE_CREDITS,
    cap: int = MAX_FREE_CREDITS,
) -> int:
    """Principal of the user's most recently expired free grant.

    Falls back to *default* for users who never had one and is capped at
    *cap*.
    """
    principal = await CreditGrantRepository(session).latest_expired_principal(
        user_id,
        GrantType.FREE.value,
        now or datetime.now(UTC),
    )
    if principal is None:
        logger.debug("No expired free grant for %s; using default %d", user_id, default)
        return default
    return min(principal, cap)


async def calculate_total_referral_bonus(session: AsyncSession, user_id: str) -> int:
    """Sum of active recurring referral credits for *user_id* as either party.

    Errors are logged and count as no bonus.
    """
    repo = ReferralRepository(session)
    try:
        if session.get_bind().dialect.name == "postgresql":
            # A failed statement aborts a PostgreSQL transaction; contain it.
            async with session.begin_nested():
                return await repo.total_bonus(user_id)
        return await repo.total_bonus(user_id)
    except Exception:
        logger.error("Error calculating referral bonus for %s", user_id, exc_info=True)
        return 0


# ---------------------------------------------------------------------------
# Reset
# ---------------------------------------------------------------------------


async def trigger_monthly_reset_and_grant(
    transaction: TransactionRunner,
    user_id: str,
    *,
    settings: Settings | None = None,
    collector: EventCollector | None = None,
    now: datetime | None = None,
) -> ResetResult:
    """Apply the user's monthly reset if it is due.

    Parameters
    ----------
    transaction:
        Runs the whole reset atomically.
    user_id:
        User whose cycle is checked.
    settings:
        Supplies the default and maximum free grant.
    collector:
        Analytics collector.
    now:
        Evaluation time, defaults to the current time.

    Returns
    -------
    ResetResult
        The (possibly unchanged) reset date and the auto top-up flag.

    Raises
    ------
    OwnerNotFoundError
        When no billing record exists for *user_id*.
    """
    default_free = settings.default_free_credits if settings else DEFAULT_FREE_CREDITS
    max_free = settings.max_free_credits if settings else MAX_FREE_CREDITS

    async def _reset(session: AsyncSession) -> ResetResult:
        current = now or datetime.now(UTC)
        users = BillingUserRepository(session)
        user = await users.get(user_id)
        if user is None:
            raise OwnerNotFoundError(user_id)

        auto_topup = bool(user.auto_topup_enabled)
        if user.next_quota_reset is not None and user.next_quota_reset > current:
            return ResetResult(auto_topup_enabled=auto_topup, quota_reset_date=user.next_quota_reset)

        next_reset = next_quota_reset_after(user.next_quota_reset or current, current)
        free_amount = await get_previous_free_grant_amount(
            session, user_id, now=current, default=default_free, cap=max_free
        )
        referral_bonus = await calculate_total_referral_bonus(session, user_id)
        amount = free_amount + referral_bonus
        operation_id = cycle_operation_id(user_id, next_reset)

        granted = 0
        if amount <= 0:
            logger.warning("Skipping free grant for %s: computed amount is %d", user_id, amount)
        elif await CreditGrantRepository(session).get(operation_id) is not None:
            logger.info("Cycle grant %s already issued; not granting again", operation_id)
        else:
            await grant_credit_operation(
                session,
                owner_id=user_id,
                amount=amount,
                grant_type=GrantType.FREE,
                description="Monthly free credits",
                operation_id=operation_id,
                expires_at=next_reset,
                now=current,
            )
            granted = amount

        await users.set_next_quota_reset(user, next_reset)
        return ResetResult(
            auto_topup_enabled=auto_topup,
            quota_reset_date=next_reset,
            granted=granted,
            operation_id=operation_id,
        )

    result = await transaction(_reset)
    if result.operation_id is not None:
        logger.info(
            "Quota reset for %s: granted %d, next reset %s",
            user_id,
            result.granted,
            result.quota_reset_date.isoformat(),
        )
        track_event(
            AnalyticsEventType.QUOTA_RESET,
            user_id,
            {
                "operation_id": result.operation_id,
                "granted": result.granted,
                "next_quota_reset": result.quota_reset_date.isoformat(),
            },
            collector=collector,
        )
    return result
