"""Balance and usage reporting over an owner's ledger."""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from sqlalchemy.ext.asyncio import AsyncSession

from ledger_engine.billing.cycle import trigger_monthly_reset_and_grant
from ledger_engine.config import Settings
from ledger_engine.metering import EventCollector
from ledger_engine.models import CreditBalance, GrantType, UsageAndBalance, UserUsageData
from ledger_engine.state.database import TransactionRunner
from ledger_engine.state.repository import CreditGrantRepository, UsageMessageRepository

logger = logging.getLogger(__name__)


async def calculate_usage_and_balance(
    session: AsyncSession,
    owner_id: str,
    *,
    now: datetime | None = None,
    is_personal_context: bool = False,
) -> UsageAndBalance:
    """Aggregate the owner's unexpired grants.

    Parameters
    ----------
    session:
        Any session; nothing is written.
    owner_id:
        User or organization.
    now:
        Expiry cut-off, defaults to the current time.
    is_personal_context:
        Leave ``organization`` grants out of every total.

    Returns
    -------
    UsageAndBalance
        ``usage_this_cycle`` is the sum of ``principal - balance`` over the
        same grants, so debt counts as usage.
    """
    grants = await CreditGrantRepository(session).list_for_owner(
        owner_id,
        include_expired=False,
        now=now or datetime.now(UTC),
    )

    balance = CreditBalance()
    usage = 0
    for grant in grants:
        grant_type = GrantType(grant.type)
        if is_personal_context and grant_type == GrantType.ORGANIZATION:
            continue
        balance.principals[grant_type] += grant.principal
        if grant.balance > 0:
            balance.total_remaining += grant.balance
            balance.breakdown[grant_type] += grant.balance
        elif grant.balance < 0:
            balance.total_debt += -grant.balance
        usage += grant.principal - grant.balance

    balance.net_balance = balance.total_remaining - balance.total_debt
    logger.debug(
        "Balance for %s: remaining=%d debt=%d usage=%d",
        owner_id,
        balance.total_remaining,
        balance.total_debt,
        usage,
    )
    return UsageAndBalance(usage_this_cycle=usage, balance=balance)


async def calculate_usage_this_cycle(session: AsyncSession, user_id: str, cycle_start: datetime) -> int:
    """Credits billed to *user_id* since *cycle_start*, BYOK usage excluded."""
    return await UsageMessageRepository(session).sum_credits_since(user_id, cycle_start)


async def get_user_usage_data(
    transaction: TransactionRunner,
    user_id: str,
    *,
    settings: Settings | None = None,
    collector: EventCollector | None = None,
    now: datetime | None = None,
) -> UserUsageData:
    """Apply a due quota reset, then report the user's personal balance.

    Errors from either step propagate.
    """
    current = now or datetime.now(UTC)
    reset = await trigger_monthly_reset_and_grant(
        transaction,
        user_id,
        settings=settings,
        collector=collector,
        now=current,
    )

    async def _read(session: AsyncSession) -> UsageAndBalance:
        return await calculate_usage_and_balance(session, user_id, now=current, is_personal_context=True)

    usage = await transaction(_read)
    return UserUsageData(
        usage_this_cycle=usage.usage_this_cycle,
        balance=usage.balance,
        next_quota_reset=reset.quota_reset_date,
        auto_topup_enabled=reset.auto_topup_enabled,
    )
