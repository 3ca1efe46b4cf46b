"""Consumption Engine: priority-ordered deduction across an owner's grants.

One call is one transaction: read the eligible grants, drain them in
order, write the new balances and the usage row.  Reporting purchased
usage to Stripe and emitting analytics happen only after commit and can
fail without affecting the ledger.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Sequence
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ledger_engine.errors import InsufficientGrantsError, LedgerError, LedgerWriteError
from ledger_engine.metering import AnalyticsEventType, EventCollector, track_event
from ledger_engine.models import (
    ConsumptionResult,
    CreditGrant,
    GrantConsumption,
    GrantType,
    OwnerType,
    UsageMetadata,
)
from ledger_engine.state.database import TransactionRunner
from ledger_engine.state.repository import CreditGrantRepository, UsageMessageRepository

logger = logging.getLogger(__name__)

# ``await report_usage(owner_id, purchased_credits, metadata, owner_type)``
PurchasedUsageReporter = Callable[[str, int, UsageMetadata, OwnerType], Awaitable[None]]


def consume_from_ordered_grants(
    grants: Sequence[CreditGrant],
    credits: int,
) -> list[GrantConsumption]:
    """Plan the deduction of *credits* from *grants* already in drain order.

    Each grant gives up ``min(balance, remaining)``; grants without a
    positive balance give nothing.  Whatever is still owed after the last
    grant is charged to that last grant, pushing it negative, so a
    shortfall never spreads debt over several rows.

    Returns
    -------
    list[GrantConsumption]
        One entry per grant touched, in drain order.
    """
    remaining = credits
    plan: list[GrantConsumption] = []

    for grant in grants:
        if remaining <= 0:
            break
        if grant.balance <= 0:
            continue
        consumed = min(grant.balance, remaining)
        remaining -= consumed
        plan.append(
            GrantConsumption(
                operation_id=grant.operation_id,
                type=grant.type,
                consumed=consumed,
                balance_before=grant.balance,
                balance_after=grant.balance - consumed,
            )
        )

    if remaining > 0 and grants:
        last = grants[-1]
        if plan and plan[-1].operation_id == last.operation_id:
            entry = plan[-1]
            plan[-1] = entry.model_copy(
                update={
                    "consumed": entry.consumed + remaining,
                    "balance_after": entry.balance_after - remaining,
                }
            )
        else:
            plan.append(
                GrantConsumption(
                    operation_id=last.operation_id,
                    type=last.type,
                    consumed=remaining,
                    balance_before=last.balance,
                    balance_after=last.balance - remaining,
                )
            )

    return plan


def _usage_record(
    *,
    owner_id: str,
    owner_type: OwnerType,
    user_id: str | None,
    credits: int,
    metadata: UsageMetadata,
    breakdown: list[GrantConsumption],
    finished_at: datetime,
) -> dict[str, Any]:
    latency_ms = int((finished_at - metadata.start_time).total_seconds() * 1000)
    return {
        "id": metadata.message_id,
        "owner_id": owner_id,
        "user_id": user_id or owner_id,
        "org_id": owner_id if owner_type == OwnerType.ORGANIZATION else None,
        "repo_url": metadata.repo_url,
        "model": metadata.model,
        "client_id": metadata.client_id,
        "client_request_id": metadata.client_request_id,
        "agent_id": metadata.agent_id,
        "input_tokens": metadata.input_tokens,
        "cache_creation_input_tokens": metadata.cache_creation_input_tokens,
        "cache_read_input_tokens": metadata.cache_read_input_tokens,
        "reasoning_tokens": metadata.reasoning_tokens,
        "output_tokens": metadata.output_tokens,
        "cost": metadata.cost,
        "credits": credits,
        "byok": metadata.byok,
        "latency_ms": max(latency_ms, 0),
        "breakdown_json": [entry.model_dump(mode="json") for entry in breakdown] or None,
        "finished_at": finished_at,
    }


async def consume_credits(
    transaction: TransactionRunner,
    *,
    owner_id: str,
    credits: int,
    metadata: UsageMetadata,
    owner_type: OwnerType = OwnerType.USER,
    user_id: str | None = None,
    report_usage: PurchasedUsageReporter | None = None,
    collector: EventCollector | None = None,
    source: str = "personal",
    now: datetime | None = None,
) -> ConsumptionResult:
    """Deduct *credits* from *owner_id*'s ledger and record the usage event.

    Parameters
    ----------
    transaction:
        Runs the read-modify-write atomically.
    owner_id:
        Ledger to charge (a user, or an organization under delegation).
    credits:
        Amount to deduct, priced by the caller.
    metadata:
        Usage details written to the usage row.  With ``byok`` set no grant
        is read or written and the row records 0 credits.
    owner_type:
        Kind of ledger being charged.
    user_id:
        Acting user when it differs from the owner.
    report_usage:
        Receives the purchased portion after commit.
    collector:
        Analytics collector, defaults to the process-wide one.
    source:
        Analytics label for where the charge originated.
    now:
        Evaluation time for grant expiry and the usage timestamp.

    Returns
    -------
    ConsumptionResult
        Success with the per-grant breakdown, or an ``INSUFFICIENT_GRANTS``
        / ``WRITE_FAILURE`` failure with nothing written.
    """
    if credits < 0:
        raise ValueError(f"Credits to consume must be non-negative, got {credits}")

    async def _consume(session: AsyncSession) -> list[GrantConsumption]:
        current = now or datetime.now(UTC)
        usage_repo = UsageMessageRepository(session)

        if metadata.byok:
            await usage_repo.insert(
                _usage_record(
                    owner_id=owner_id,
                    owner_type=owner_type,
                    user_id=user_id,
                    credits=0,
                    metadata=metadata,
                    breakdown=[],
                    finished_at=current,
                )
            )
            return []

        repo = CreditGrantRepository(session)
        rows = await repo.list_active_in_consumption_order(owner_id, current)
        if not rows:
            raise InsufficientGrantsError(f"No active grants found for {owner_id}")

        plan = consume_from_ordered_grants([CreditGrant.model_validate(row) for row in rows], credits)
        rows_by_id = {row.operation_id: row for row in rows}
        for entry in plan:
            await repo.set_balance(rows_by_id[entry.operation_id], entry.balance_after)

        await usage_repo.insert(
            _usage_record(
                owner_id=owner_id,
                owner_type=owner_type,
                user_id=user_id,
                credits=credits,
                metadata=metadata,
                breakdown=plan,
                finished_at=current,
            )
        )
        return plan

    try:
        breakdown = await transaction(_consume)
    except LedgerError as exc:
        logger.warning("Consumption of %d credits for %s failed: %s", credits, owner_id, exc.message)
        return ConsumptionResult.failed(owner_id, exc.to_failure(), credits_requested=credits)
    except SQLAlchemyError as exc:
        logger.error("Consumption of %d credits for %s failed", credits, owner_id, exc_info=True)
        failure = LedgerWriteError(f"Failed to consume credits for {owner_id}", cause=exc).to_failure()
        return ConsumptionResult.failed(owner_id, failure, credits_requested=credits)

    consumed = sum(entry.consumed for entry in breakdown)
    # Debt pushed onto a purchase grant was never paid for.
    purchased = sum(
        min(max(entry.balance_before, 0), entry.consumed)
        for entry in breakdown
        if entry.type == GrantType.PURCHASE
    )
    organization_id = owner_id if owner_type == OwnerType.ORGANIZATION else None

    logger.info(
        "Consumed %d credits for %s across %d grants (message %s)",
        consumed,
        owner_id,
        len(breakdown),
        metadata.message_id,
    )

    if purchased > 0 and report_usage is not None:
        try:
            await report_usage(owner_id, purchased, metadata, owner_type)
        except Exception:
            logger.error("Failed to report %d purchased credits for %s", purchased, owner_id, exc_info=True)

    properties: dict[str, Any] = {
        "credits_requested": credits,
        "credits_consumed": consumed,
        "message_id": metadata.message_id,
        "model": metadata.model,
        "source": source,
        "byok": metadata.byok,
    }
    if organization_id is not None:
        properties["organization_id"] = organization_id
    track_event(AnalyticsEventType.CREDIT_CONSUMED, user_id or owner_id, properties, collector=collector)

    return ConsumptionResult(
        success=True,
        owner_id=owner_id,
        credits_requested=credits,
        credits_consumed=consumed,
        purchased_credits=purchased,
        breakdown=breakdown,
        usage_event_id=metadata.message_id,
        organization_id=organization_id,
    )
