"""Grant Store: creating and revoking credit grants.

``grant_credit_operation`` is the transactional primitive: it runs inside
a session supplied by the caller, settles the owner's debt first and
inserts at most one row.  The remaining functions open their own
transaction through a :data:`~ledger_engine.state.database.TransactionRunner`
and emit analytics once it has committed.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ledger_engine.billing.debt import debt_note, settle_debt
from ledger_engine.errors import DuplicateOperationError, LedgerError, LedgerFailure, LedgerWriteError
from ledger_engine.metering import AnalyticsEventType, EventCollector, track_event
from ledger_engine.models import GRANT_PRIORITIES, GrantResult, GrantType, OwnerType
from ledger_engine.state.database import TransactionRunner
from ledger_engine.state.repository import CreditGrantRepository, SyncFailureRepository

logger = logging.getLogger(__name__)

ORGANIZATION_PURCHASE_DESCRIPTION = "Organization credit purchase"


# ---------------------------------------------------------------------------
# Transactional primitive
# ---------------------------------------------------------------------------


async def grant_credit_operation(
    session: AsyncSession,
    *,
    owner_id: str,
    amount: int,
    grant_type: GrantType,
    description: str,
    operation_id: str,
    expires_at: datetime | None = None,
    owner_type: OwnerType = OwnerType.USER,
    priority: int | None = None,
    now: datetime | None = None,
) -> GrantResult:
    """Settle debt, then insert a grant for the remainder.

    Parameters
    ----------
    session:
        Session of the caller's transaction.  Nothing is committed here.
    owner_id:
        User or organization receiving the credit.
    amount:
        Nominal grant size; stored as ``principal`` even when part of it
        cleared debt.
    grant_type:
        Category tag; picks the default priority.
    description:
        Audit note.  Annotated with the cleared amount when debt existed.
    operation_id:
        Idempotency key.  Must never have been used before.
    expires_at:
        Optional expiry; ``None`` never expires.
    owner_type:
        Which kind of ledger the row belongs to.
    priority:
        Overrides the type's default priority.
    now:
        Creation timestamp, defaults to the current time.

    Raises
    ------
    ValueError
        If *amount* is not positive.
    DuplicateOperationError
        If *operation_id* already exists.  Debt is left untouched because
        the check runs first.
    """
    if amount <= 0:
        raise ValueError(f"Grant amount must be positive, got {amount}")

    repo = CreditGrantRepository(session)
    if await repo.get(operation_id) is not None:
        raise DuplicateOperationError(operation_id)

    settlement = await settle_debt(session, owner_id, amount)

    if settlement.remaining_amount <= 0:
        logger.info(
            "Grant %s of %d for %s fully absorbed by %d credits of debt; no grant row created",
            operation_id,
            amount,
            owner_id,
            settlement.total_debt,
        )
        return GrantResult(
            operation_id=operation_id,
            owner_id=owner_id,
            type=grant_type,
            amount=amount,
            debt_cleared=settlement.total_debt,
        )

    if settlement.total_debt > 0:
        description = f"{description} ({debt_note(settlement.total_debt)})"

    await repo.insert(
        operation_id=operation_id,
        owner_id=owner_id,
        owner_type=owner_type.value,
        grant_type=grant_type.value,
        priority=priority if priority is not None else GRANT_PRIORITIES[grant_type],
        principal=amount,
        balance=settlement.remaining_amount,
        description=description,
        expires_at=expires_at,
        created_at=now or datetime.now(UTC),
    )
    logger.info(
        "Granted %d %s credits to %s (operation %s, balance %d)",
        amount,
        grant_type.value,
        owner_id,
        operation_id,
        settlement.remaining_amount,
    )
    return GrantResult(
        operation_id=operation_id,
        owner_id=owner_id,
        type=grant_type,
        amount=amount,
        debt_cleared=settlement.total_debt,
        balance=settlement.remaining_amount,
        created=True,
    )


def _track_grant(result: GrantResult, collector: EventCollector | None) -> None:
    track_event(
        AnalyticsEventType.CREDIT_GRANTED,
        result.owner_id,
        {
            "operation_id": result.operation_id,
            "type": result.type.value,
            "amount": result.amount,
            "balance": result.balance,
            "created": result.created,
        },
        collector=collector,
    )
    if result.debt_cleared:
        track_event(
            AnalyticsEventType.DEBT_SETTLED,
            result.owner_id,
            {"operation_id": result.operation_id, "debt_cleared": result.debt_cleared},
            collector=collector,
        )


# ---------------------------------------------------------------------------
# Public operations
# ---------------------------------------------------------------------------


async def grant_credits(
    transaction: TransactionRunner,
    *,
    owner_id: str,
    amount: int,
    grant_type: GrantType,
    description: str,
    operation_id: str,
    expires_at: datetime | None = None,
    owner_type: OwnerType = OwnerType.USER,
    collector: EventCollector | None = None,
) -> GrantResult | LedgerFailure:
    """Issue a grant in its own transaction.

    Returns
    -------
    GrantResult | LedgerFailure
        The result on commit, or a ``WRITE_FAILURE`` (including a reused
        operation id) after rollback.
    """

    async def _grant(session: AsyncSession) -> GrantResult:
        return await grant_credit_operation(
            session,
            owner_id=owner_id,
            amount=amount,
            grant_type=grant_type,
            description=description,
            operation_id=operation_id,
            expires_at=expires_at,
            owner_type=owner_type,
        )

    try:
        result = await transaction(_grant)
    except LedgerError as exc:
        logger.warning("Grant %s for %s rejected: %s", operation_id, owner_id, exc.message)
        return exc.to_failure()
    except SQLAlchemyError as exc:
        logger.error("Grant %s for %s failed", operation_id, owner_id, exc_info=True)
        return LedgerWriteError(f"Failed to grant credits for operation {operation_id}", cause=exc).to_failure()

    _track_grant(result, collector)
    return result


async def revoke_grant_by_operation_id(
    transaction: TransactionRunner,
    operation_id: str,
    reason: str,
    *,
    collector: EventCollector | None = None,
) -> bool:
    """Zero a grant's principal and balance and record why.

    Returns ``False`` without writing when the grant does not exist or
    carries debt, and on a persistence error.  Revoking an already
    revoked grant succeeds again and appends the reason a second time.
    """

    async def _revoke(session: AsyncSession) -> tuple[bool, str | None, int]:
        repo = CreditGrantRepository(session)
        row = await repo.get(operation_id)
        if row is None:
            logger.warning("Cannot revoke %s: grant not found", operation_id)
            return False, None, 0
        if row.balance < 0:
            logger.warning(
                "Cannot revoke %s: balance is negative (%d)",
                operation_id,
                row.balance,
            )
            return False, row.owner_id, 0
        revoked_amount = row.balance
        await repo.zero_with_note(row, f" (Revoked: {reason})", zero_principal=True)
        return True, row.owner_id, revoked_amount

    try:
        revoked, owner_id, revoked_amount = await transaction(_revoke)
    except SQLAlchemyError:
        logger.error("Failed to revoke grant %s", operation_id, exc_info=True)
        return False

    if revoked and owner_id is not None:
        logger.info("Revoked grant %s (%d credits): %s", operation_id, revoked_amount, reason)
        track_event(
            AnalyticsEventType.GRANT_REVOKED,
            owner_id,
            {"operation_id": operation_id, "revoked_amount": revoked_amount, "reason": reason},
            collector=collector,
        )
    return revoked


async def _record_sync_failure(
    transaction: TransactionRunner,
    operation_id: str,
    provider: str,
    error: str,
) -> None:
    async def _record(session: AsyncSession) -> None:
        await SyncFailureRepository(session).record_failure(operation_id, provider, error)

    try:
        await transaction(_record)
    except Exception:
        logger.error("Failed to log sync failure for %s", operation_id, exc_info=True)


async def process_and_grant_credit(
    transaction: TransactionRunner,
    *,
    owner_id: str,
    amount: int,
    grant_type: GrantType,
    description: str,
    operation_id: str,
    expires_at: datetime | None = None,
    provider: str = "stripe",
    collector: EventCollector | None = None,
) -> GrantResult:
    """Apply a grant triggered by an external provider event.

    A failure is recorded in ``sync_failures`` for later retry and then
    re-raised so the provider (e.g. a webhook) sees the error.
    """

    async def _grant(session: AsyncSession) -> GrantResult:
        return await grant_credit_operation(
            session,
            owner_id=owner_id,
            amount=amount,
            grant_type=grant_type,
            description=description,
            operation_id=operation_id,
            expires_at=expires_at,
        )

    try:
        result = await transaction(_grant)
    except Exception as exc:
        logger.error("Error processing credit grant %s for %s", operation_id, owner_id, exc_info=True)
        await _record_sync_failure(transaction, operation_id, provider, str(exc))
        raise

    _track_grant(result, collector)
    return result


async def grant_organization_credits(
    transaction: TransactionRunner,
    *,
    organization_id: str,
    amount: int,
    operation_id: str,
    description: str = ORGANIZATION_PURCHASE_DESCRIPTION,
    expires_at: datetime | None = None,
    purchased_by: str | None = None,
    collector: EventCollector | None = None,
) -> GrantResult:
    """Credit an organization's ledger after a purchase.

    A repeated *operation_id* is a replay of an already applied purchase:
    it is logged and answered from the existing row.  Any other error
    propagates.
    """

    async def _grant(session: AsyncSession) -> GrantResult:
        existing = await CreditGrantRepository(session).get(operation_id)
        if existing is not None:
            logger.info(
                "Organization grant %s already applied for %s; skipping",
                operation_id,
                organization_id,
            )
            return GrantResult(
                operation_id=operation_id,
                owner_id=existing.owner_id,
                type=GrantType(existing.type),
                amount=amount,
                balance=max(existing.balance, 0),
                replayed=True,
            )
        return await grant_credit_operation(
            session,
            owner_id=organization_id,
            amount=amount,
            grant_type=GrantType.ORGANIZATION,
            description=description,
            operation_id=operation_id,
            expires_at=expires_at,
            owner_type=OwnerType.ORGANIZATION,
        )

    result = await transaction(_grant)
    if not result.replayed:
        logger.info(
            "Granted %d organization credits to %s (purchased by %s)",
            amount,
            organization_id,
            purchased_by or "unknown",
        )
        _track_grant(result, collector)
    return result
