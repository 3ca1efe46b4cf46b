"""Repository classes providing access to the credit ledger store.

Each repository takes an ``AsyncSession`` at construction time and operates
within the caller's transaction boundary.  All writes call ``session.flush()``
so that generated defaults are populated; the caller is responsible for
committing (normally through ``run_in_transaction``).
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from ledger_engine.errors import DuplicateOperationError
from ledger_engine.state.tables import (
    BillingUserTable,
    CreditLedgerTable,
    OrganizationTable,
    OrgRepoTable,
    ReferralTable,
    SyncFailureTable,
    UsageMessageTable,
)

logger = logging.getLogger(__name__)


def _dialect_name(session: AsyncSession) -> str:
    bind = session.get_bind()
    return str(getattr(getattr(bind, "dialect", None), "name", ""))


async def _dialect_insert_nothing(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
) -> Any:
    """Dialect-aware insert with ``ON CONFLICT DO NOTHING``.

    Returns the execution result; ``rowcount`` is 0 when the row already
    existed.
    """
    stmt: Any
    table = getattr(table, "__table__", table)
    if "postgresql" in _dialect_name(session):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values).on_conflict_do_nothing(index_elements=index_elements)
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values).on_conflict_do_nothing(index_elements=index_elements)
    return await session.execute(stmt)


async def _dialect_upsert(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
    set_: dict[str, Any],
) -> Any:
    """Dialect-aware upsert: ``ON CONFLICT DO UPDATE`` on PostgreSQL or SQLite.

    Parameters
    ----------
    session:
        The active async session.
    table:
        The SQLAlchemy table class to upsert into.
    values:
        Column-value mapping for the row to insert.
    index_elements:
        Column names forming the unique constraint for conflict detection.
    set_:
        Column-expression mapping applied when a conflict occurs.
    """
    stmt: Any
    table = getattr(table, "__table__", table)
    if "postgresql" in _dialect_name(session):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values).on_conflict_do_update(index_elements=index_elements, set_=set_)
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values).on_conflict_do_update(index_elements=index_elements, set_=set_)
    return await session.execute(stmt)


# ---------------------------------------------------------------------------
# CreditGrantRepository
# ---------------------------------------------------------------------------


class CreditGrantRepository:
    """Row-level operations on the ``credit_ledger`` table.

    No business policy lives here: debt settlement, drain order and
    revocation guards are applied by the billing layer.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def insert(
        self,
        *,
        operation_id: str,
        owner_id: str,
        owner_type: str,
        grant_type: str,
        priority: int,
        principal: int,
        balance: int,
        description: str,
        expires_at: datetime | None,
        created_at: datetime | None = None,
    ) -> CreditLedgerTable:
        """Insert a grant row.

        Raises
        ------
        DuplicateOperationError
            When *operation_id* is already present.  The existing row is
            left untouched.
        """
        result = await _dialect_insert_nothing(
            self._session,
            CreditLedgerTable,
            values={
                "operation_id": operation_id,
                "owner_id": owner_id,
                "owner_type": owner_type,
                "type": grant_type,
                "priority": priority,
                "principal": principal,
                "balance": balance,
                "description": description,
                "expires_at": expires_at,
                "created_at": created_at or datetime.now(UTC),
            },
            index_elements=["operation_id"],
        )
        if (result.rowcount or 0) == 0:  # type: ignore[attr-defined]
            raise DuplicateOperationError(operation_id)
        await self._session.flush()
        row = await self.get(operation_id)
        assert row is not None  # noqa: S101
        return row

    async def get(self, operation_id: str) -> CreditLedgerTable | None:
        """Fetch a single grant by its operation id."""
        stmt = select(CreditLedgerTable).where(CreditLedgerTable.operation_id == operation_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_negative(self, owner_id: str) -> list[CreditLedgerTable]:
        """Return every grant of *owner_id* carrying debt, expired or not."""
        stmt = (
            select(CreditLedgerTable)
            .where(
                CreditLedgerTable.owner_id == owner_id,
                CreditLedgerTable.balance < 0,
            )
            .order_by(CreditLedgerTable.created_at.asc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def list_active_in_consumption_order(
        self,
        owner_id: str,
        now: datetime,
    ) -> list[CreditLedgerTable]:
        """Return unexpired grants in drain order.

        Order is ``priority`` ascending, then ``expires_at`` ascending with
        non-expiring grants last, then ``created_at`` ascending.
        """
        stmt = (
            select(CreditLedgerTable)
            .where(
                CreditLedgerTable.owner_id == owner_id,
                or_(
                    CreditLedgerTable.expires_at.is_(None),
                    CreditLedgerTable.expires_at > now,
                ),
            )
            .order_by(
                CreditLedgerTable.priority.asc(),
                CreditLedgerTable.expires_at.asc().nulls_last(),
                CreditLedgerTable.created_at.asc(),
                CreditLedgerTable.operation_id.asc(),
            )
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def list_for_owner(
        self,
        owner_id: str,
        *,
        include_expired: bool = True,
        now: datetime | None = None,
    ) -> list[CreditLedgerTable]:
        """Return all grants of an owner, newest first."""
        stmt = select(CreditLedgerTable).where(CreditLedgerTable.owner_id == owner_id)
        if not include_expired:
            cutoff = now or datetime.now(UTC)
            stmt = stmt.where(
                or_(
                    CreditLedgerTable.expires_at.is_(None),
                    CreditLedgerTable.expires_at > cutoff,
                )
            )
        stmt = stmt.order_by(CreditLedgerTable.created_at.desc())
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def set_balance(self, row: CreditLedgerTable, balance: int) -> None:
        row.balance = balance
        await self._session.flush()

    async def zero_with_note(self, row: CreditLedgerTable, note: str, *, zero_principal: bool = False) -> None:
        """Force ``balance`` (and optionally ``principal``) to 0 and append *note*.

        The note is appended to the existing description, never replacing it.
        """
        row.balance = 0
        if zero_principal:
            row.principal = 0
        row.description = (row.description or "") + note
        await self._session.flush()

    async def latest_expired_principal(
        self,
        owner_id: str,
        grant_type: str,
        now: datetime,
    ) -> int | None:
        """Principal of the most recently expired grant of *grant_type*, if any."""
        stmt = (
            select(CreditLedgerTable.principal)
            .where(
                CreditLedgerTable.owner_id == owner_id,
                CreditLedgerTable.type == grant_type,
                CreditLedgerTable.expires_at.is_not(None),
                CreditLedgerTable.expires_at <= now,
            )
            .order_by(CreditLedgerTable.expires_at.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()


# ---------------------------------------------------------------------------
# BillingUserRepository
# ---------------------------------------------------------------------------


class BillingUserRepository:
    """Quota-cycle and Stripe state for individual users."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, user_id: str) -> BillingUserTable | None:
        stmt = select(BillingUserTable).where(BillingUserTable.id == user_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def create(
        self,
        user_id: str,
        *,
        next_quota_reset: datetime | None = None,
        auto_topup_enabled: bool | None = False,
        stripe_customer_id: str | None = None,
    ) -> BillingUserTable:
        row = BillingUserTable(
            id=user_id,
            next_quota_reset=next_quota_reset,
            auto_topup_enabled=auto_topup_enabled,
            stripe_customer_id=stripe_customer_id,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def set_next_quota_reset(self, row: BillingUserTable, next_reset: datetime) -> None:
        row.next_quota_reset = next_reset
        await self._session.flush()

    async def get_stripe_customer_id(self, user_id: str) -> str | None:
        stmt = select(BillingUserTable.stripe_customer_id).where(BillingUserTable.id == user_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()


# ---------------------------------------------------------------------------
# UsageMessageRepository
# ---------------------------------------------------------------------------


class UsageMessageRepository:
    """Append-only usage event log."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def insert(self, record: dict[str, Any]) -> UsageMessageTable:
        """Insert one usage row built from *record* column values."""
        row = UsageMessageTable(**record)
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, message_id: str) -> UsageMessageTable | None:
        stmt = select(UsageMessageTable).where(UsageMessageTable.id == message_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def sum_credits_since(self, user_id: str, since: datetime) -> int:
        """Total non-BYOK credits billed to *user_id* since *since*."""
        stmt = select(func.coalesce(func.sum(UsageMessageTable.credits), 0)).where(
            UsageMessageTable.user_id == user_id,
            UsageMessageTable.finished_at >= since,
            UsageMessageTable.byok.is_(False),
        )
        result = await self._session.execute(stmt)
        return int(result.scalar() or 0)


# ---------------------------------------------------------------------------
# OrganizationRepository
# ---------------------------------------------------------------------------


class OrganizationRepository:
    """Organizations and their approved repositories."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(
        self,
        org_id: str,
        name: str,
        slug: str,
        *,
        stripe_customer_id: str | None = None,
    ) -> OrganizationTable:
        row = OrganizationTable(id=org_id, name=name, slug=slug, stripe_customer_id=stripe_customer_id)
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, org_id: str) -> OrganizationTable | None:
        stmt = select(OrganizationTable).where(OrganizationTable.id == org_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def add_repository(
        self,
        repo_id: str,
        org_id: str,
        *,
        repo_url: str,
        repo_owner: str,
        repo_name: str,
        is_active: bool = True,
    ) -> OrgRepoTable:
        """Attach an already-normalized repository to an organization."""
        row = OrgRepoTable(
            id=repo_id,
            org_id=org_id,
            repo_url=repo_url,
            repo_owner=repo_owner,
            repo_name=repo_name,
            is_active=is_active,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def find_by_repository(
        self,
        *,
        repo_url: str,
        repo_owner: str,
        repo_name: str,
    ) -> OrganizationTable | None:
        """Return the organization owning an active repository.

        Matches on the normalized URL or on ``owner/repo``; when several
        organizations match, the earliest approval wins.
        """
        stmt = (
            select(OrganizationTable)
            .join(OrgRepoTable, OrgRepoTable.org_id == OrganizationTable.id)
            .where(
                OrgRepoTable.is_active.is_(True),
                or_(
                    OrgRepoTable.repo_url == repo_url,
                    (func.lower(OrgRepoTable.repo_owner) == repo_owner)
                    & (func.lower(OrgRepoTable.repo_name) == repo_name),
                ),
            )
            .order_by(OrgRepoTable.approved_at.asc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()


# ---------------------------------------------------------------------------
# ReferralRepository
# ---------------------------------------------------------------------------


class ReferralRepository:
    """Access to referrals and their recurring bonus."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record(
        self,
        referrer_id: str,
        referred_id: str,
        credits: int,
        *,
        status: str = "completed",
        is_legacy: bool = False,
    ) -> ReferralTable:
        row = ReferralTable(
            referrer_id=referrer_id,
            referred_id=referred_id,
            credits=credits,
            status=status,
            is_legacy=is_legacy,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def total_bonus(self, user_id: str) -> int:
        """Sum of recurring referral credits where *user_id* is either party.

        Only completed referrals from the legacy program pay out every
        cycle; newer referrals are one-time grants.
        """
        stmt = select(func.coalesce(func.sum(ReferralTable.credits), 0)).where(
            or_(
                ReferralTable.referrer_id == user_id,
                ReferralTable.referred_id == user_id,
            ),
            ReferralTable.status == "completed",
            ReferralTable.is_legacy.is_(True),
        )
        result = await self._session.execute(stmt)
        return int(result.scalar() or 0)


# ---------------------------------------------------------------------------
# SyncFailureRepository
# ---------------------------------------------------------------------------


class SyncFailureRepository:
    """Grants that could not be applied after an external provider event."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record_failure(self, failure_id: str, provider: str, error: str) -> None:
        """Insert a failure or bump the retry count of an existing one."""
        now = datetime.now(UTC)
        await _dialect_upsert(
            self._session,
            SyncFailureTable,
            values={
                "id": failure_id,
                "provider": provider,
                "retry_count": 1,
                "last_error": error,
                "created_at": now,
                "last_attempt_at": now,
            },
            index_elements=["id"],
            set_={
                "retry_count": SyncFailureTable.retry_count + 1,
                "last_error": error,
                "last_attempt_at": now,
            },
        )
        await self._session.flush()

    async def get(self, failure_id: str) -> SyncFailureTable | None:
        stmt = select(SyncFailureTable).where(SyncFailureTable.id == failure_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()
