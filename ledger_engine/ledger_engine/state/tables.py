"""SQLAlchemy 2.0 ORM table definitions for the credit ledger store.

All tables use the modern ``Mapped`` / ``mapped_column`` declaration style
introduced in SQLAlchemy 2.0.  The ``Base`` declarative base is exported for
use by Alembic migrations and the repository layer.
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

# Cross-dialect JSON type: uses JSONB on PostgreSQL, falls back to plain
# JSON (stored as TEXT) on SQLite.
_JsonType = JSONB().with_variant(JSON(), "sqlite")


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator):
    """Timezone-aware ``DateTime`` that always round-trips as UTC.

    SQLite stores datetimes without an offset; values read back are naive
    and are re-tagged as UTC so comparisons against ``datetime.now(UTC)``
    never mix naive and aware values.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is not None and value.tzinfo is not None:
            return value.astimezone(UTC)
        return value

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all ledger tables."""


# ---------------------------------------------------------------------------
# Billing users
# ---------------------------------------------------------------------------


class BillingUserTable(Base):
    """Per-user billing state: quota cycle anchor and Stripe mapping."""

    __tablename__ = "billing_users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    next_quota_reset: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    auto_topup_enabled: Mapped[bool | None] = mapped_column(Boolean, nullable=True, default=False)
    stripe_customer_id: Mapped[str | None] = mapped_column(String(256), nullable=True, unique=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)


# ---------------------------------------------------------------------------
# Credit ledger
# ---------------------------------------------------------------------------


class CreditLedgerTable(Base):
    """One credit grant per row.

    Rows are never deleted.  ``balance`` may go negative (debt) only as a
    side effect of consumption; revocation zeroes ``principal`` and
    ``balance`` and leaves the row for audit.
    """

    __tablename__ = "credit_ledger"

    operation_id: Mapped[str] = mapped_column(String(256), primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False)
    owner_type: Mapped[str] = mapped_column(String(16), nullable=False, default="user")
    principal: Mapped[int] = mapped_column(Integer, nullable=False)
    balance: Mapped[int] = mapped_column(Integer, nullable=False)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("principal >= 0", name="ck_credit_ledger_principal_non_negative"),
        Index(
            "ix_credit_ledger_owner_consumption_order",
            "owner_id",
            "expires_at",
            "priority",
            "created_at",
        ),
        Index("ix_credit_ledger_owner_balance", "owner_id", "balance"),
    )


# ---------------------------------------------------------------------------
# Organizations
# ---------------------------------------------------------------------------


class OrganizationTable(Base):
    """Organizations that can own a ledger and sponsor repositories."""

    __tablename__ = "organizations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    slug: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    stripe_customer_id: Mapped[str | None] = mapped_column(String(256), nullable=True, unique=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)


class OrgRepoTable(Base):
    """Repository -> organization association used for credit delegation.

    ``repo_url`` is stored in normalized ``https://host/owner/repo`` form.
    """

    __tablename__ = "org_repos"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    org_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
    )
    repo_url: Mapped[str] = mapped_column(String(1024), nullable=False)
    repo_owner: Mapped[str] = mapped_column(String(256), nullable=False)
    repo_name: Mapped[str] = mapped_column(String(256), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    approved_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_org_repos_org_active", "org_id", "is_active"),
        Index("ix_org_repos_owner_name", "repo_owner", "repo_name"),
        Index("ix_org_repos_url", "repo_url"),
    )


# ---------------------------------------------------------------------------
# Referrals
# ---------------------------------------------------------------------------


class ReferralTable(Base):
    """Referral between two users with its bonus size."""

    __tablename__ = "referrals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    referrer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    referred_id: Mapped[str] = mapped_column(String(64), nullable=False)
    credits: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="completed")
    # Referrals from the recurring program keep paying out every cycle.
    is_legacy: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_referrals_referrer", "referrer_id"),
        Index("ix_referrals_referred", "referred_id"),
    )


# ---------------------------------------------------------------------------
# Usage messages
# ---------------------------------------------------------------------------


class UsageMessageTable(Base):
    """Immutable record of one consumption call (the usage event).

    Written exactly once per successful consumption, inside the same
    transaction as the balance updates.
    """

    __tablename__ = "usage_messages"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    org_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    repo_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    model: Mapped[str] = mapped_column(String(256), nullable=False)
    client_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    client_request_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    agent_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    input_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cache_creation_input_tokens: Mapped[int | None] = mapped_column(Integer, nullable=True)
    cache_read_input_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reasoning_tokens: Mapped[int | None] = mapped_column(Integer, nullable=True)
    output_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cost: Mapped[Decimal] = mapped_column(Numeric(20, 10), nullable=False)
    credits: Mapped[int] = mapped_column(Integer, nullable=False)
    byok: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    latency_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    breakdown_json: Mapped[list[dict[str, Any]] | None] = mapped_column(_JsonType, nullable=True)
    finished_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_usage_messages_user", "user_id"),
        Index("ix_usage_messages_owner_finished", "owner_id", "finished_at"),
        Index("ix_usage_messages_org_finished", "org_id", "finished_at"),
    )


# ---------------------------------------------------------------------------
# Sync failures
# ---------------------------------------------------------------------------


class SyncFailureTable(Base):
    """Grants that failed to sync from an external provider, kept for retry."""

    __tablename__ = "sync_failures"

    id: Mapped[str] = mapped_column(String(256), primary_key=True)
    provider: Mapped[str] = mapped_column(String(64), nullable=False)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    last_error: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)
    last_attempt_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)

    __table_args__ = (Index("ix_sync_failures_retry", "retry_count", "last_attempt_at"),)
