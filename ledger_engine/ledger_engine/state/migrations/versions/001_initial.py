"""Initial credit ledger schema.

Creates billing_users, credit_ledger, organizations, org_repos, referrals,
usage_messages, and sync_failures.

Revision ID: 001
Revises: None
Create Date: 2026-09-01 00:00:00.000000+00:00

"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_TS = sa.DateTime(timezone=True)
_JSON = postgresql.JSONB().with_variant(sa.JSON(), "sqlite")


def upgrade() -> None:
    # ------------------------------------------------------------------
    # billing_users
    # ------------------------------------------------------------------
    op.create_table(
        "billing_users",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("next_quota_reset", _TS, nullable=True),
        sa.Column("auto_topup_enabled", sa.Boolean, nullable=True, server_default=sa.false()),
        sa.Column("stripe_customer_id", sa.String(256), nullable=True, unique=True),
        sa.Column("created_at", _TS, nullable=False, server_default=sa.func.now()),
    )

    # ------------------------------------------------------------------
    # credit_ledger
    # ------------------------------------------------------------------
    op.create_table(
        "credit_ledger",
        sa.Column("operation_id", sa.String(256), primary_key=True),
        sa.Column("owner_id", sa.String(64), nullable=False),
        sa.Column("owner_type", sa.String(16), nullable=False, server_default="user"),
        sa.Column("principal", sa.Integer, nullable=False),
        sa.Column("balance", sa.Integer, nullable=False),
        sa.Column("type", sa.String(32), nullable=False),
        sa.Column("priority", sa.Integer, nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("expires_at", _TS, nullable=True),
        sa.Column("created_at", _TS, nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("principal >= 0", name="ck_credit_ledger_principal_non_negative"),
    )
    op.create_index(
        "ix_credit_ledger_owner_consumption_order",
        "credit_ledger",
        ["owner_id", "expires_at", "priority", "created_at"],
    )
    op.create_index("ix_credit_ledger_owner_balance", "credit_ledger", ["owner_id", "balance"])

    # ------------------------------------------------------------------
    # organizations / org_repos
    # ------------------------------------------------------------------
    op.create_table(
        "organizations",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("name", sa.String(256), nullable=False),
        sa.Column("slug", sa.String(128), nullable=False, unique=True),
        sa.Column("stripe_customer_id", sa.String(256), nullable=True, unique=True),
        sa.Column("created_at", _TS, nullable=False, server_default=sa.func.now()),
    )
    op.create_table(
        "org_repos",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column(
            "org_id",
            sa.String(64),
            sa.ForeignKey("organizations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("repo_url", sa.String(1024), nullable=False),
        sa.Column("repo_owner", sa.String(256), nullable=False),
        sa.Column("repo_name", sa.String(256), nullable=False),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("approved_at", _TS, nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_org_repos_org_active", "org_repos", ["org_id", "is_active"])
    op.create_index("ix_org_repos_owner_name", "org_repos", ["repo_owner", "repo_name"])
    op.create_index("ix_org_repos_url", "org_repos", ["repo_url"])

    # ------------------------------------------------------------------
    # referrals
    # ------------------------------------------------------------------
    op.create_table(
        "referrals",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("referrer_id", sa.String(64), nullable=False),
        sa.Column("referred_id", sa.String(64), nullable=False),
        sa.Column("credits", sa.Integer, nullable=False),
        sa.Column("status", sa.String(32), nullable=False, server_default="completed"),
        sa.Column("is_legacy", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("created_at", _TS, nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_referrals_referrer", "referrals", ["referrer_id"])
    op.create_index("ix_referrals_referred", "referrals", ["referred_id"])

    # ------------------------------------------------------------------
    # usage_messages
    # ------------------------------------------------------------------
    op.create_table(
        "usage_messages",
        sa.Column("id", sa.String(128), primary_key=True),
        sa.Column("owner_id", sa.String(64), nullable=False),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("org_id", sa.String(64), nullable=True),
        sa.Column("repo_url", sa.String(1024), nullable=True),
        sa.Column("model", sa.String(256), nullable=False),
        sa.Column("client_id", sa.String(128), nullable=True),
        sa.Column("client_request_id", sa.String(128), nullable=True),
        sa.Column("agent_id", sa.String(128), nullable=True),
        sa.Column("input_tokens", sa.Integer, nullable=False, server_default="0"),
        sa.Column("cache_creation_input_tokens", sa.Integer, nullable=True),
        sa.Column("cache_read_input_tokens", sa.Integer, nullable=False, server_default="0"),
        sa.Column("reasoning_tokens", sa.Integer, nullable=True),
        sa.Column("output_tokens", sa.Integer, nullable=False, server_default="0"),
        sa.Column("cost", sa.Numeric(20, 10), nullable=False),
        sa.Column("credits", sa.Integer, nullable=False),
        sa.Column("byok", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("latency_ms", sa.Integer, nullable=True),
        sa.Column("breakdown_json", _JSON, nullable=True),
        sa.Column("finished_at", _TS, nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_usage_messages_user", "usage_messages", ["user_id"])
    op.create_index("ix_usage_messages_owner_finished", "usage_messages", ["owner_id", "finished_at"])
    op.create_index("ix_usage_messages_org_finished", "usage_messages", ["org_id", "finished_at"])

    # ------------------------------------------------------------------
    # sync_failures
    # ------------------------------------------------------------------
    op.create_table(
        "sync_failures",
        sa.Column("id", sa.String(256), primary_key=True),
        sa.Column("provider", sa.String(64), nullable=False),
        sa.Column("retry_count", sa.Integer, nullable=False, server_default="1"),
        sa.Column("last_error", sa.Text, nullable=False),
        sa.Column("created_at", _TS, nullable=False, server_default=sa.func.now()),
        sa.Column("last_attempt_at", _TS, nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_sync_failures_retry", "sync_failures", ["retry_count", "last_attempt_at"])


def downgrade() -> None:
    op.drop_table("sync_failures")
    op.drop_table("usage_messages")
    op.drop_table("referrals")
    op.drop_table("org_repos")
    op.drop_table("organizations")
    op.drop_table("credit_ledger")
    op.drop_table("billing_users")
