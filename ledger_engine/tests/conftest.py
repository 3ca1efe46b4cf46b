"""Shared fixtures for ledger engine tests.

Every test gets its own in-memory SQLite ledger (aiosqlite, ``StaticPool``)
with all tables created, a transaction runner bound to it, and an analytics
collector whose events stay in memory so tests can assert on them.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import UTC, datetime
from typing import Any

import pytest
import pytest_asyncio

from ledger_engine.metering import AnalyticsEvent, EventCollector
from ledger_engine.models import GRANT_PRIORITIES, GrantType, OwnerType
from ledger_engine.retry import RetryConfig
from ledger_engine.state.database import make_transaction_runner
from ledger_engine.state.repository import (
    BillingUserRepository,
    CreditGrantRepository,
    OrganizationRepository,
)
from ledger_engine.state.sqlite_adapter import create_local_tables, get_local_engine

NOW = datetime(2025, 3, 15, 12, 0, tzinfo=UTC)


class ListSink:
    """Analytics sink that keeps flushed events in a list."""

    def __init__(self) -> None:
        self.events: list[AnalyticsEvent] = []

    def flush(self, events: Sequence[AnalyticsEvent]) -> None:
        self.events.extend(events)


@pytest_asyncio.fixture
async def engine():
    """Provide an in-memory SQLite engine with the ledger schema."""
    engine = get_local_engine(":memory:")
    await create_local_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def transaction(engine):
    return make_transaction_runner(engine, RetryConfig(max_retries=0, base_delay=0.01, jitter=False))


@pytest.fixture
def collector() -> EventCollector:
    return EventCollector(ListSink(), max_buffer_size=1000)


@pytest.fixture
def add_grant(transaction):
    """Insert a grant row directly, bypassing debt settlement.

    Lets tests seed debt (negative balances) and arbitrary timestamps.
    """

    async def _add(
        owner_id: str,
        amount: int,
        grant_type: GrantType = GrantType.FREE,
        *,
        operation_id: str | None = None,
        balance: int | None = None,
        expires_at: datetime | None = None,
        created_at: datetime | None = None,
        owner_type: OwnerType = OwnerType.USER,
        priority: int | None = None,
        description: str = "seeded",
    ) -> Any:
        op_id = operation_id or f"{grant_type.value}-{owner_id}-{amount}-{created_at or NOW:%Y%m%d%H%M%S%f}"

        async def _insert(session):
            return await CreditGrantRepository(session).insert(
                operation_id=op_id,
                owner_id=owner_id,
                owner_type=owner_type.value,
                grant_type=grant_type.value,
                priority=priority if priority is not None else GRANT_PRIORITIES[grant_type],
                principal=amount,
                balance=amount if balance is None else balance,
                description=description,
                expires_at=expires_at,
                created_at=created_at or NOW,
            )

        return await transaction(_insert)

    return _add


@pytest.fixture
def get_grant(transaction):
    async def _get(operation_id: str) -> Any:
        async def _read(session):
            return await CreditGrantRepository(session).get(operation_id)

        return await transaction(_read)

    return _get


@pytest.fixture
def add_user(transaction):
    async def _add(
        user_id: str,
        *,
        next_quota_reset: datetime | None = None,
        auto_topup_enabled: bool | None = False,
        stripe_customer_id: str | None = None,
    ) -> Any:
        async def _create(session):
            return await BillingUserRepository(session).create(
                user_id,
                next_quota_reset=next_quota_reset,
                auto_topup_enabled=auto_topup_enabled,
                stripe_customer_id=stripe_customer_id,
            )

        return await transaction(_create)

    return _add


@pytest.fixture
def add_org(transaction):
    """Create an organization with approved repositories given as ``(url, owner, repo)``."""

    async def _add(
        org_id: str,
        repos: Sequence[tuple[str, str, str]] = (),
        *,
        is_active: bool = True,
        stripe_customer_id: str | None = None,
    ) -> None:
        async def _create(session):
            orgs = OrganizationRepository(session)
            await orgs.create(org_id, f"Org {org_id}", f"org-{org_id}", stripe_customer_id=stripe_customer_id)
            for index, (url, owner, repo) in enumerate(repos):
                await orgs.add_repository(
                    f"{org_id}-repo-{index}",
                    org_id,
                    repo_url=url,
                    repo_owner=owner,
                    repo_name=repo,
                    is_active=is_active,
                )

        await transaction(_create)

    return _add
