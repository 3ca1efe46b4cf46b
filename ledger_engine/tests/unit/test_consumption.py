"""Unit tests for ledger_engine.billing.consumption.

Covers:
- consume_from_ordered_grants: pure drain planning, shortfall handling
- consume_credits: drain order, conservation, debt concentration, expiry,
  BYOK bypass, insufficient grants, usage rows, purchased-usage reporting,
  analytics
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import func, select

from ledger_engine.billing.consumption import consume_credits, consume_from_ordered_grants
from ledger_engine.errors import FailureCode
from ledger_engine.metering import AnalyticsEventType
from ledger_engine.models import GRANT_PRIORITIES, CreditGrant, GrantType, OwnerType, UsageMetadata
from ledger_engine.state.repository import UsageMessageRepository
from ledger_engine.state.tables import UsageMessageTable

NOW = datetime(2025, 3, 15, 12, 0, tzinfo=UTC)


def _grant(
    operation_id: str,
    balance: int,
    grant_type: GrantType = GrantType.FREE,
    priority: int = 20,
) -> CreditGrant:
    return CreditGrant(
        operation_id=operation_id,
        owner_id="u1",
        type=grant_type,
        priority=priority,
        principal=max(balance, 0),
        balance=balance,
        created_at=NOW,
    )


def _metadata(message_id: str = "msg-1", **overrides) -> UsageMetadata:
    fields = {
        "message_id": message_id,
        "model": "claude-sonnet",
        "start_time": NOW - timedelta(milliseconds=1500),
        "cost": Decimal("0.0125"),
        "input_tokens": 1200,
        "output_tokens": 300,
    }
    fields.update(overrides)
    return UsageMetadata(**fields)


async def _usage_row(transaction, message_id: str):
    async def _read(session):
        return await UsageMessageRepository(session).get(message_id)

    return await transaction(_read)


async def _usage_count(transaction) -> int:
    async def _count(session):
        return (await session.execute(select(func.count()).select_from(UsageMessageTable))).scalar()

    return await transaction(_count)


# ---------------------------------------------------------------------------
# Drain planning
# ---------------------------------------------------------------------------


class TestConsumeFromOrderedGrants:
    """Verify the pure drain plan."""

    def test_drains_in_given_order(self):
        plan = consume_from_ordered_grants([_grant("free", 30), _grant("paid", 500, GrantType.PURCHASE, 80)], 50)

        assert [(e.operation_id, e.consumed, e.balance_after) for e in plan] == [
            ("free", 30, 0),
            ("paid", 20, 480),
        ]

    def test_stops_when_satisfied(self):
        plan = consume_from_ordered_grants([_grant("a", 100), _grant("b", 100)], 40)
        assert [(e.operation_id, e.balance_after) for e in plan] == [("a", 60)]

    def test_shortfall_charged_to_last_grant(self):
        plan = consume_from_ordered_grants([_grant("a", 30), _grant("b", 20)], 80)

        assert [(e.operation_id, e.consumed, e.balance_after) for e in plan] == [
            ("a", 30, 0),
            ("b", 50, -30),
        ]

    def test_shortfall_on_untouched_last_grant(self):
        """A last grant already in debt still receives the shortfall."""
        plan = consume_from_ordered_grants([_grant("a", 30), _grant("b", -10)], 50)

        assert [(e.operation_id, e.consumed, e.balance_before, e.balance_after) for e in plan] == [
            ("a", 30, 30, 0),
            ("b", 20, -10, -30),
        ]

    def test_non_positive_balances_skipped(self):
        plan = consume_from_ordered_grants([_grant("empty", 0), _grant("b", 100)], 10)
        assert [e.operation_id for e in plan] == ["b"]

    def test_zero_credits_touches_nothing(self):
        assert consume_from_ordered_grants([_grant("a", 10)], 0) == []

    def test_empty_grants(self):
        assert consume_from_ordered_grants([], 10) == []


# ---------------------------------------------------------------------------
# consume_credits
# ---------------------------------------------------------------------------


class TestConsumeCredits:
    """Verify transactional consumption against the ledger."""

    @pytest.mark.asyncio
    async def test_scenario_free_then_purchase(self, transaction, add_grant, get_grant, collector):
        await add_grant("u1", 30, GrantType.FREE, operation_id="free")
        await add_grant("u1", 500, GrantType.PURCHASE, operation_id="paid")

        result = await consume_credits(
            transaction, owner_id="u1", credits=50, metadata=_metadata(), collector=collector, now=NOW
        )

        assert result.success is True
        assert result.credits_consumed == 50
        assert result.purchased_credits == 20
        assert (await get_grant("free")).balance == 0
        assert (await get_grant("paid")).balance == 480

    @pytest.mark.asyncio
    async def test_order_by_priority_expiry_then_creation(self, transaction, add_grant):
        await add_grant("u1", 10, GrantType.PURCHASE, operation_id="p80")
        await add_grant("u1", 10, GrantType.ADMIN, operation_id="p60-late", created_at=NOW + timedelta(seconds=5))
        await add_grant("u1", 10, GrantType.ADMIN, operation_id="p60-early", created_at=NOW)
        await add_grant("u1", 10, GrantType.FREE, operation_id="p20-never")
        await add_grant(
            "u1", 10, GrantType.FREE, operation_id="p20-soon", expires_at=NOW + timedelta(days=1)
        )

        result = await consume_credits(transaction, owner_id="u1", credits=45, metadata=_metadata(), now=NOW)

        assert [e.operation_id for e in result.breakdown] == [
            "p20-soon",
            "p20-never",
            "p60-early",
            "p60-late",
            "p80",
        ]
        assert result.breakdown[-1].consumed == 5

    @pytest.mark.asyncio
    async def test_legacy_referral_before_one_time_referral(self, transaction, add_grant):
        await add_grant("u1", 10, GrantType.ADMIN, operation_id="admin")
        await add_grant("u1", 10, GrantType.REFERRAL, operation_id="referral")
        await add_grant("u1", 10, GrantType.REFERRAL_LEGACY, operation_id="legacy")
        await add_grant("u1", 10, GrantType.FREE, operation_id="free")

        result = await consume_credits(transaction, owner_id="u1", credits=40, metadata=_metadata(), now=NOW)

        assert [e.operation_id for e in result.breakdown] == ["free", "legacy", "referral", "admin"]
        assert GRANT_PRIORITIES[GrantType.REFERRAL_LEGACY] == 30
        assert GRANT_PRIORITIES[GrantType.REFERRAL] == 50

    @pytest.mark.asyncio
    async def test_conservation(self, transaction, add_grant, get_grant):
        for index, amount in enumerate([40, 25, 70, 100]):
            await add_grant("u1", amount, operation_id=f"g{index}", created_at=NOW + timedelta(seconds=index))

        await consume_credits(transaction, owner_id="u1", credits=90, metadata=_metadata(), now=NOW)

        balances = [(await get_grant(f"g{index}")).balance for index in range(4)]
        assert sum(balances) == 235 - 90
        assert balances == [0, 0, 45, 100]

    @pytest.mark.asyncio
    async def test_debt_concentrated_on_last_grant(self, transaction, add_grant, get_grant):
        await add_grant("u1", 30, GrantType.FREE, operation_id="free")
        await add_grant("u1", 20, GrantType.PURCHASE, operation_id="paid")

        result = await consume_credits(transaction, owner_id="u1", credits=100, metadata=_metadata(), now=NOW)

        assert result.success is True
        assert result.credits_consumed == 100
        assert (await get_grant("free")).balance == 0
        assert (await get_grant("paid")).balance == -50

    @pytest.mark.asyncio
    async def test_expired_grants_ignored(self, transaction, add_grant, get_grant):
        await add_grant("u1", 100, operation_id="expired", expires_at=NOW - timedelta(seconds=1))
        await add_grant("u1", 100, GrantType.PURCHASE, operation_id="live")

        await consume_credits(transaction, owner_id="u1", credits=10, metadata=_metadata(), now=NOW)

        assert (await get_grant("expired")).balance == 100
        assert (await get_grant("live")).balance == 90

    @pytest.mark.asyncio
    async def test_grant_expiring_exactly_now_is_ineligible(self, transaction, add_grant):
        await add_grant("u1", 100, operation_id="edge", expires_at=NOW)

        result = await consume_credits(transaction, owner_id="u1", credits=10, metadata=_metadata(), now=NOW)

        assert result.success is False
        assert result.error_code == FailureCode.INSUFFICIENT_GRANTS

    @pytest.mark.asyncio
    async def test_no_grants_is_insufficient_and_writes_nothing(self, transaction, collector):
        report = AsyncMock()

        result = await consume_credits(
            transaction,
            owner_id="u1",
            credits=25,
            metadata=_metadata(),
            report_usage=report,
            collector=collector,
            now=NOW,
        )

        assert result.success is False
        assert result.error_code == FailureCode.INSUFFICIENT_GRANTS
        assert result.error == "No active grants found for u1"
        assert result.credits_requested == 25
        assert await _usage_count(transaction) == 0
        report.assert_not_awaited()
        assert collector.pending == []

    @pytest.mark.asyncio
    async def test_usage_row_recorded(self, transaction, add_grant):
        await add_grant("u1", 100, operation_id="free")

        await consume_credits(
            transaction,
            owner_id="u1",
            credits=15,
            metadata=_metadata("msg-usage", client_id="cli", agent_id="agent-7"),
            now=NOW,
        )

        row = await _usage_row(transaction, "msg-usage")
        assert row.owner_id == "u1"
        assert row.user_id == "u1"
        assert row.org_id is None
        assert row.credits == 15
        assert row.cost == Decimal("0.0125")
        assert row.input_tokens == 1200
        assert row.output_tokens == 300
        assert row.latency_ms == 1500
        assert row.client_id == "cli"
        assert row.agent_id == "agent-7"
        assert row.byok is False
        assert row.breakdown_json[0]["operation_id"] == "free"

    @pytest.mark.asyncio
    async def test_byok_bypasses_grants(self, transaction, add_grant, get_grant, collector):
        await add_grant("u1", 100, operation_id="free")
        report = AsyncMock()

        result = await consume_credits(
            transaction,
            owner_id="u1",
            credits=40,
            metadata=_metadata("msg-byok", byok=True),
            report_usage=report,
            collector=collector,
            now=NOW,
        )

        assert result.success is True
        assert result.breakdown == []
        assert result.credits_consumed == 0
        assert (await get_grant("free")).balance == 100
        row = await _usage_row(transaction, "msg-byok")
        assert row.credits == 0
        assert row.byok is True
        report.assert_not_awaited()
        event = collector.pending[0]
        assert event.properties["byok"] is True
        assert event.properties["credits_requested"] == 40

    @pytest.mark.asyncio
    async def test_byok_without_any_grants_succeeds(self, transaction):
        result = await consume_credits(
            transaction, owner_id="nobody", credits=10, metadata=_metadata(byok=True), now=NOW
        )
        assert result.success is True

    @pytest.mark.asyncio
    async def test_reports_purchased_portion_only(self, transaction, add_grant):
        await add_grant("u1", 30, GrantType.FREE, operation_id="free")
        await add_grant("u1", 500, GrantType.PURCHASE, operation_id="paid")
        report = AsyncMock()
        metadata = _metadata()

        await consume_credits(
            transaction, owner_id="u1", credits=50, metadata=metadata, report_usage=report, now=NOW
        )

        report.assert_awaited_once_with("u1", 20, metadata, OwnerType.USER)

    @pytest.mark.asyncio
    async def test_debt_on_purchase_grant_not_reported(self, transaction, add_grant, get_grant):
        await add_grant("u1", 20, GrantType.PURCHASE, operation_id="paid")
        report = AsyncMock()
        metadata = _metadata()

        result = await consume_credits(
            transaction, owner_id="u1", credits=100, metadata=metadata, report_usage=report, now=NOW
        )

        assert result.credits_consumed == 100
        assert result.purchased_credits == 20
        assert (await get_grant("paid")).balance == -80
        report.assert_awaited_once_with("u1", 20, metadata, OwnerType.USER)

    @pytest.mark.asyncio
    async def test_no_report_without_purchase_grants(self, transaction, add_grant):
        await add_grant("u1", 100, GrantType.FREE, operation_id="free")
        report = AsyncMock()

        await consume_credits(
            transaction, owner_id="u1", credits=50, metadata=_metadata(), report_usage=report, now=NOW
        )

        report.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_reporter_failure_does_not_undo_consumption(self, transaction, add_grant, get_grant):
        await add_grant("u1", 100, GrantType.PURCHASE, operation_id="paid")
        report = AsyncMock(side_effect=RuntimeError("stripe down"))

        result = await consume_credits(
            transaction, owner_id="u1", credits=10, metadata=_metadata(), report_usage=report, now=NOW
        )

        assert result.success is True
        assert (await get_grant("paid")).balance == 90
        assert await _usage_row(transaction, "msg-1") is not None

    @pytest.mark.asyncio
    async def test_duplicate_message_id_rolls_back(self, transaction, add_grant, get_grant):
        await add_grant("u1", 100, operation_id="free")

        first = await consume_credits(transaction, owner_id="u1", credits=10, metadata=_metadata("dup"), now=NOW)
        second = await consume_credits(transaction, owner_id="u1", credits=10, metadata=_metadata("dup"), now=NOW)

        assert first.success is True
        assert second.success is False
        assert second.error_code == FailureCode.WRITE_FAILURE
        assert (await get_grant("free")).balance == 90

    @pytest.mark.asyncio
    async def test_analytics_event(self, transaction, add_grant, collector):
        await add_grant("u1", 100, operation_id="free")

        await consume_credits(
            transaction,
            owner_id="u1",
            credits=10,
            metadata=_metadata(),
            collector=collector,
            source="personal",
            now=NOW,
        )

        event = collector.pending[0]
        assert event.event == AnalyticsEventType.CREDIT_CONSUMED
        assert event.owner_id == "u1"
        assert event.properties == {
            "credits_requested": 10,
            "credits_consumed": 10,
            "message_id": "msg-1",
            "model": "claude-sonnet",
            "source": "personal",
            "byok": False,
        }

    @pytest.mark.asyncio
    async def test_negative_credits_rejected(self, transaction):
        with pytest.raises(ValueError, match="non-negative"):
            await consume_credits(transaction, owner_id="u1", credits=-1, metadata=_metadata())
