"""Unit tests for ledger_engine.billing.delegation.

Covers URL normalization, owner/repo extraction, organization lookup, and
delegated consumption with and without personal fallback.
"""

from __future__ import annotations

from datetime import UTC, datetime
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.exc import OperationalError

from ledger_engine.billing.delegation import (
    consume_credits_with_delegation,
    consume_credits_with_fallback,
    extract_owner_and_repo,
    find_organization_for_repository,
    normalize_repository_url,
)
from ledger_engine.errors import FailureCode
from ledger_engine.metering import AnalyticsEventType
from ledger_engine.models import GrantType, OwnerType, UsageMetadata
from ledger_engine.state.repository import UsageMessageRepository

NOW = datetime(2025, 3, 15, 12, 0, tzinfo=UTC)
REPO = ("https://github.com/acme/widgets", "acme", "widgets")


def _metadata(message_id: str = "msg-1") -> UsageMetadata:
    return UsageMetadata(message_id=message_id, model="claude-sonnet", start_time=NOW)


# ---------------------------------------------------------------------------
# URL normalization
# ---------------------------------------------------------------------------


class TestNormalizeRepositoryUrl:
    def test_ssh_and_https_forms_are_equivalent(self):
        assert normalize_repository_url("git@github.com:owner/repo.git") == "https://github.com/owner/repo"
        assert normalize_repository_url("https://github.com/owner/repo/") == "https://github.com/owner/repo"

    @pytest.mark.parametrize(
        "url",
        [
            "https://github.com/Owner/Repo.git",
            "http://github.com/owner/repo",
            "github.com/owner/repo",
            "ssh://git@github.com/owner/repo.git",
            "ssh://git@github.com:22/owner/repo.git",
            "ssh://github.com/owner/repo",
            "  https://GitHub.com/owner/repo  ",
            "https://github.com/owner/repo.git/",
        ],
    )
    def test_variants(self, url):
        assert normalize_repository_url(url) == "https://github.com/owner/repo"

    def test_ssh_port_is_not_the_owner(self):
        normalized = normalize_repository_url("ssh://git@github.com:22/owner/repo.git")
        ref = extract_owner_and_repo(normalized)
        assert (ref.owner, ref.repo) == ("owner", "repo")

    def test_keeps_nested_paths(self):
        assert normalize_repository_url("git@gitlab.com:group/sub/project.git") == "https://gitlab.com/group/sub/project"


class TestExtractOwnerAndRepo:
    def test_normalized_url(self):
        ref = extract_owner_and_repo("https://github.com/acme/widgets")
        assert ref is not None
        assert (ref.owner, ref.repo) == ("acme", "widgets")

    def test_extra_segments_ignored(self):
        ref = extract_owner_and_repo("https://github.com/acme/widgets/tree/main")
        assert ref is not None
        assert (ref.owner, ref.repo) == ("acme", "widgets")

    @pytest.mark.parametrize("url", ["https://github.com/acme", "https://github.com", "acme", ""])
    def test_too_few_segments(self, url):
        assert extract_owner_and_repo(url) is None


# ---------------------------------------------------------------------------
# Organization lookup
# ---------------------------------------------------------------------------


class TestFindOrganization:
    @pytest.mark.asyncio
    async def test_matches_by_url(self, transaction, add_org):
        await add_org("org-1", [REPO])

        async def _find(session):
            return await find_organization_for_repository(session, "git@github.com:acme/widgets.git")

        org = await transaction(_find)
        assert org is not None
        assert org.id == "org-1"
        assert org.slug == "org-org-1"

    @pytest.mark.asyncio
    async def test_matches_by_owner_and_repo_case_insensitive(self, transaction, add_org):
        await add_org("org-1", [("https://github.example.com/Acme/Widgets", "Acme", "Widgets")])

        async def _find(session):
            return await find_organization_for_repository(session, "https://github.com/acme/widgets")

        org = await transaction(_find)
        assert org is not None
        assert org.id == "org-1"

    @pytest.mark.asyncio
    async def test_inactive_repository_ignored(self, transaction, add_org):
        await add_org("org-1", [REPO], is_active=False)

        async def _find(session):
            return await find_organization_for_repository(session, REPO[0])

        assert await transaction(_find) is None

    @pytest.mark.asyncio
    async def test_malformed_url(self, transaction):
        async def _find(session):
            return await find_organization_for_repository(session, "https://github.com/acme")

        assert await transaction(_find) is None


# ---------------------------------------------------------------------------
# Delegated consumption
# ---------------------------------------------------------------------------


class TestConsumeWithDelegation:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("url", [None, ""])
    async def test_missing_url(self, transaction, url):
        result = await consume_credits_with_delegation(
            transaction, user_id="u1", repository_url=url, credits=10, metadata=_metadata()
        )

        assert result.success is False
        assert result.error_code == FailureCode.NO_REPOSITORY_URL
        assert result.error == "No repository URL provided"

    @pytest.mark.asyncio
    async def test_malformed_url(self, transaction):
        result = await consume_credits_with_delegation(
            transaction, user_id="u1", repository_url="github.com/acme", credits=10, metadata=_metadata()
        )

        assert result.error_code == FailureCode.MALFORMED_REPOSITORY_URL
        assert "github.com/acme" in result.error

    @pytest.mark.asyncio
    async def test_no_organization(self, transaction):
        result = await consume_credits_with_delegation(
            transaction, user_id="u1", repository_url=REPO[0], credits=10, metadata=_metadata()
        )

        assert result.error_code == FailureCode.NO_ORGANIZATION_FOUND
        assert result.error == "No organization found for repository https://github.com/acme/widgets"

    @pytest.mark.asyncio
    async def test_lookup_error_is_a_typed_failure(self):
        transaction = AsyncMock(side_effect=OperationalError("SELECT", {}, Exception("gone")))

        result = await consume_credits_with_delegation(
            transaction, user_id="u1", repository_url=REPO[0], credits=10, metadata=_metadata()
        )

        assert result.success is False
        assert result.error_code == FailureCode.NO_ORGANIZATION_FOUND

    @pytest.mark.asyncio
    async def test_charges_organization_ledger(self, transaction, add_org, add_grant, get_grant, collector):
        await add_org("org-1", [REPO])
        await add_grant("org-1", 1000, GrantType.ORGANIZATION, operation_id="org-grant", owner_type=OwnerType.ORGANIZATION)
        await add_grant("u1", 1000, operation_id="user-grant")

        result = await consume_credits_with_delegation(
            transaction,
            user_id="u1",
            repository_url="git@github.com:acme/widgets.git",
            credits=40,
            metadata=_metadata(),
            collector=collector,
            now=NOW,
        )

        assert result.success is True
        assert result.owner_id == "org-1"
        assert result.organization_id == "org-1"
        assert (await get_grant("org-grant")).balance == 960
        assert (await get_grant("user-grant")).balance == 1000

        async def _read(session):
            return await UsageMessageRepository(session).get("msg-1")

        usage = await transaction(_read)
        assert usage.owner_id == "org-1"
        assert usage.user_id == "u1"
        assert usage.org_id == "org-1"
        assert usage.repo_url == "https://github.com/acme/widgets"

        event = collector.pending[0]
        assert event.event == AnalyticsEventType.CREDIT_CONSUMED
        assert event.owner_id == "u1"
        assert event.properties["organization_id"] == "org-1"
        assert event.properties["source"] == "organization"

    @pytest.mark.asyncio
    async def test_organization_without_grants(self, transaction, add_org):
        await add_org("org-1", [REPO])

        result = await consume_credits_with_delegation(
            transaction, user_id="u1", repository_url=REPO[0], credits=10, metadata=_metadata(), now=NOW
        )

        assert result.error_code == FailureCode.INSUFFICIENT_GRANTS
        assert result.owner_id == "org-1"


class TestConsumeWithFallback:
    @pytest.mark.asyncio
    async def test_uses_organization_when_resolved(self, transaction, add_org, add_grant, get_grant):
        await add_org("org-1", [REPO])
        await add_grant("org-1", 100, GrantType.ORGANIZATION, operation_id="org-grant", owner_type=OwnerType.ORGANIZATION)
        await add_grant("u1", 100, operation_id="user-grant")

        result = await consume_credits_with_fallback(
            transaction, user_id="u1", credits=10, metadata=_metadata(), repository_url=REPO[0], now=NOW
        )

        assert result.organization_id == "org-1"
        assert (await get_grant("user-grant")).balance == 100

    @pytest.mark.asyncio
    async def test_falls_back_to_user(self, transaction, add_grant, get_grant, collector):
        await add_grant("u1", 100, operation_id="user-grant")

        result = await consume_credits_with_fallback(
            transaction,
            user_id="u1",
            credits=10,
            metadata=_metadata(),
            repository_url="https://github.com/unknown/repo",
            context="agent",
            collector=collector,
            now=NOW,
        )

        assert result.success is True
        assert result.organization_id is None
        assert (await get_grant("user-grant")).balance == 90
        assert collector.pending[0].properties["source"] == "agent"

    @pytest.mark.asyncio
    async def test_falls_back_when_organization_is_empty(self, transaction, add_org, add_grant, get_grant):
        await add_org("org-1", [REPO])
        await add_grant("u1", 100, operation_id="user-grant")

        result = await consume_credits_with_fallback(
            transaction, user_id="u1", credits=10, metadata=_metadata(), repository_url=REPO[0], now=NOW
        )

        assert result.success is True
        assert result.owner_id == "u1"
        assert (await get_grant("user-grant")).balance == 90

    @pytest.mark.asyncio
    async def test_without_url_charges_user(self, transaction, add_grant, get_grant):
        await add_grant("u1", 100, operation_id="user-grant")

        result = await consume_credits_with_fallback(
            transaction, user_id="u1", credits=25, metadata=_metadata(), now=NOW
        )

        assert result.success is True
        assert (await get_grant("user-grant")).balance == 75
