"""Delegation Resolver: charge an organization for work on its repositories.

A repository URL is normalized to ``https://host/owner/repo``, matched
against the organizations' approved repositories, and on a match the
consumption is redirected to the organization's ledger.  Resolution
failures are returned as typed failures, never raised.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime

from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ledger_engine.billing.consumption import PurchasedUsageReporter, consume_credits
from ledger_engine.errors import FailureCode, LedgerFailure
from ledger_engine.metering import EventCollector
from ledger_engine.models import ConsumptionResult, OwnerType, UsageMetadata
from ledger_engine.state.database import TransactionRunner
from ledger_engine.state.repository import OrganizationRepository

logger = logging.getLogger(__name__)

_SSH_URL_RE = re.compile(r"^ssh://(?:[^@/]+@)?(?P<host>[^:/]+)(?::\d+)?/(?P<path>.+)$")
_SCP_LIKE_RE = re.compile(r"^[^@/]+@(?P<host>[^:/]+)[:/](?P<path>.+)$")
_SCHEME_RE = re.compile(r"^[a-z][a-z0-9+.-]*://")


class RepositoryRef(BaseModel):
    owner: str
    repo: str


class OrganizationRef(BaseModel):
    id: str
    name: str
    slug: str


# ---------------------------------------------------------------------------
# URL handling
# ---------------------------------------------------------------------------


def normalize_repository_url(url: str) -> str:
    """Canonicalize a git remote URL for comparison.

    ``git@github.com:Owner/Repo.git``, ``https://github.com/owner/repo/`` and
    ``github.com/owner/repo`` all become ``https://github.com/owner/repo``.
    """
    normalized = url.strip().lower()

    ssh_match = _SSH_URL_RE.match(normalized) or _SCP_LIKE_RE.match(normalized)
    if ssh_match:
        normalized = f"https://{ssh_match.group('host')}/{ssh_match.group('path')}"
    elif normalized.startswith("http://"):
        normalized = "https://" + normalized[len("http://") :]
    elif not _SCHEME_RE.match(normalized):
        normalized = "https://" + normalized

    normalized = normalized.rstrip("/")
    if normalized.endswith(".git"):
        normalized = normalized[: -len(".git")]
    return normalized.rstrip("/")


def extract_owner_and_repo(url: str) -> RepositoryRef | None:
    """Split ``host/owner/repo[/...]`` into owner and repo.

    Accepts normalized URLs or bare ``host/path`` strings.  Returns
    ``None`` when there are fewer than two path segments after the host.
    """
    without_scheme = _SCHEME_RE.sub("", url.strip())
    segments = [segment for segment in without_scheme.split("/") if segment]
    if len(segments) < 3:
        return None
    return RepositoryRef(owner=segments[1], repo=segments[2])


# ---------------------------------------------------------------------------
# Organization lookup
# ---------------------------------------------------------------------------


async def find_organization_for_repository(
    session: AsyncSession,
    repository_url: str,
) -> OrganizationRef | None:
    """Return the organization that approved *repository_url*, if any."""
    normalized = normalize_repository_url(repository_url)
    ref = extract_owner_and_repo(normalized)
    if ref is None:
        return None

    org = await OrganizationRepository(session).find_by_repository(
        repo_url=normalized,
        repo_owner=ref.owner,
        repo_name=ref.repo,
    )
    if org is None:
        return None
    return OrganizationRef(id=org.id, name=org.name, slug=org.slug)


def _delegation_failure(
    user_id: str,
    credits: int,
    code: FailureCode,
    message: str,
    cause: str | None = None,
) -> ConsumptionResult:
    logger.info("Delegation for %s not applied: %s", user_id, message)
    return ConsumptionResult.failed(
        user_id,
        LedgerFailure(code=code, message=message, cause=cause),
        credits_requested=credits,
    )


# ---------------------------------------------------------------------------
# Delegated consumption
# ---------------------------------------------------------------------------


async def consume_credits_with_delegation(
    transaction: TransactionRunner,
    *,
    user_id: str,
    repository_url: str | None,
    credits: int,
    metadata: UsageMetadata,
    report_usage: PurchasedUsageReporter | None = None,
    collector: EventCollector | None = None,
    now: datetime | None = None,
) -> ConsumptionResult:
    """Charge the organization owning *repository_url* instead of the user.

    Returns
    -------
    ConsumptionResult
        The organization's consumption result with ``organization_id`` set,
        or a ``NO_REPOSITORY_URL`` / ``MALFORMED_REPOSITORY_URL`` /
        ``NO_ORGANIZATION_FOUND`` failure.
    """
    if not repository_url:
        return _delegation_failure(user_id, credits, FailureCode.NO_REPOSITORY_URL, "No repository URL provided")

    normalized = normalize_repository_url(repository_url)
    if extract_owner_and_repo(normalized) is None:
        return _delegation_failure(
            user_id,
            credits,
            FailureCode.MALFORMED_REPOSITORY_URL,
            f"Malformed repository URL: {repository_url}",
        )

    async def _lookup(session: AsyncSession) -> OrganizationRef | None:
        return await find_organization_for_repository(session, normalized)

    try:
        org = await transaction(_lookup)
    except SQLAlchemyError as exc:
        logger.error("Organization lookup failed for %s", normalized, exc_info=True)
        return _delegation_failure(
            user_id,
            credits,
            FailureCode.NO_ORGANIZATION_FOUND,
            f"Could not look up organization for repository {normalized}",
            cause=repr(exc),
        )

    if org is None:
        return _delegation_failure(
            user_id,
            credits,
            FailureCode.NO_ORGANIZATION_FOUND,
            f"No organization found for repository {normalized}",
        )

    logger.info("Delegating %d credits from %s to organization %s", credits, user_id, org.id)
    return await consume_credits(
        transaction,
        owner_id=org.id,
        credits=credits,
        metadata=metadata.model_copy(update={"repo_url": metadata.repo_url or normalized}),
        owner_type=OwnerType.ORGANIZATION,
        user_id=user_id,
        report_usage=report_usage,
        collector=collector,
        source="organization",
        now=now,
    )


async def consume_credits_with_fallback(
    transaction: TransactionRunner,
    *,
    user_id: str,
    credits: int,
    metadata: UsageMetadata,
    repository_url: str | None = None,
    context: str = "personal",
    report_usage: PurchasedUsageReporter | None = None,
    collector: EventCollector | None = None,
    now: datetime | None = None,
) -> ConsumptionResult:
    """Try organization delegation first, then charge the user's own ledger."""
    if repository_url:
        delegated = await consume_credits_with_delegation(
            transaction,
            user_id=user_id,
            repository_url=repository_url,
            credits=credits,
            metadata=metadata,
            report_usage=report_usage,
            collector=collector,
            now=now,
        )
        if delegated.success:
            return delegated
        logger.info(
            "Falling back to personal credits for %s (%s): %s",
            user_id,
            context,
            delegated.error,
        )

    return await consume_credits(
        transaction,
        owner_id=user_id,
        credits=credits,
        metadata=metadata,
        report_usage=report_usage,
        collector=collector,
        source=context,
        now=now,
    )
