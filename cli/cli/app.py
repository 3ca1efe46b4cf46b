"""Ledger CLI application -- Typer-based operator interface.

Provides commands for issuing and revoking grants, consuming credits,
triggering quota resets, and inspecting balances.  Human-readable output
goes to *stderr* via Rich; ``--json`` writes machine-readable results to
*stdout* so that scripts can compose cleanly.
"""

from __future__ import annotations

import asyncio
import json
import sys
import uuid
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import TYPE_CHECKING, Any, TypeVar

import typer
from pydantic import BaseModel
from rich.console import Console

from cli.display import (
    display_balance,
    display_consumption_result,
    display_failure,
    display_grant_result,
    display_reset_result,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

    from ledger_engine.config import Settings

T = TypeVar("T")

# ---------------------------------------------------------------------------
# App & global state
# ---------------------------------------------------------------------------

app = typer.Typer(
    name="ledger",
    help="Credit ledger - grants, consumption, and monthly quota resets",
    no_args_is_help=True,
)
console = Console(stderr=True)

# Mutable global options populated by the Typer callback.
_json_output: bool = False
_database_url: str | None = None
_events_file: Path | None = None


# ---------------------------------------------------------------------------
# Callback -- global options
# ---------------------------------------------------------------------------


@app.callback()
def _global_options(
    json_mode: bool = typer.Option(
        False,
        "--json/--no-json",
        help="Emit structured JSON to stdout instead of human-readable output.",
    ),
    database_url: str | None = typer.Option(
        None,
        "--database-url",
        help="Ledger database (postgresql+asyncpg:// or sqlite+aiosqlite:///).",
        envvar="LEDGER_DATABASE_URL",
    ),
    events_file: Path | None = typer.Option(
        None,
        "--events-file",
        help="Append analytics events to this file (JSONL).",
        envvar="LEDGER_EVENTS_FILE",
    ),
) -> None:
    """Global options applied to every command."""
    global _json_output, _database_url, _events_file  # noqa: PLW0603
    _json_output = json_mode
    _database_url = database_url
    _events_file = events_file


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _settings() -> Settings:
    from ledger_engine.config import load_settings

    overrides: dict[str, Any] = {}
    if _database_url:
        overrides["database_url"] = _database_url
    if _events_file is not None:
        overrides["events_file"] = _events_file
    return load_settings(**overrides)


def _run(operation: Callable[[AsyncEngine, Settings], Awaitable[T]]) -> T:
    """Run *operation* against a fresh engine and flush analytics afterwards."""
    from ledger_engine.log_format import configure_logging
    from ledger_engine.metering import configure_collector
    from ledger_engine.state.database import get_engine

    settings = _settings()
    configure_logging(settings)
    collector = configure_collector(settings)

    async def _main() -> T:
        engine = get_engine(
            settings.database_url,
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
        )
        try:
            return await operation(engine, settings)
        finally:
            collector.flush()
            await engine.dispose()

    return asyncio.run(_main())


def _emit(result: BaseModel | dict[str, Any]) -> None:
    payload = result.model_dump(mode="json") if isinstance(result, BaseModel) else result
    sys.stdout.write(json.dumps(payload, indent=2) + "\n")


def _parse_datetime(value: str | None, label: str) -> datetime | None:
    """Parse an ISO-8601 string into an aware UTC datetime, raising on failure."""
    if value is None:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as exc:
        console.print(f"[red]Invalid {label} '{value}': {exc}[/red]")
        raise typer.Exit(code=3) from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def _parse_grant_type(value: str) -> Any:
    from ledger_engine.models import GrantType

    try:
        return GrantType(value)
    except ValueError as exc:
        choices = ", ".join(t.value for t in GrantType)
        console.print(f"[red]Unknown grant type '{value}' (expected one of: {choices})[/red]")
        raise typer.Exit(code=3) from exc


# ---------------------------------------------------------------------------
# init-db / setup
# ---------------------------------------------------------------------------


@app.command("init-db")
def init_db() -> None:
    """Create the ledger tables in a SQLite database.

    PostgreSQL databases are managed with ``alembic upgrade head``.
    """
    from ledger_engine.state.sqlite_adapter import create_local_tables

    async def _init(engine: AsyncEngine, settings: Settings) -> None:
        if engine.dialect.name != "sqlite":
            console.print("[yellow]Run 'alembic upgrade head' to migrate a PostgreSQL ledger.[/yellow]")
            raise typer.Exit(code=2)
        await create_local_tables(engine)

    _run(_init)
    if _json_output:
        _emit({"initialized": True})
    else:
        console.print("[green]Ledger tables ready.[/green]")


@app.command("add-user")
def add_user(
    user_id: str = typer.Argument(..., help="Billing user id."),
    next_reset: str | None = typer.Option(
        None,
        "--next-reset",
        help="First quota reset (ISO-8601). Defaults to now, so the first reset is due immediately.",
    ),
    auto_topup: bool = typer.Option(False, "--auto-topup/--no-auto-topup", help="Auto top-up flag."),
    stripe_customer: str | None = typer.Option(None, "--stripe-customer", help="Stripe customer id."),
) -> None:
    """Register a billing user."""
    from ledger_engine.state.database import make_transaction_runner
    from ledger_engine.state.repository import BillingUserRepository

    reset_at = _parse_datetime(next_reset, "--next-reset") or datetime.now(UTC)

    async def _add(engine: AsyncEngine, settings: Settings) -> None:
        transaction = make_transaction_runner(engine, settings.transaction_retry_config())

        async def _create(session: Any) -> None:
            await BillingUserRepository(session).create(
                user_id,
                next_quota_reset=reset_at,
                auto_topup_enabled=auto_topup,
                stripe_customer_id=stripe_customer,
            )

        await transaction(_create)

    _run(_add)
    if _json_output:
        _emit({"user_id": user_id, "next_quota_reset": reset_at.isoformat()})
    else:
        console.print(f"[green]Added user {user_id}[/green] (next reset {reset_at.isoformat()})")


@app.command("add-org")
def add_org(
    org_id: str = typer.Argument(..., help="Organization id."),
    name: str = typer.Option(..., "--name", help="Display name."),
    slug: str = typer.Option(..., "--slug", help="Unique slug."),
    repos: list[str] = typer.Option(
        [],
        "--repo",
        help="Approved repository URL (repeatable).",
    ),
    stripe_customer: str | None = typer.Option(None, "--stripe-customer", help="Stripe customer id."),
) -> None:
    """Register an organization and its approved repositories."""
    from ledger_engine.billing import extract_owner_and_repo, normalize_repository_url
    from ledger_engine.state.database import make_transaction_runner
    from ledger_engine.state.repository import OrganizationRepository

    approved: list[tuple[str, str, str]] = []
    for url in repos:
        normalized = normalize_repository_url(url)
        ref = extract_owner_and_repo(normalized)
        if ref is None:
            console.print(f"[red]Malformed repository URL: {url}[/red]")
            raise typer.Exit(code=3)
        approved.append((normalized, ref.owner, ref.repo))

    async def _add(engine: AsyncEngine, settings: Settings) -> None:
        transaction = make_transaction_runner(engine, settings.transaction_retry_config())

        async def _create(session: Any) -> None:
            orgs = OrganizationRepository(session)
            await orgs.create(org_id, name, slug, stripe_customer_id=stripe_customer)
            for normalized, owner, repo in approved:
                await orgs.add_repository(
                    str(uuid.uuid4()),
                    org_id,
                    repo_url=normalized,
                    repo_owner=owner,
                    repo_name=repo,
                )

        await transaction(_create)

    _run(_add)
    if _json_output:
        _emit({"organization_id": org_id, "repositories": [url for url, _, _ in approved]})
    else:
        console.print(f"[green]Added organization {org_id}[/green] with {len(approved)} repositories")


# ---------------------------------------------------------------------------
# grant / revoke
# ---------------------------------------------------------------------------


@app.command()
def grant(
    owner_id: str = typer.Argument(..., help="User or organization receiving the credits."),
    amount: int = typer.Argument(..., help="Credits to grant (positive)."),
    grant_type: str = typer.Option("admin", "--type", help="Grant type (free, purchase, admin, ...)."),
    description: str = typer.Option("Manual grant", "--description", help="Audit note."),
    operation_id: str | None = typer.Option(
        None,
        "--operation-id",
        help="Idempotency key. Generated when omitted.",
    ),
    expires_at: str | None = typer.Option(None, "--expires-at", help="Expiry (ISO-8601)."),
    organization: bool = typer.Option(
        False,
        "--org",
        help="Grant to an organization ledger; a repeated operation id is reported as already applied.",
    ),
) -> None:
    """Issue a credit grant, settling any outstanding debt first."""
    from ledger_engine.billing import grant_credits, grant_organization_credits
    from ledger_engine.errors import LedgerFailure
    from ledger_engine.state.database import make_transaction_runner

    if amount <= 0:
        console.print(f"[red]Grant amount must be positive, got {amount}[/red]")
        raise typer.Exit(code=3)

    parsed_type = _parse_grant_type(grant_type)
    expiry = _parse_datetime(expires_at, "--expires-at")
    op_id = operation_id or f"cli-{uuid.uuid4()}"

    async def _grant(engine: AsyncEngine, settings: Settings) -> Any:
        transaction = make_transaction_runner(engine, settings.transaction_retry_config())
        if organization:
            return await grant_organization_credits(
                transaction,
                organization_id=owner_id,
                amount=amount,
                operation_id=op_id,
                description=description,
                expires_at=expiry,
            )
        return await grant_credits(
            transaction,
            owner_id=owner_id,
            amount=amount,
            grant_type=parsed_type,
            description=description,
            operation_id=op_id,
            expires_at=expiry,
        )

    result = _run(_grant)
    if isinstance(result, LedgerFailure):
        if _json_output:
            _emit(result)
        else:
            display_failure(console, result)
        raise typer.Exit(code=1)

    if _json_output:
        _emit(result)
    else:
        display_grant_result(console, result)


@app.command()
def revoke(
    operation_id: str = typer.Argument(..., help="Operation id of the grant to revoke."),
    reason: str = typer.Option(..., "--reason", help="Recorded on the grant's description."),
) -> None:
    """Zero a grant's principal and balance."""
    from ledger_engine.billing import revoke_grant_by_operation_id
    from ledger_engine.state.database import make_transaction_runner

    async def _revoke(engine: AsyncEngine, settings: Settings) -> bool:
        transaction = make_transaction_runner(engine, settings.transaction_retry_config())
        return await revoke_grant_by_operation_id(transaction, operation_id, reason)

    revoked = _run(_revoke)
    if _json_output:
        _emit({"operation_id": operation_id, "revoked": revoked})
    elif revoked:
        console.print(f"[green]Revoked {operation_id}[/green]")
    else:
        console.print(f"[red]Could not revoke {operation_id}: not found or in debt[/red]")
    if not revoked:
        raise typer.Exit(code=1)


# ---------------------------------------------------------------------------
# consume
# ---------------------------------------------------------------------------


@app.command()
def consume(
    user_id: str = typer.Argument(..., help="Acting user."),
    credits: int = typer.Argument(..., help="Credits to deduct."),
    model: str = typer.Option("manual", "--model", help="Model recorded on the usage row."),
    message_id: str | None = typer.Option(
        None,
        "--message-id",
        help="Usage event id. Generated when omitted.",
    ),
    repo_url: str | None = typer.Option(
        None,
        "--repo-url",
        help="Charge the organization that approved this repository, falling back to the user.",
    ),
    cost: str = typer.Option("0", "--cost", help="Provider cost recorded for analytics."),
    byok: bool = typer.Option(False, "--byok", help="Record usage without charging any grant."),
) -> None:
    """Consume credits in priority order, recording a usage event."""
    from ledger_engine.billing import StripeUsageReporter, consume_credits_with_fallback
    from ledger_engine.models import UsageMetadata
    from ledger_engine.state.database import make_transaction_runner

    if credits < 0:
        console.print(f"[red]Credits must be non-negative, got {credits}[/red]")
        raise typer.Exit(code=3)
    try:
        parsed_cost = Decimal(cost)
    except InvalidOperation as exc:
        console.print(f"[red]Invalid --cost '{cost}'[/red]")
        raise typer.Exit(code=3) from exc

    metadata = UsageMetadata(
        message_id=message_id or f"cli-{uuid.uuid4()}",
        model=model,
        cost=parsed_cost,
        byok=byok,
        repo_url=repo_url,
    )

    async def _consume(engine: AsyncEngine, settings: Settings) -> Any:
        transaction = make_transaction_runner(engine, settings.transaction_retry_config())
        return await consume_credits_with_fallback(
            transaction,
            user_id=user_id,
            credits=credits,
            metadata=metadata,
            repository_url=repo_url,
            context="cli",
            report_usage=StripeUsageReporter(settings, engine),
        )

    result = _run(_consume)
    if _json_output:
        _emit(result)
    elif result.success:
        display_consumption_result(console, result)
    else:
        display_failure(console, result.failure)
    if not result.success:
        raise typer.Exit(code=1)


# ---------------------------------------------------------------------------
# balance / usage / reset
# ---------------------------------------------------------------------------


@app.command()
def balance(
    owner_id: str = typer.Argument(..., help="User or organization."),
    personal: bool = typer.Option(False, "--personal", help="Exclude organization grants."),
) -> None:
    """Show remaining credits, debt, and usage over unexpired grants."""
    from ledger_engine.billing import calculate_usage_and_balance
    from ledger_engine.state.database import make_transaction_runner

    async def _balance(engine: AsyncEngine, settings: Settings) -> Any:
        transaction = make_transaction_runner(engine, settings.transaction_retry_config())

        async def _read(session: Any) -> Any:
            return await calculate_usage_and_balance(session, owner_id, is_personal_context=personal)

        return await transaction(_read)

    usage = _run(_balance)
    if _json_output:
        _emit(usage)
    else:
        display_balance(console, owner_id, usage)


@app.command()
def usage(
    user_id: str = typer.Argument(..., help="Billing user."),
) -> None:
    """Apply a due quota reset, then show the user's personal balance."""
    from ledger_engine.billing import get_user_usage_data
    from ledger_engine.errors import OwnerNotFoundError
    from ledger_engine.state.database import make_transaction_runner

    async def _usage(engine: AsyncEngine, settings: Settings) -> Any:
        transaction = make_transaction_runner(engine, settings.transaction_retry_config())
        return await get_user_usage_data(transaction, user_id, settings=settings)

    try:
        data = _run(_usage)
    except OwnerNotFoundError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1) from exc

    if _json_output:
        _emit(data)
        return
    from ledger_engine.models import UsageAndBalance

    display_balance(console, user_id, UsageAndBalance(usage_this_cycle=data.usage_this_cycle, balance=data.balance))
    console.print(
        f"[bold]Next reset:[/bold] {data.next_quota_reset.isoformat()}  "
        f"[bold]Auto top-up:[/bold] {'on' if data.auto_topup_enabled else 'off'}"
    )


@app.command()
def reset(
    user_id: str = typer.Argument(..., help="Billing user."),
) -> None:
    """Trigger the monthly quota reset if it is due."""
    from ledger_engine.billing import trigger_monthly_reset_and_grant
    from ledger_engine.errors import OwnerNotFoundError
    from ledger_engine.state.database import make_transaction_runner

    async def _reset(engine: AsyncEngine, settings: Settings) -> Any:
        transaction = make_transaction_runner(engine, settings.transaction_retry_config())
        return await trigger_monthly_reset_and_grant(transaction, user_id, settings=settings)

    try:
        result = _run(_reset)
    except OwnerNotFoundError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1) from exc

    if _json_output:
        _emit(result)
    else:
        display_reset_result(console, user_id, result)
