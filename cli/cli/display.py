"""Rich output formatting for the ledger CLI.

All functions write to a :class:`rich.console.Console` instance (typically
bound to *stderr*) so that machine-readable output on *stdout* is never
polluted with human-readable decoration.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

if TYPE_CHECKING:
    from ledger_engine.errors import LedgerFailure
    from ledger_engine.models import ConsumptionResult, GrantResult, ResetResult, UsageAndBalance


def _signed(value: int) -> str:
    """Colour negative amounts red."""
    if value < 0:
        return f"[red]{value}[/red]"
    return str(value)


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


def display_failure(console: Console, failure: LedgerFailure) -> None:
    console.print(f"[red]{failure.code.value}:[/red] {failure.message}")
    if failure.cause:
        console.print(f"[dim]cause: {failure.cause}[/dim]")


# ---------------------------------------------------------------------------
# Grants
# ---------------------------------------------------------------------------


def display_grant_result(console: Console, result: GrantResult) -> None:
    """Render the outcome of a grant.

    Parameters
    ----------
    console:
        Rich console to write to (typically stderr).
    result:
        The grant outcome.
    """
    if result.replayed:
        status = "[yellow]already applied[/yellow]"
    elif result.created:
        status = "[green]created[/green]"
    else:
        status = "[yellow]absorbed by debt[/yellow]"

    lines = [
        f"[bold]Operation:[/bold] {result.operation_id}",
        f"[bold]Owner:[/bold]     {result.owner_id}",
        f"[bold]Type:[/bold]      {result.type.value}",
        f"[bold]Amount:[/bold]    {result.amount}",
        f"[bold]Balance:[/bold]   {result.balance}",
        f"[bold]Status:[/bold]    {status}",
    ]
    if result.debt_cleared:
        lines.append(f"[bold]Debt cleared:[/bold] {result.debt_cleared}")
    console.print(Panel("\n".join(lines), title="Grant", border_style="green"))


# ---------------------------------------------------------------------------
# Consumption
# ---------------------------------------------------------------------------


def display_consumption_result(console: Console, result: ConsumptionResult) -> None:
    """Render a successful consumption with its per-grant breakdown."""
    header = f"Consumed {result.credits_consumed} of {result.credits_requested} credits from {result.owner_id}"
    if result.organization_id:
        header += f" [dim](organization {result.organization_id})[/dim]"
    console.print(f"[bold green]{header}[/bold green]")

    if not result.breakdown:
        console.print("[dim]No grants touched.[/dim]")
        return

    table = Table(title="Breakdown", show_lines=False)
    table.add_column("Operation", style="cyan")
    table.add_column("Type")
    table.add_column("Consumed", justify="right")
    table.add_column("Before", justify="right")
    table.add_column("After", justify="right")
    for entry in result.breakdown:
        table.add_row(
            entry.operation_id,
            entry.type.value,
            str(entry.consumed),
            _signed(entry.balance_before),
            _signed(entry.balance_after),
        )
    console.print(table)
    if result.purchased_credits:
        console.print(f"[dim]{result.purchased_credits} purchased credits reported for metering[/dim]")


# ---------------------------------------------------------------------------
# Balance / reset
# ---------------------------------------------------------------------------


def display_balance(console: Console, owner_id: str, usage: UsageAndBalance) -> None:
    balance = usage.balance
    table = Table(title=f"Balance for {owner_id}")
    table.add_column("Type")
    table.add_column("Remaining", justify="right")
    table.add_column("Principal", justify="right")
    for grant_type, remaining in balance.breakdown.items():
        principal = balance.principals.get(grant_type, 0)
        if remaining == 0 and principal == 0:
            continue
        table.add_row(grant_type.value, str(remaining), str(principal))
    console.print(table)
    console.print(
        f"[bold]Remaining:[/bold] {balance.total_remaining}  "
        f"[bold]Debt:[/bold] {_signed(-balance.total_debt) if balance.total_debt else 0}  "
        f"[bold]Net:[/bold] {_signed(balance.net_balance)}  "
        f"[bold]Used this cycle:[/bold] {usage.usage_this_cycle}"
    )


def display_reset_result(console: Console, user_id: str, result: ResetResult) -> None:
    if result.operation_id is None:
        console.print(
            f"[dim]No reset due for {user_id}; next reset {result.quota_reset_date.isoformat()}[/dim]"
        )
        return
    console.print(
        f"[green]Reset {user_id}:[/green] granted {result.granted} credits "
        f"({result.operation_id}), next reset {result.quota_reset_date.isoformat()}"
    )
