"""Rich output formatting for the billing CLI.

All functions write to a :class:`rich.console.Console` instance (typically
bound to *stderr*) so that machine-readable output on *stdout* is never
polluted with human-readable decoration.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

if TYPE_CHECKING:
    from billing_engine.models.proration import ProrationResult


# ---------------------------------------------------------------------------
# Outcome colour mapping
# ---------------------------------------------------------------------------

_OUTCOME_COLOURS: dict[str, str] = {
    "completed": "green",
    "settled": "green",
    "recovered": "green",
    "invoiced": "green",
    "failed": "red",
    "errors": "red",
    "bookkeeping": "red",
    "skipped": "dim",
    "not_found": "yellow",
}


def _coloured_count(key: str, value: Any) -> str:
    colour = _OUTCOME_COLOURS.get(key)
    if colour is None or not value:
        return str(value)
    return f"[{colour}]{value}[/{colour}]"


def _money(amount_cents: float, currency: str) -> str:
    return f"{amount_cents / 100:,.2f} {currency}"


# ---------------------------------------------------------------------------
# Sweep summaries
# ---------------------------------------------------------------------------


def display_summary(console: Console, title: str, summary: dict[str, Any]) -> None:
    """Render a sweep or scan summary as a two-column table.

    Parameters
    ----------
    console:
        Rich console to write to (typically stderr).
    title:
        Table title, e.g. ``"Scheduled changes"``.
    summary:
        Counter mapping returned by the sweep.
    """
    table = Table(title=title, show_header=True, header_style="bold")
    table.add_column("Outcome", style="bold")
    table.add_column("Count", justify="right")
    for key, value in summary.items():
        table.add_row(key.replace("_", " "), _coloured_count(key, value))
    console.print(table)


# ---------------------------------------------------------------------------
# Proration preview
# ---------------------------------------------------------------------------


def display_proration(
    console: Console,
    result: ProrationResult | None,
    explanation: str,
    currency: str = "USD",
) -> None:
    """Render a proration breakdown with its customer-facing explanation."""
    if result is None:
        console.print(Panel(explanation, title="Change preview", border_style="blue"))
        return

    table = Table(title="Proration", show_header=True, header_style="bold")
    table.add_column("Field", style="bold")
    table.add_column("Value", justify="right")
    table.add_row("Period", f"{result.period_start.date()} .. {result.period_end.date()}")
    table.add_row("Days (used / remaining / total)", f"{result.days_used} / {result.days_remaining} / {result.days_total}")
    table.add_row("Credit", _money(result.credit_amount, currency))
    table.add_row("Charge", _money(result.charge_amount, currency))

    net_colour = "green" if result.net_amount <= 0 else "yellow"
    table.add_row("Net", f"[{net_colour}]{_money(result.net_amount, currency)}[/{net_colour}]")
    console.print(table)
    console.print(Panel(explanation, border_style="blue"))


# ---------------------------------------------------------------------------
# Dunning stats
# ---------------------------------------------------------------------------


def display_dunning_stats(console: Console, workspace_id: str, stats: dict[str, Any], currency: str = "USD") -> None:
    """Render campaign counts and the recovery rate for a workspace."""
    lines = [
        f"[bold]Workspace:[/bold]  {workspace_id}",
        f"[bold]Campaigns:[/bold]  {stats.get('total', 0)}",
        f"[bold]Active:[/bold]     {stats.get('active', 0)}",
        f"[bold]Recovered:[/bold]  [green]{stats.get('recovered', 0)}[/green]",
        f"[bold]Failed:[/bold]     [red]{stats.get('failed', 0)}[/red]",
        f"[bold]Recovered amount:[/bold] {_money(stats.get('recovered_amount_cents', 0), currency)}",
        f"[bold]Recovery rate:[/bold] {stats.get('recovery_rate', 0.0):.1%}",
    ]
    console.print(Panel("\n".join(lines), title="Dunning", border_style="blue"))
