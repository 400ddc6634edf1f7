"""Rich rendering of balance summaries."""

from __future__ import annotations

from rich.console import Console
from rich.table import Table

from .aggregate import BalanceSummary

# Fiat units are stored in cents
FIAT_UNITS = {"usd", "eur", "gbp", "cad", "chf", "aud", "jpy", "cny", "inr"}
_SYMBOLS = {"usd": "$", "eur": "€", "gbp": "£"}


def format_amount(amount: int, unit: str) -> str:
    """Human readable amount, e.g. ``1,500 sat`` or ``$12.34``."""
    if unit in FIAT_UNITS:
        symbol = _SYMBOLS.get(unit)
        if symbol:
            return f"{symbol}{amount / 100:,.2f}"
        return f"{amount / 100:,.2f} {unit.upper()}"
    return f"{amount:,} {unit}"


def _shorten(mint_url: str) -> str:
    return mint_url[:40] + "..." if len(mint_url) > 43 else mint_url


def breakdown_table(summary: BalanceSummary) -> Table:
    table = Table(title="Mint Details", show_header=True, header_style="bold cyan")
    table.add_column("Mint", style="blue")
    table.add_column("Unit", style="cyan")
    table.add_column("Balance", style="green", justify="right")
    table.add_column("Proofs", style="magenta", justify="right")
    table.add_column("Denominations", style="dim")

    for breakdown in summary.per_mint:
        denominations = ", ".join(
            f"{count}x{denom}"
            for denom, count in sorted(breakdown.denominations.items(), reverse=True)
        )
        table.add_row(
            _shorten(breakdown.mint_url),
            breakdown.unit,
            format_amount(breakdown.total_balance, breakdown.unit),
            str(breakdown.proof_count),
            denominations or "-",
        )
    return table


def print_balance_summary(summary: BalanceSummary, console: Console | None = None) -> None:
    console = console or Console()
    console.print(breakdown_table(summary))
    console.print(
        f"[green]Total: {format_amount(summary.total_balance, summary.canonical_unit)}[/green]"
    )
    for unit, amount in summary.unconverted.items():
        console.print(f"[yellow]Not included: {format_amount(amount, unit)}[/yellow]")
