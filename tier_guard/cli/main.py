"""
CLI interface for Tier Guard.

Provides command-line access to the ledger, history and reconciliation.
"""

import sys
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from tier_guard.config.loader import load_config
from tier_guard.core.errors import TierGuardError
from tier_guard.core.service import TierGuardService

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


def _config_option():
    return typer.Option(
        None,
        "--config",
        "-c",
        help="Path to YAML configuration file"
    )


def _build_service(config_path: Optional[str]) -> TierGuardService:
    """Load configuration and build the proxy service."""
    return TierGuardService.from_config(load_config(config_path))


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context):
    """Tier Guard CLI."""
    if ctx.invoked_subcommand is None:
        console.print("Tier Guard - Use --help to see available commands")


@app.command()
def init(config: Optional[str] = _config_option()):
    """Initialize the Tier Guard database."""
    try:
        service = _build_service(config)
        try:
            service.initialize()
        finally:
            service.close()
        console.print(f"[green]✓[/] Database initialized at {service.ledger.repository.db_path}")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def usage(config: Optional[str] = _config_option()):
    """Show today's token usage per tier."""
    service = _build_service(config)
    try:
        stats = service.get_usage_stats()
    except TierGuardError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        console.print("Run `tier-guard init` to initialize the database")
        sys.exit(EXIT_CODE_FAIL)
    finally:
        service.close()

    table = Table(title=f"Token usage for {stats.date} (UTC)")
    table.add_column("Tier")
    table.add_column("Used", justify="right")
    table.add_column("Limit", justify="right")
    table.add_column("Used %", justify="right")
    for tier, tier_stats in stats.tiers.items():
        color = "red" if tier_stats.percentage >= 100 else "green"
        table.add_row(
            tier.value,
            f"{tier_stats.used:,}",
            f"{tier_stats.limit:,}",
            f"[{color}]{tier_stats.percentage:.1f}%[/]"
        )
    console.print(table)
    console.print("Daily reset: 00:00 UTC")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def history(
    limit: int = typer.Option(20, "--limit", "-l", help="Number of entries to show (max 500)"),
    offset: int = typer.Option(0, "--offset", "-o", help="Number of newest entries to skip"),
    config: Optional[str] = _config_option()
):
    """Show recent requests, newest first."""
    service = _build_service(config)
    try:
        page = service.get_history(limit, offset)
    except TierGuardError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    finally:
        service.close()

    if not page.entries:
        console.print("\n[bold yellow]No requests recorded yet[/]\n")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="Request history")
    table.add_column("Time (UTC)")
    table.add_column("Model")
    table.add_column("Tier")
    table.add_column("Prompt", justify="right")
    table.add_column("Completion", justify="right")
    table.add_column("Total", justify="right")
    table.add_column("Path")
    table.add_column("Status", justify="right")
    for entry in page.entries:
        table.add_row(
            entry.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            entry.model,
            entry.tier.value,
            f"{entry.prompt_tokens:,}",
            f"{entry.completion_tokens:,}",
            f"{entry.total_tokens:,}",
            entry.request_path,
            str(entry.status)
        )
    console.print(table)

    pagination = page.pagination
    shown_to = pagination.offset + len(page.entries)
    console.print(f"Showing {pagination.offset + 1}-{shown_to} of {pagination.total}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def reconcile(
    date: Optional[str] = typer.Option(
        None,
        "--date",
        "-d",
        help="Day to reconcile as YYYY-MM-DD (defaults to today, UTC)"
    ),
    config: Optional[str] = _config_option()
):
    """
    Reconcile local usage with the OpenAI organization usage report.

    Adds usage the proxy could not count, such as streamed responses.
    Counters are never lowered. Requires OPENAI_ADMIN_KEY.
    """
    service = _build_service(config)
    try:
        result = service.reconcile(date)
    except TierGuardError as e:
        console.print(f"[red]Reconciliation failed:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    finally:
        service.close()

    console.print(f"\n[bold]Reconciliation for {result.date}[/bold]")
    console.print("-" * 40)

    table = Table()
    table.add_column("Tier")
    table.add_column("OpenAI reports", justify="right")
    table.add_column("Before", justify="right")
    table.add_column("After", justify="right")
    table.add_column("Added", justify="right")
    for tier, correction in result.tiers.items():
        table.add_row(
            tier.value,
            f"{correction.upstream:,}",
            f"{correction.before:,}",
            f"{correction.after:,}",
            f"{correction.added:,}"
        )
    console.print(table)

    for line in result.details:
        console.print(f"  {line}")

    if not result.applied:
        console.print(f"\n[yellow]{result.date} is not the current ledger day; nothing was applied[/]")
    elif result.total_added > 0:
        console.print(f"\n[green]✓[/] Added {result.total_added:,} tokens")
    else:
        console.print("\n[green]✓[/] No updates needed")
    sys.exit(EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
