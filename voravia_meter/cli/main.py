"""
CLI interface for Voravia Meter.

Provides operator access to the usage ledger, rollups and dashboards.
"""

import json
import sys
from datetime import date
from typing import Optional

import typer
from apscheduler.schedulers.blocking import BlockingScheduler
from rich.console import Console
from rich.table import Table

from voravia_meter.config.loader import MeterConfig, configure_logging, load_meter_config
from voravia_meter.core.pricing import compute_cost
from voravia_meter.core.queries import (
    cost_per_active_user,
    group_usage,
    recent_events,
    usage_by_day,
    usage_summary,
)
from voravia_meter.core.rollup import run_daily_rollup
from voravia_meter.core.scheduler import RollupScheduler
from voravia_meter.core.token_counter import TokenUsage
from voravia_meter.storage.repository import initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


class _State:
    config: MeterConfig = MeterConfig.default()
    db_path: str = MeterConfig.default().database.path


state = _State()


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    db: Optional[str] = typer.Option(None, "--db", help="Path to the SQLite database"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to YAML config"),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Override log level"),
):
    """Voravia usage metering CLI."""
    try:
        state.config = load_meter_config(config)
    except Exception as e:
        console.print(f"[red]Error loading config:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    state.db_path = db or state.config.database.path
    configure_logging(state.config.logging, log_level)

    if ctx.invoked_subcommand is None:
        console.print("Voravia Meter - Use --help to see available commands")


@app.command()
def init():
    """Create the usage ledger and rollup tables."""
    try:
        initialize_schema(state.db_path)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def rollup(
    day: Optional[str] = typer.Option(
        None,
        "--day",
        "-d",
        help="UTC day to roll up (YYYY-MM-DD); defaults to yesterday"
    )
):
    """Recompute the daily rollup for one day."""
    try:
        target = date.fromisoformat(day) if day else None
        result = run_daily_rollup(target, db_path=state.db_path)
    except Exception as e:
        console.print(f"[red]Rollup failed:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(
        f"[green]✓[/] Rolled up {result.day.isoformat()}: {result.rows_written} rows"
    )
    sys.exit(EXIT_CODE_PASS)


@app.command()
def summary(
    days: int = typer.Option(30, "--days", help="Window length, today included"),
    provider: str = typer.Option("all", "--provider", "-p", help="Provider filter"),
    as_json: bool = typer.Option(False, "--json", help="Print the raw result"),
):
    """Show spend across all billing owners."""
    result = usage_summary(days, provider, db_path=state.db_path)
    if as_json:
        typer.echo(json.dumps(result.to_dict()))
        return

    console.print(f"\n[bold]Usage summary[/bold] (last {days} days, provider: {provider})")
    console.print("-" * 40)
    console.print(f"Rolled up: {_format_currency(result.total_rollup_usd)}")
    console.print(f"Today so far: {_format_currency(result.today_so_far_usd)}")
    console.print(f"Total: {_format_currency(result.total_usd)}")
    console.print(f"Events: {result.total_events:,}")
    _print_services(result.by_service)


@app.command("by-day")
def by_day(
    days: int = typer.Option(30, "--days", help="Window length, today included"),
    provider: str = typer.Option("all", "--provider", "-p", help="Provider filter"),
    owner: Optional[str] = typer.Option(None, "--owner", help="Billing owner filter"),
    as_json: bool = typer.Option(False, "--json", help="Print the raw result"),
):
    """Show the daily cost series."""
    series = usage_by_day(days, provider, owner, db_path=state.db_path)
    if as_json:
        typer.echo(json.dumps([point.to_dict() for point in series]))
        return

    table = Table(title="Cost by day")
    table.add_column("Day")
    table.add_column("Cost", justify="right")
    table.add_column("Events", justify="right")
    for point in series:
        table.add_row(point.day.isoformat(), _format_currency(point.cost_usd), f"{point.events:,}")
    console.print(table)


@app.command("active-users")
def active_users(
    days: int = typer.Option(30, "--days", help="Window length, today included"),
    provider: str = typer.Option("all", "--provider", "-p", help="Provider filter"),
    as_json: bool = typer.Option(False, "--json", help="Print the raw result"),
):
    """Show cost per active user."""
    result = cost_per_active_user(days, provider, db_path=state.db_path)
    if as_json:
        typer.echo(json.dumps(result.to_dict()))
        return

    console.print(f"Total: {_format_currency(result.total_usd)}")
    console.print(f"Active users: {result.active_users:,}")
    console.print(f"Cost per active user: {_format_currency(result.cost_per_active_user_usd)}")


@app.command()
def group(
    owner: str = typer.Option(..., "--owner", help="Billing owner of the group"),
    days: int = typer.Option(30, "--days", help="Window length, today included"),
    provider: str = typer.Option("all", "--provider", "-p", help="Provider filter"),
    as_json: bool = typer.Option(False, "--json", help="Print the raw result"),
):
    """Show usage of one family or workplace group."""
    result = group_usage(owner, days, provider, db_path=state.db_path)
    if as_json:
        typer.echo(json.dumps(result.to_dict()))
        return

    console.print(f"\n[bold]Group usage[/bold] for {owner} (last {days} days)")
    console.print(f"Total: {_format_currency(result.total_cost_usd)}")
    console.print(f"Today so far: {_format_currency(result.today_so_far_usd)}")

    table = Table(title="By member")
    table.add_column("Subject")
    table.add_column("Cost", justify="right")
    for subject, cost in result.by_subject_user_id.items():
        table.add_row(subject or "(none)", _format_currency(cost))
    console.print(table)
    _print_services(result.by_service)


@app.command()
def events(
    owner: Optional[str] = typer.Option(None, "--owner", help="Billing owner filter"),
    provider: str = typer.Option("all", "--provider", "-p", help="Provider filter"),
    limit: int = typer.Option(50, "--limit", "-n", help="Maximum rows (capped)"),
):
    """List the most recent usage events."""
    rows = recent_events(
        owner,
        provider,
        limit,
        db_path=state.db_path,
        max_query_limit=state.config.query.max_event_limit,
    )
    if not rows:
        console.print("\n[bold yellow]No usage events found[/]")
        return

    table = Table(title="Recent usage events")
    for column in ("Time", "Owner", "Subject", "Service", "Units", "Cost"):
        table.add_column(column)
    for event in rows:
        table.add_row(
            event.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            event.billing_owner_id,
            event.subject_user_id or "-",
            f"{event.provider}/{event.service}",
            str(event.units),
            _format_currency(event.cost_usd),
        )
    console.print(table)


@app.command()
def price(
    provider: str = typer.Option(..., "--provider", "-p", help="Provider name"),
    service: str = typer.Option(..., "--service", "-s", help="Billable service name"),
    units: int = typer.Option(1, "--units", help="Unit count for flat-rate services"),
    input_tokens: Optional[int] = typer.Option(None, "--input-tokens", help="Input tokens"),
    output_tokens: Optional[int] = typer.Option(None, "--output-tokens", help="Output tokens"),
    as_json: bool = typer.Option(False, "--json", help="Print the raw result"),
):
    """Price one call with the configured rate card; exits 1 on a pricing gap."""
    try:
        if input_tokens is None and output_tokens is None:
            usage = units
        else:
            usage = TokenUsage(input_tokens=input_tokens or 0, output_tokens=output_tokens or 0)
    except ValueError as e:
        console.print(f"[red]Invalid usage:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    cost = compute_cost(provider, service, usage, rate_card=state.config.pricing)
    if as_json:
        typer.echo(json.dumps(cost.to_dict()))
    else:
        console.print(f"Rate card: {cost.rate_version}")
        console.print(f"Cost: {_format_currency(cost.cost_usd)}")
        if not cost.priced:
            console.print(f"[yellow]Pricing gap for {provider}/{service}[/]")

    sys.exit(EXIT_CODE_PASS if cost.priced else EXIT_CODE_FAIL)


@app.command()
def scheduler():
    """Run the rollup now and then on the configured interval (blocks)."""
    initialize_schema(state.db_path)
    runner = RollupScheduler(
        db_path=state.db_path,
        interval_minutes=state.config.rollup.interval_minutes,
        scheduler=BlockingScheduler(timezone="UTC"),
    )
    console.print(
        f"Rolling up every {state.config.rollup.interval_minutes} minutes. Ctrl+C to stop."
    )
    try:
        runner.start()
    except (KeyboardInterrupt, SystemExit):
        console.print("Scheduler stopped")


def _format_currency(amount: float) -> str:
    """Format USD keeping sub-cent precision visible."""
    return f"${amount:,.4f}"


def _print_services(services):
    if not services:
        console.print("\n[dim]No usage in this window.[/]")
        return

    table = Table(title="By service")
    table.add_column("Provider")
    table.add_column("Service")
    table.add_column("Cost", justify="right")
    table.add_column("Events", justify="right")
    for item in services:
        table.add_row(item.provider, item.service, _format_currency(item.cost_usd), f"{item.events:,}")
    console.print(table)


if __name__ == "__main__":
    app()
