"""
CLI interface for usage reconciler.

Provides command-line access to reconstruction, statistics and audits.
"""

import json
import logging
import sys
import time
from dataclasses import dataclass, replace
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from usage_reconciler.config.loader import AppConfig, default_config, load_config
from usage_reconciler.core.audit import STATUS_FAILED, AuditService, CcusageProvider
from usage_reconciler.core.clock import DateRange, parse_date
from usage_reconciler.core.reconstruction import (
    ReconstructionResult,
    ReconstructionStage,
    preview_reconstruct,
    reconstruct as run_reconstruction,
)
from usage_reconciler.core.scheduler import AuditScheduler
from usage_reconciler.storage.audit_store import AuditStore
from usage_reconciler.storage.repository import get_repository, initialize_schema

app = typer.Typer()
audit_app = typer.Typer(help="Compare recorded usage with the provider's usage report.")
app.add_typer(audit_app, name="audit")
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

WEEKDAYS = ("Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday")


@dataclass
class _State:
    config: AppConfig
    db_path: str


def configure_logging(level: int) -> None:
    """Route log records through rich on stderr."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
        force=True,
    )


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="Path to YAML configuration file"),
    db_path: Optional[str] = typer.Option(None, "--db", help="Override the database path"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Usage reconciler CLI."""
    try:
        config = load_config(config_path) if config_path else default_config()
    except (OSError, ValueError) as e:
        console.print(f"[red]Error loading configuration:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    configure_logging(logging.DEBUG if verbose else config.logging.level_number)
    ctx.obj = _State(config=config, db_path=db_path or config.database.path)
    if ctx.invoked_subcommand is None:
        console.print("Usage reconciler - Use --help to see available commands")


def _state(ctx: typer.Context) -> _State:
    return ctx.obj


def _date_range(since: Optional[str], until: Optional[str]) -> Optional[DateRange]:
    if since is None and until is None:
        return None
    try:
        start = since or until
        end = until or since
        return DateRange(parse_date(start).isoformat(), parse_date(end).isoformat())
    except ValueError as e:
        console.print(f"[red]Invalid date range:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)


def _format_currency(amount: float) -> str:
    """Format currency with proper symbols and formatting."""
    return f"${abs(amount):,.2f}" if amount >= 0 else f"-${abs(amount):,.2f}"


def _format_ms(value: Optional[int]) -> str:
    if value is None:
        return "-"
    return time.strftime("%Y-%m-%d %H:%M", time.localtime(value / 1000))


@app.command()
def init(ctx: typer.Context):
    """Initialize the usage database."""
    try:
        initialize_schema(_state(ctx).db_path)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


def _display_reconstruction(result: ReconstructionResult) -> None:
    title = "Reconstruction Preview" if result.dry_run else "Reconstruction Result"
    console.print(f"\n[bold]{title}[/bold]")
    console.print("-" * 40)

    table = Table(show_header=False)
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    covered = result.date_range_covered
    table.add_row("Files scanned", f"{result.files_scanned:,}")
    table.add_row("Partial reads", f"{result.partial_reads:,}")
    table.add_row("Queries found", f"{result.queries_found:,}")
    table.add_row("Inserted" if not result.dry_run else "Would insert", f"{result.queries_inserted:,}")
    table.add_row("Updated" if not result.dry_run else "Would update", f"{result.queries_updated:,}")
    table.add_row("Skipped", f"{result.queries_skipped:,}")
    table.add_row("Date range", f"{covered.start} .. {covered.end}" if covered else "-")
    table.add_row("Duration", f"{result.duration_ms:,} ms")
    console.print(table)

    for reason, count in sorted(result.skip_reasons.items()):
        console.print(f"  [dim]skipped {reason}: {count}[/]")
    if result.errors:
        console.print(f"\n[yellow]{len(result.errors)} error(s):[/]")
        for error in result.errors:
            console.print(f"  {error.file}: {error.error}")


def _reconstruction_command(
    ctx: typer.Context,
    local: bool,
    remote: bool,
    since: Optional[str],
    until: Optional[str],
    as_json: bool,
    dry_run: bool,
) -> None:
    state = _state(ctx)
    options = state.config.reconstruction_options(
        include_local=local,
        include_remote=remote,
        date_range=_date_range(since, until),
    )
    repository = get_repository(state.db_path)
    billing_resolver = state.config.billing.resolver()
    if dry_run:
        if not Path(state.db_path).expanduser().exists():
            console.print(f"[red]No usage store at {state.db_path}. Run 'init' first.[/]")
            sys.exit(EXIT_CODE_FAIL)
        result = preview_reconstruct(options, repository, billing_resolver=billing_resolver)
    else:
        initialize_schema(state.db_path)
        result = run_reconstruction(options, repository, billing_resolver=billing_resolver)

    if as_json:
        console.print_json(json.dumps(result.to_dict()))
    else:
        _display_reconstruction(result)
    sys.exit(EXIT_CODE_PASS if result.stage == ReconstructionStage.DONE else EXIT_CODE_FAIL)


@app.command()
def reconstruct(
    ctx: typer.Context,
    local: bool = typer.Option(True, "--local/--no-local", help="Read transcripts on this machine"),
    remote: bool = typer.Option(False, "--remote", "-r", help="Read transcripts on configured remote hosts"),
    since: Optional[str] = typer.Option(None, "--since", help="First day to reconstruct (YYYY-MM-DD)"),
    until: Optional[str] = typer.Option(None, "--until", help="Last day to reconstruct (YYYY-MM-DD)"),
    as_json: bool = typer.Option(False, "--json", help="Print the result as JSON"),
):
    """
    Backfill missing usage from session transcripts.

    Only fields that are still empty are filled; recorded values are
    never overwritten. Running it twice changes nothing the second time.
    """
    _reconstruction_command(ctx, local, remote, since, until, as_json, dry_run=False)


@app.command()
def preview(
    ctx: typer.Context,
    local: bool = typer.Option(True, "--local/--no-local", help="Read transcripts on this machine"),
    remote: bool = typer.Option(False, "--remote", "-r", help="Read transcripts on configured remote hosts"),
    since: Optional[str] = typer.Option(None, "--since", help="First day to reconstruct (YYYY-MM-DD)"),
    until: Optional[str] = typer.Option(None, "--until", help="Last day to reconstruct (YYYY-MM-DD)"),
    as_json: bool = typer.Option(False, "--json", help="Print the result as JSON"),
):
    """Show what reconstruct would change, without writing anything."""
    _reconstruction_command(ctx, local, remote, since, until, as_json, dry_run=True)


@app.command()
def stats(
    ctx: typer.Context,
    since: Optional[str] = typer.Option(None, "--since", help="First day (YYYY-MM-DD)"),
    until: Optional[str] = typer.Option(None, "--until", help="Last day (YYYY-MM-DD)"),
):
    """Show recorded usage and costs by model."""
    state = _state(ctx)
    date_range = _date_range(since, until)
    time_range = date_range.to_epoch_bounds() if date_range else (None, None)
    initialize_schema(state.db_path)
    aggregate = get_repository(state.db_path).aggregate(time_range)

    if aggregate.totals.event_count == 0:
        console.print("\n[bold yellow]No usage recorded for this period[/]")
        console.print("\nRun `usage-reconciler reconstruct` to backfill usage from transcripts.\n")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="Usage by model")
    table.add_column("Model")
    table.add_column("Events", justify="right")
    table.add_column("Tokens", justify="right")
    table.add_column("API cost", justify="right")
    table.add_column("Billed", justify="right")
    table.add_column("Savings", justify="right")
    rows = sorted(aggregate.by_model.items(), key=lambda item: item[1].anthropic_cost_usd, reverse=True)
    for model, totals in rows + [("Total", aggregate.totals)]:
        table.add_row(
            str(model),
            f"{totals.event_count:,}",
            f"{totals.usage.total_tokens:,}",
            _format_currency(totals.anthropic_cost_usd),
            _format_currency(totals.maestro_cost_usd),
            _format_currency(totals.anthropic_cost_usd - totals.maestro_cost_usd),
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


def _audit_service(state: _State, local: bool = True, remotes: Optional[List[str]] = None) -> AuditService:
    initialize_schema(state.db_path)
    providers = [CcusageProvider()] if local else []
    for remote_id in remotes or []:
        providers.append(CcusageProvider(target=state.config.get_remote(remote_id).target))
    return AuditService(get_repository(state.db_path), AuditStore(state.db_path), providers)


def _scheduler(state: _State) -> AuditScheduler:
    service = _audit_service(state)
    return AuditScheduler(service, service.audit_store)


def _display_audit(result) -> None:
    console.print(f"\n[bold]Audit {result.period.start} .. {result.period.end}[/bold] ({result.status})")
    console.print("-" * 40)
    tokens = result.tokens
    console.print(f"Reported tokens: {tokens.anthropic.total_tokens:,}")
    console.print(f"Recorded tokens: {tokens.maestro.total_tokens:,}")
    console.print(f"Token match: {tokens.match_percent:.2f}%")
    console.print(f"Reported cost: {_format_currency(result.costs.anthropic_total)}")
    console.print(f"Recorded API cost: {_format_currency(result.costs.maestro_anthropic)}")
    console.print(f"Billed cost: {_format_currency(result.costs.maestro_calculated)}")
    console.print(f"Savings: {_format_currency(result.costs.savings)}")

    if result.entries:
        table = Table(title="Entries")
        table.add_column("Date")
        table.add_column("Model")
        table.add_column("Reported", justify="right")
        table.add_column("Recorded", justify="right")
        table.add_column("Diff", justify="right")
        table.add_column("Status")
        for entry in result.entries:
            table.add_row(
                entry.date,
                entry.model,
                f"{entry.anthropic_tokens.total_tokens:,}",
                f"{entry.maestro_tokens.total_tokens:,}",
                f"{entry.discrepancy_percent:.1f}%",
                entry.status.value,
            )
        console.print(table)

    for anomaly in result.anomalies:
        color = {"error": "red", "warning": "yellow"}.get(anomaly.severity.value, "dim")
        console.print(f"[{color}]{anomaly.severity.value.upper()}[/] {anomaly.kind.value}: {anomaly.description}")
    for error in result.errors:
        console.print(f"[red]Provider error[/] {error.file}: {error.error}")


@audit_app.command("run")
def audit_run(
    ctx: typer.Context,
    since: str = typer.Option(..., "--since", help="First day (YYYY-MM-DD)"),
    until: Optional[str] = typer.Option(None, "--until", help="Last day (YYYY-MM-DD), defaults to --since"),
    local: bool = typer.Option(True, "--local/--no-local", help="Query ccusage on this machine"),
    remote: Optional[List[str]] = typer.Option(None, "--remote", "-r", help="Also query ccusage on a configured remote"),
    as_json: bool = typer.Option(False, "--json", help="Print the result as JSON"),
):
    """Run a manual audit for a date range."""
    state = _state(ctx)
    date_range = _date_range(since, until)
    try:
        service = _audit_service(state, local=local, remotes=remote)
        result = service.run_audit(date_range.start, date_range.end, "manual")
    except ValueError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    if as_json:
        console.print_json(json.dumps(result.to_dict()))
    else:
        _display_audit(result)
    sys.exit(EXIT_CODE_FAIL if result.status == STATUS_FAILED else EXIT_CODE_PASS)


def _display_snapshots(snapshots) -> None:
    if not snapshots:
        console.print("\n[dim]No audits recorded.[/]")
        return
    table = Table(title="Audit history")
    table.add_column("Id", justify="right")
    table.add_column("Run at")
    table.add_column("Type")
    table.add_column("Period")
    table.add_column("Match", justify="right")
    table.add_column("Anomalies", justify="right")
    table.add_column("Status")
    for snapshot in snapshots:
        table.add_row(
            str(snapshot.id),
            _format_ms(snapshot.created_at),
            snapshot.audit_type,
            f"{snapshot.period_start} .. {snapshot.period_end}",
            f"{snapshot.token_match_percent:.2f}%",
            str(snapshot.anomaly_count),
            snapshot.status,
        )
    console.print(table)


@audit_app.command("history")
def audit_history(
    ctx: typer.Context,
    limit: int = typer.Option(10, "--limit", "-n", min=1, help="Number of audits to show"),
):
    """Show the most recent audits."""
    _display_snapshots(_audit_service(_state(ctx)).get_audit_history(limit))


@audit_app.command("snapshots")
def audit_snapshots(
    ctx: typer.Context,
    since: str = typer.Option(..., "--since", help="First day (YYYY-MM-DD)"),
    until: str = typer.Option(..., "--until", help="Last day (YYYY-MM-DD)"),
):
    """Show audits whose period lies inside a date range."""
    date_range = _date_range(since, until)
    _display_snapshots(_audit_service(_state(ctx)).get_snapshots_by_range(date_range.start, date_range.end))


@audit_app.command("status")
def audit_status(ctx: typer.Context):
    """Show the audit schedule and the last run of each audit type."""
    scheduler = _scheduler(_state(ctx))
    config = scheduler.get_config()
    console.print(f"Daily: {'on' if config.daily_enabled else 'off'} at {config.daily_time}")
    console.print(f"Weekly: {'on' if config.weekly_enabled else 'off'} on {WEEKDAYS[config.weekly_day]}")
    console.print(f"Monthly: {'on' if config.monthly_enabled else 'off'}")

    status = scheduler.get_schedule_status()
    if not status:
        return
    table = Table(title="Schedules")
    table.add_column("Type")
    table.add_column("Enabled")
    table.add_column("Last run")
    table.add_column("Last status")
    table.add_column("Next run")
    for name, row in status.items():
        table.add_row(
            name,
            "yes" if row["enabled"] else "no",
            _format_ms(row["lastRunAt"]),
            row["lastRunStatus"] or "-",
            _format_ms(row["nextRunAt"]),
        )
    console.print(table)


@audit_app.command("configure")
def audit_configure(
    ctx: typer.Context,
    daily: Optional[bool] = typer.Option(None, "--daily/--no-daily", help="Run an audit every day"),
    daily_time: Optional[str] = typer.Option(None, "--daily-time", help="Time of the daily audit (HH:MM)"),
    weekly: Optional[bool] = typer.Option(None, "--weekly/--no-weekly", help="Run an audit every week"),
    weekly_day: Optional[int] = typer.Option(None, "--weekly-day", help="Day of the weekly audit, 0 = Sunday"),
    monthly: Optional[bool] = typer.Option(None, "--monthly/--no-monthly", help="Run an audit every month"),
):
    """Change which audits run automatically."""
    scheduler = _scheduler(_state(ctx))
    current = scheduler.get_config()
    changes = {
        "daily_enabled": daily,
        "daily_time": daily_time,
        "weekly_enabled": weekly,
        "weekly_day": weekly_day,
        "monthly_enabled": monthly,
    }
    try:
        config = replace(current, **{k: v for k, v in changes.items() if v is not None})
    except ValueError as e:
        console.print(f"[red]Invalid schedule:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    armed = scheduler.save_config(config)
    scheduler.clear_scheduled_timers()
    for name, next_run in armed.items():
        console.print(f"{name}: " + (f"next run {next_run:%Y-%m-%d %H:%M}" if next_run else "disabled"))
    console.print("[green]✓[/] Audit schedule saved")


@audit_app.command("correct")
def audit_correct(
    ctx: typer.Context,
    event_ids: List[int] = typer.Argument(..., help="Ids of the events to mark as corrected"),
):
    """Mark events as reviewed after an audit. Stored values are not changed."""
    result = _audit_service(_state(ctx)).auto_correct(event_ids)
    console.print(f"[green]✓[/] Marked {result.corrected} of {result.total} events as corrected")
    sys.exit(EXIT_CODE_PASS if result.corrected == result.total else EXIT_CODE_FAIL)


@audit_app.command("serve")
def audit_serve(ctx: typer.Context):
    """Run scheduled audits until interrupted."""
    scheduler = _scheduler(_state(ctx))
    for name, next_run in scheduler.start().items():
        if next_run:
            console.print(f"{name} audit scheduled for {next_run:%Y-%m-%d %H:%M}")
    console.print("Audit scheduler running, press Ctrl+C to stop")
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        console.print("\nStopping audit scheduler")
    finally:
        scheduler.shutdown()


if __name__ == "__main__":
    app()
