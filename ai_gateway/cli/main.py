"""
CLI interface for AI Gateway.

Operator commands for the durable store: schema setup, trials, usage
reports, the trial sweep and the audit log.
"""

import logging
import sqlite3
import sys
import time
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from ai_gateway.config.loader import GatewayConfig, load_gateway_config
from ai_gateway.core.audit import RequestAuditLog
from ai_gateway.core.clock import SystemClock
from ai_gateway.core.errors import GatewayError
from ai_gateway.core.scheduler import TrialExpirationTask, build_scheduler
from ai_gateway.core.subscription import SubscriptionLifecycle, get_plan_features
from ai_gateway.logging_config import configure_logging
from ai_gateway.storage.models import UsageAction
from ai_gateway.storage.repository import initialize_schema, insert_user, seed_plans

app = typer.Typer()
console = Console()

EXIT_CODE_OK = 0
EXIT_CODE_FAIL = 1


class _State:
    config: GatewayConfig = GatewayConfig.default()


state = _State()


def _lifecycle() -> SubscriptionLifecycle:
    return SubscriptionLifecycle(
        state.config.storage.db_path,
        clock=SystemClock(),
        trial_duration_days=state.config.trial.duration_days
    )


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config_path: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to gateway YAML configuration"
    ),
    db_path: Optional[str] = typer.Option(
        None,
        "--db",
        help="Override the SQLite database path"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging")
):
    """AI Gateway CLI."""
    configure_logging(logging.DEBUG if verbose else logging.WARNING)
    try:
        config = load_gateway_config(config_path)
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]Error loading configuration:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    if db_path:
        config = config.with_db_path(db_path)
    state.config = config

    if ctx.invoked_subcommand is None:
        console.print("AI Gateway - Use --help to see available commands")


@app.command()
def init():
    """Create the database schema and seed the plan catalog."""
    try:
        initialize_schema(state.config.storage.db_path)
        inserted = seed_plans(state.config.plans, state.config.storage.db_path)
        console.print("[green]✓[/] Database initialized successfully")
        console.print(f"Seeded {inserted} plan(s)")
        sys.exit(EXIT_CODE_OK)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command("start-trial")
def start_trial(user_id: str = typer.Argument(..., help="User to start a trial for")):
    """Register a user if needed and start a trial subscription."""
    try:
        insert_user(user_id, SystemClock().now(), state.config.storage.db_path)
        subscription = _lifecycle().create_trial_subscription(user_id)
    except (GatewayError, sqlite3.Error) as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(
        f"[green]✓[/] {user_id}: {subscription.status.value} "
        f"({subscription.plan.type.value})"
    )
    if subscription.trial_ends_at:
        console.print(f"Trial ends at {subscription.trial_ends_at.isoformat()}")
    sys.exit(EXIT_CODE_OK)


@app.command()
def subscription(user_id: str = typer.Argument(..., help="User to show")):
    """Show a user's subscription and plan features."""
    try:
        sub = _lifecycle().get_subscription(user_id)
    except GatewayError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"\n[bold]Subscription for {user_id}[/bold]")
    console.print("-" * 40)
    console.print(f"Status: {sub.status.value}")
    console.print(f"Plan: {sub.plan.type.value}")
    console.print(f"Period start: {sub.current_period_start.isoformat()}")
    console.print(f"Period end: {_format_optional(sub.current_period_end)}")
    console.print(f"Trial ends: {_format_optional(sub.trial_ends_at)}")

    table = Table(title="Features")
    table.add_column("Feature")
    table.add_column("Enabled")
    features = get_plan_features(sub.plan.type)
    for name, enabled in vars(features).items():
        table.add_row(name, "[green]yes[/]" if enabled else "[dim]no[/]")
    console.print(table)
    sys.exit(EXIT_CODE_OK)


@app.command()
def usage(user_id: str = typer.Argument(..., help="User to report on")):
    """Show today's usage against the user's daily limits."""
    try:
        summary = _lifecycle().get_usage_summary(user_id)
    except GatewayError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title=f"Usage today for {user_id}")
    table.add_column("Action")
    table.add_column("Used", justify="right")
    table.add_column("Limit", justify="right")
    for item in summary:
        limit = "unlimited" if item.limit == 0 else str(item.limit)
        table.add_row(item.action.value, str(item.current), limit)
    console.print(table)
    sys.exit(EXIT_CODE_OK)


@app.command("sweep-trials")
def sweep_trials():
    """Demote expired trials to the free plan once."""
    try:
        count = TrialExpirationTask(_lifecycle()).run_once()
    except GatewayError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Downgraded {count} expired trial(s)")
    sys.exit(EXIT_CODE_OK)


@app.command()
def schedule(
    interval: Optional[int] = typer.Option(
        None,
        "--interval",
        "-i",
        help="Seconds between sweeps (defaults to configuration)"
    )
):
    """Run the trial sweep on a fixed interval until interrupted."""
    seconds = interval or state.config.scheduler.sweep_interval_seconds
    task = TrialExpirationTask(_lifecycle())
    try:
        scheduler = build_scheduler(task, seconds)
    except ValueError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    scheduler.start()
    console.print(f"Sweeping expired trials every {seconds}s. Press Ctrl+C to stop.")
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        scheduler.shutdown(wait=False)
    sys.exit(EXIT_CODE_OK)


@app.command()
def audit(
    user_id: Optional[str] = typer.Option(None, "--user", "-u", help="Filter by user"),
    action: Optional[str] = typer.Option(None, "--action", "-a", help="Filter by action"),
    limit: int = typer.Option(20, "--limit", "-n", help="Number of entries")
):
    """Show recent entries of the request audit log."""
    try:
        action_filter = UsageAction(action) if action else None
    except ValueError:
        valid_actions = [a.value for a in UsageAction]
        console.print(f"[red]Error:[/] action must be one of: {valid_actions}")
        sys.exit(EXIT_CODE_FAIL)

    try:
        entries = RequestAuditLog(state.config.storage.db_path).recent(user_id, action_filter, limit)
    except sqlite3.Error as e:
        console.print(f"[red]Error:[/] {e}")
        console.print("Run 'ai-gateway init' to create the database")
        sys.exit(EXIT_CODE_FAIL)

    if not entries:
        console.print("\n[bold yellow]No AI requests recorded yet[/]\n")
        sys.exit(EXIT_CODE_OK)

    table = Table(title="Recent AI requests")
    table.add_column("Time")
    table.add_column("User")
    table.add_column("Action")
    table.add_column("Result")
    table.add_column("Cache")
    table.add_column("ms", justify="right")
    table.add_column("Tokens", justify="right")
    for entry in entries:
        table.add_row(
            entry.created_at.strftime("%Y-%m-%d %H:%M:%S") if entry.created_at else "-",
            entry.user_id,
            entry.action.value,
            "[green]ok[/]" if entry.success else f"[red]{entry.error_message or 'failed'}[/]",
            "hit" if entry.cache_hit else "-",
            str(entry.duration_ms),
            str(entry.total_tokens) if entry.total_tokens is not None else "-"
        )
    console.print(table)
    sys.exit(EXIT_CODE_OK)


def _format_optional(value) -> str:
    return value.isoformat() if value is not None else "-"


if __name__ == "__main__":
    app()
