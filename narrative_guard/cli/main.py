"""
CLI interface for narrative-guard.

Operator commands for validating configuration, preparing the cost ledger,
reporting budget usage and recorded spend, and running a one-off generation.
"""

import asyncio
import logging
import os
import sys
from datetime import timedelta
from decimal import Decimal
from typing import Optional

import typer
import yaml
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from narrative_guard.config.loader import load_config, provider_names
from narrative_guard.core.budget import BudgetGovernor
from narrative_guard.core.errors import BudgetExceeded, ProvidersExhausted, ValidationError
from narrative_guard.core.models import GenerationRequest
from narrative_guard.core.router import ProviderRouter
from narrative_guard.core.telemetry import LoggingTelemetryEmitter
from narrative_guard.storage.db import DEFAULT_DB_PATH
from narrative_guard.storage.ledger import LedgerUnavailable, SqliteCostLedger

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

DEFAULT_CONFIG_PATH = "narrative_guard.yaml"

# Written by `init` when no configuration exists yet
STARTER_CONFIG = """\
providers:
  - name: openai
    kind: openai
    model: gpt-4o-mini
    priority: 1
    cost_per_input_token: "0.00000015"
    cost_per_output_token: "0.0000006"
    max_tokens: 200
    timeout_ms: 8000
    api_key_env: OPENAI_API_KEY
  - name: offline
    kind: offline
    model: storyteller
    priority: 99
    cost_per_input_token: "0"
    cost_per_output_token: "0"
    max_tokens: 200
    timeout_ms: 1000

budgets:
  - name: monthly
    scope: global
    limit: "50.00"
    window_days: 30
    hard_stop_fraction: "0.95"
    alert_fractions: ["0.5", "0.8"]
  - name: per-player-daily
    scope: per_user
    limit: "0.50"
    window_hours: 24

quality:
  min_length: 20
  max_length: 500
  reject_emoji: true
  terminal_markers: ["(Y/N)", "(Restart?)"]

circuit_breaker:
  failure_threshold: 3
  failure_window_seconds: 60
  cooldown_seconds: 30
"""

ConfigOption = typer.Option(
    DEFAULT_CONFIG_PATH, "--config", "-c",
    envvar="NARRATIVE_GUARD_CONFIG",
    help="Path to the YAML configuration file"
)
DbOption = typer.Option(
    DEFAULT_DB_PATH, "--db",
    envvar="NARRATIVE_GUARD_DB",
    help="Path to the SQLite cost ledger"
)


def _configure_logging(verbose: bool) -> None:
    level_name = "DEBUG" if verbose else os.getenv("NARRATIVE_GUARD_LOG_LEVEL", "WARNING")
    level = getattr(logging, level_name.upper(), logging.WARNING)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )


def _format_currency(amount) -> str:
    return f"${amount:,.4f}"


def _format_window(window) -> str:
    if window.seconds == 0 and window.microseconds == 0:
        return f"{window.days}d"
    return f"{window.total_seconds() / 3600:g}h"


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging")
):
    """narrative-guard CLI."""
    load_dotenv()
    _configure_logging(verbose)
    if ctx.invoked_subcommand is None:
        console.print("narrative-guard - Use --help to see available commands")


@app.command()
def init(
    config_path: str = ConfigOption,
    db_path: str = DbOption
):
    """Initialize the cost ledger and write a starter configuration if none exists."""
    try:
        SqliteCostLedger(db_path).initialize_schema()
        console.print(f"[green]✓[/] Cost ledger initialized at {db_path}")
        if not os.path.exists(config_path):
            with open(config_path, "w", encoding="utf-8") as f:
                f.write(STARTER_CONFIG)
            console.print(f"[green]✓[/] Starter configuration written to {config_path}")
        sys.exit(EXIT_CODE_PASS)
    except (LedgerUnavailable, OSError) as e:
        console.print(f"[red]Error initializing:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command("check-config")
def check_config(config_path: str = ConfigOption):
    """Validate the configuration and show providers in routing order."""
    try:
        config = load_config(config_path)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Invalid configuration:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title="Providers (routing order)")
    table.add_column("Priority", justify="right")
    table.add_column("Name")
    table.add_column("Kind")
    table.add_column("Model")
    table.add_column("Max tokens", justify="right")
    table.add_column("Timeout (ms)", justify="right")
    table.add_column("API key")
    for provider in config.providers:
        if provider.api_key_env is None:
            key_status = "-"
        elif os.getenv(provider.api_key_env):
            key_status = f"[green]{provider.api_key_env}[/]"
        else:
            key_status = f"[yellow]{provider.api_key_env} (unset)[/]"
        table.add_row(
            str(provider.priority), provider.name, provider.kind, provider.model,
            str(provider.max_tokens), str(provider.timeout_ms), key_status
        )
    console.print(table)
    console.print(f"[green]✓[/] {len(config.providers)} providers, {len(config.budgets)} budget policies")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def budget(
    config_path: str = ConfigOption,
    db_path: str = DbOption,
    user: Optional[str] = typer.Option(
        None, "--user", "-u",
        help="Include per-user policies for this user"
    )
):
    """Show windowed spend against every budget policy."""
    try:
        config = load_config(config_path)
        ledger = SqliteCostLedger(db_path)
        governor = BudgetGovernor(ledger, config.budgets)
        states = governor.budget_states(
            user_id=user,
            provider_names=provider_names(config)
        )
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Invalid configuration:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    except LedgerUnavailable as e:
        console.print(f"[red]Cost ledger unavailable:[/] {str(e)}")
        console.print("Run `narrative-guard init` to create it.")
        sys.exit(EXIT_CODE_FAIL)

    if not states:
        console.print("[dim]No budget policies apply.[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="Budget usage")
    table.add_column("Policy")
    table.add_column("Scope")
    table.add_column("Window")
    table.add_column("Spent", justify="right")
    table.add_column("Hard stop", justify="right")
    table.add_column("Used", justify="right")
    over_limit = False
    for state in states:
        used = state.fraction_used * 100
        if state.amount_used >= state.policy.hard_stop_amount:
            over_limit = True
            used_cell = f"[red]{used:.1f}%[/]"
        elif state.policy.alert_fractions and state.fraction_used >= state.policy.alert_fractions[0]:
            used_cell = f"[yellow]{used:.1f}%[/]"
        else:
            used_cell = f"{used:.1f}%"
        table.add_row(
            state.policy.name, str(state.scope), _format_window(state.policy.window),
            _format_currency(state.amount_used),
            _format_currency(state.policy.hard_stop_amount),
            used_cell
        )
    console.print(table)
    sys.exit(EXIT_CODE_FAIL if over_limit else EXIT_CODE_PASS)


@app.command()
def status(
    db_path: str = DbOption,
    days: int = typer.Option(30, "--days", "-d", min=1, help="Days of spend to summarize"),
    user: Optional[str] = typer.Option(None, "--user", "-u", help="Only list this user's records"),
    limit: int = typer.Option(10, "--limit", "-n", min=0, help="Recent records to list")
):
    """Summarize recorded spend per provider and list the latest records."""
    ledger = SqliteCostLedger(db_path)
    try:
        stats = ledger.get_usage_stats(timedelta(days=days))
        recent = ledger.fetch_recent_records(user_id=user, limit=limit) if limit else []
    except LedgerUnavailable as e:
        console.print(f"[red]Cost ledger unavailable:[/] {str(e)}")
        console.print("Run `narrative-guard init` to create it.")
        sys.exit(EXIT_CODE_FAIL)

    if not stats:
        console.print(f"[dim]No spend recorded in the last {days} days.[/]")
    else:
        table = Table(title=f"Usage by provider (last {days} days)")
        table.add_column("Provider")
        table.add_column("Requests", justify="right")
        table.add_column("Tokens in", justify="right")
        table.add_column("Tokens out", justify="right")
        table.add_column("Cost", justify="right")
        for name, entry in sorted(stats.items(), key=lambda item: item[1]["total_cost"], reverse=True):
            table.add_row(
                name, str(entry["total_requests"]), f"{entry['tokens_in']:,}",
                f"{entry['tokens_out']:,}", _format_currency(entry["total_cost"])
            )
        console.print(table)
        total = sum((entry["total_cost"] for entry in stats.values()), Decimal(0))
        console.print(f"Total: {_format_currency(total)}")

    if recent:
        table = Table(title="Recent records")
        table.add_column("Time (UTC)")
        table.add_column("Provider")
        table.add_column("User")
        table.add_column("Tokens", justify="right")
        table.add_column("Cost", justify="right")
        for record in recent:
            table.add_row(
                record.timestamp.strftime("%Y-%m-%d %H:%M:%S"), record.provider_name,
                record.user_id, f"{record.tokens_in}/{record.tokens_out}",
                _format_currency(record.cost_amount)
            )
        console.print(table)
    sys.exit(EXIT_CODE_PASS)


def _print_provider_health(router: ProviderRouter) -> None:
    table = Table(title="Provider circuits")
    table.add_column("Provider")
    table.add_column("State")
    table.add_column("Recent failures", justify="right")
    table.add_column("Last error")
    for name, health in router.provider_health().items():
        state = health["state"]
        colour = "green" if state == "closed" else "red"
        table.add_row(name, f"[{colour}]{state}[/]", str(health["recent_failures"]), health["reason"] or "-")
    console.print(table)


@app.command()
def generate(
    prompt: str = typer.Argument(..., help="Player input or scene prompt"),
    user: str = typer.Option("cli", "--user", "-u", help="User the spend is attributed to"),
    config_path: str = ConfigOption,
    db_path: str = DbOption
):
    """Generate one narrative beat through the configured providers."""
    try:
        config = load_config(config_path)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Invalid configuration:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    ledger = SqliteCostLedger(db_path)
    try:
        ledger.initialize_schema()
    except LedgerUnavailable as e:
        console.print(f"[red]Cost ledger unavailable:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    router = ProviderRouter.from_config(config, ledger, LoggingTelemetryEmitter())
    try:
        result = asyncio.run(router.generate_narrative(GenerationRequest(prompt=prompt, user_id=user)))
    except ValidationError as e:
        console.print(f"[red]Invalid request:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    except BudgetExceeded as e:
        console.print(f"[red]Budget limit reached:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    except ProvidersExhausted as e:
        console.print("[red]All storytellers are busy.[/]")
        for attempt in e.attempts:
            console.print(f"  {attempt.provider_name or '-'}: {attempt.status}")
        _print_provider_health(router)
        sys.exit(EXIT_CODE_FAIL)

    console.print(result.text)
    console.print(
        f"\n[dim]{result.provider_name} | attempts: {len(result.attempts)} | "
        f"tokens: {result.content.tokens_in}/{result.content.tokens_out} | "
        f"cost: {_format_currency(result.cost_amount)}[/]"
    )
    sys.exit(EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
