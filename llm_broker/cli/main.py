"""
CLI interface for LLM Broker.

Operator commands for inspecting configuration, usage and replay logs,
and for sending one-off requests through the broker.
"""

import json
import logging
import sqlite3
import sys
from datetime import datetime
from typing import Optional

import typer
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from llm_broker.config.loader import BrokerConfig, load_broker_config
from llm_broker.core.errors import BrokerError
from llm_broker.core.orchestrator import Orchestrator
from llm_broker.core.replay import read_replay_file
from llm_broker.core.types import CallType
from llm_broker.providers.factory import create_provider
from llm_broker.storage.db import DEFAULT_DB_PATH
from llm_broker.storage.repository import UsageRepository, initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to YAML config (default: ./llm_broker.yaml if present)"
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Show debug logging"
    )
):
    """LLM Broker CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )
    ctx.obj = {"config_path": config}
    if ctx.invoked_subcommand is None:
        console.print("LLM Broker - Use --help to see available commands")


def _load_config(ctx: typer.Context) -> BrokerConfig:
    path = (ctx.obj or {}).get("config_path")
    try:
        return load_broker_config(path)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Configuration error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def status(ctx: typer.Context):
    """Show the resolved configuration and provider availability."""
    config = _load_config(ctx)
    provider = create_provider(config)

    table = Table(title="LLM Broker Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value")

    table.add_row("Provider (configured)", config.provider.value)
    table.add_row("Provider (selected)", provider.name)
    table.add_row("Provider available", "yes" if provider.is_available() else "no")
    table.add_row("Remote model", config.remote.model)
    table.add_row("Remote credential", "configured" if config.remote.has_credential else "missing")
    table.add_row("Local endpoint", config.local.endpoint or "-")
    table.add_row("Local model", config.local.model)
    for call_type in CallType:
        table.add_row(
            f"{call_type.value.capitalize()} timeout / TTL / temperature",
            f"{config.timeouts.for_call(call_type):g}s / "
            f"{config.cache.ttl.for_call(call_type):g}s / "
            f"{config.temperatures.for_call(call_type):g}"
        )
    table.add_row("Max retries", str(config.retry.max_retries))
    table.add_row("Offline fallback", "enabled" if config.retry.fallback_enabled else "disabled")
    table.add_row("Circuit cooldown", f"{config.circuit.cooldown:g}s")
    per_minute = config.rate_limit.per_minute
    table.add_row("Rate limit", f"{per_minute:g}/min" if per_minute else "off")
    table.add_row("Cache", f"{'enabled' if config.cache.enabled else 'disabled'} (capacity {config.cache.capacity})")
    replay = f"{config.replay.mode.value} {config.replay.path or ''}".strip()
    table.add_row("Replay", replay + (" (strict)" if config.replay.strict else ""))
    table.add_row("Budget", _format_currency(config.budget.limit_usd) if config.budget.limit_usd else "none")
    table.add_row("Usage ledger", config.ledger_db_path or "in-memory only")
    table.add_row("Drain mode", config.drain_mode.value)
    console.print(table)

    close = getattr(provider, "close", None)
    if close is not None:
        close()
    sys.exit(EXIT_CODE_PASS)


@app.command()
def init(
    ctx: typer.Context,
    db: Optional[str] = typer.Option(None, "--db", help="SQLite ledger path")
):
    """Initialize the usage ledger database."""
    path = db or _load_config(ctx).ledger_db_path or DEFAULT_DB_PATH
    try:
        initialize_schema(path)
        console.print(f"[green]✓[/] Usage ledger initialized at {path}")
        sys.exit(EXIT_CODE_PASS)
    except sqlite3.Error as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def usage(
    ctx: typer.Context,
    days: int = typer.Option(30, "--days", "-d", help="Look-back window in days"),
    hours: Optional[int] = typer.Option(None, "--hours", help="Look-back window in hours (overrides --days)"),
    by: str = typer.Option("call_type", "--by", help="Group by call_type, model or provider"),
    export: Optional[str] = typer.Option(None, "--export", help="Also write the report as JSON to this path"),
    db: Optional[str] = typer.Option(None, "--db", help="SQLite ledger path")
):
    """Report usage and cost from the ledger."""
    config = _load_config(ctx)
    path = db or config.ledger_db_path or DEFAULT_DB_PATH
    window = f"{hours} hours" if hours is not None else f"{days} days"
    try:
        stats = UsageRepository(path).get_usage_stats(days=days, group_by=by, hours=hours)
    except ValueError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    except sqlite3.OperationalError as e:
        if "no such table" in str(e).lower():
            console.print("\n[bold yellow]No usage ledger found[/]")
            console.print("Run `llm-broker init` and set ledger.db_path in your config.\n")
            sys.exit(EXIT_CODE_PASS)
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not stats:
        console.print(f"\n[dim]No usage recorded in the last {window}.[/]\n")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title=f"Usage by {by.replace('_', ' ')} (last {window})")
    table.add_column(by.replace("_", " ").capitalize(), style="cyan")
    table.add_column("Requests", justify="right")
    table.add_column("Input tokens", justify="right")
    table.add_column("Completion tokens", justify="right")
    table.add_column("Cost", justify="right")

    total = 0.0
    for key, row in stats.items():
        total += row["cost_usd"]
        table.add_row(
            key,
            str(row["requests"]),
            f"{row['input_tokens']:,}",
            f"{row['completion_tokens']:,}",
            _format_currency(row["cost_usd"])
        )
    console.print(table)
    console.print(f"[bold]Total cost:[/bold] {_format_currency(total)}")

    limit = config.budget.limit_usd
    if limit:
        console.print(f"[bold]Budget remaining:[/bold] {_format_currency(max(limit - total, 0.0))} of {_format_currency(limit)}")

    if export:
        report = {
            "generated_at": datetime.now().isoformat(),
            "window": window,
            "group_by": by,
            "groups": stats,
            "total_cost_usd": total,
            "budget_limit_usd": limit,
        }
        try:
            with open(export, "w", encoding="utf-8") as f:
                json.dump(report, f, indent=2)
        except OSError as e:
            console.print(f"[red]Error writing report:[/] {str(e)}")
            sys.exit(EXIT_CODE_FAIL)
        console.print(f"[green]✓[/] Report written to {export}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def ask(
    ctx: typer.Context,
    call_type: str = typer.Argument(..., help="decision, narrative or conversation"),
    prompt: str = typer.Argument(..., help="Prompt text")
):
    """Send one request through the broker and print the response."""
    try:
        kind = CallType.parse(call_type)
    except ValueError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    config = _load_config(ctx)
    try:
        with Orchestrator(config) as broker:
            handle = broker.submit(kind, prompt)
            broker.pump()
            response = handle.result()
    except BrokerError as e:
        console.print(f"[red]Error ({e.kind.value}):[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not response.success:
        console.print(f"[red]Request failed ({response.error_kind.value}):[/] {response.error}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(response.content, markup=False)
    console.print(
        f"\n[dim]source={response.source.value} attempts={response.attempts} "
        f"tokens={response.input_tokens}+{response.completion_tokens} "
        f"cost={_format_currency(response.cost_usd, 6)} "
        f"duration={response.duration_ms}ms"
        f"{' fallback' if response.fallback else ''}[/]"
    )
    sys.exit(EXIT_CODE_PASS)


@app.command("replay-show")
def replay_show(
    path: str = typer.Argument(..., help="Replay log (JSON Lines)"),
    limit: int = typer.Option(50, "--limit", "-n", help="Maximum entries to show")
):
    """List the entries of a replay log."""
    try:
        entries = read_replay_file(path)
    except (OSError, ValueError) as e:
        console.print(f"[red]Error reading replay log:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title=f"Replay log {path} ({len(entries)} entries)")
    table.add_column("Tick", justify="right")
    table.add_column("Call type", style="cyan")
    table.add_column("#", justify="right")
    table.add_column("Prompt hash")
    table.add_column("Source")
    table.add_column("Result")

    for entry in entries[:limit]:
        response = entry.response
        result = _truncate(response.content) if response.success else f"[red]{response.error_kind.value}[/]"
        table.add_row(
            str(entry.tick),
            entry.call_type.value,
            str(entry.occurrence),
            entry.prompt_hash[:12],
            response.source.value,
            result
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


def _format_currency(amount: float, places: int = 2) -> str:
    return f"${abs(amount):,.{places}f}"


def _truncate(text: str, width: int = 60) -> str:
    text = " ".join(text.split())
    return text if len(text) <= width else text[:width - 3] + "..."


if __name__ == "__main__":
    app()
