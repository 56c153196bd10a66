"""
CLI interface for Token Audit.

Provides command-line access to the collector: long-running collection,
single collection cycles, usage summaries and archives.
"""

import logging
import sys
from datetime import date, datetime, timezone
from typing import Optional

import typer
import yaml
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from token_audit.config.loader import CollectorConfig, load_collector_config
from token_audit.core.aggregator import daily_key
from token_audit.core.archiver import Archiver
from token_audit.core.logs import configure_logging
from token_audit.core.service import CollectorService
from token_audit.storage.models import CollectionState, TokenBucket
from token_audit.storage.store import JsonStore

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

ConfigOption = typer.Option(None, "--config", "-c", help="Path to YAML configuration file")
DataDirOption = typer.Option(None, "--data-dir", "-d", help="Directory for latest.json and archives")
GatewayOption = typer.Option(None, "--gateway-url", "-g", help="Inference gateway base URL")
VerboseOption = typer.Option(False, "--verbose", "-v", help="Enable debug logging")


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context):
    """Token Audit collector CLI."""
    load_dotenv()
    if ctx.invoked_subcommand is None:
        console.print("Token Audit - Use --help to see available commands")


def _load_config(
    config_path: Optional[str],
    data_dir: Optional[str],
    gateway_url: Optional[str] = None
) -> CollectorConfig:
    """Load configuration or exit with a readable error."""
    try:
        return load_collector_config(
            config_path,
            overrides={"data_dir": data_dir, "gateway_url": gateway_url},
        )
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Configuration error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


def _setup_logging(config: CollectorConfig, verbose: bool, console_output: bool = True) -> None:
    configure_logging(
        config.paths.log_file,
        level=logging.DEBUG if verbose else logging.INFO,
        console=console_output,
    )


def _bucket_row(table: Table, label: str, bucket: TokenBucket) -> None:
    table.add_row(
        label,
        f"{bucket.tokens_in:,}",
        f"{bucket.tokens_out:,}",
        f"{bucket.context_tokens:,}",
        f"{bucket.total_tokens:,}",
    )


def _usage_table(title: str) -> Table:
    table = Table(title=title)
    table.add_column("Period")
    table.add_column("Tokens In", justify="right")
    table.add_column("Tokens Out", justify="right")
    table.add_column("Context", justify="right")
    table.add_column("Total", justify="right")
    return table


def _display_state(state: CollectionState) -> None:
    """Display totals, today's usage and agent/channel counts."""
    today = daily_key(datetime.now(timezone.utc))

    table = _usage_table("Token Usage")
    _bucket_row(table, "Total", state.total)
    _bucket_row(table, f"Today ({today})", state.daily.get(today, TokenBucket()))
    console.print(table)

    console.print(f"Sessions: {len(state.sessions)}")
    for label, counters in (("Agents", state.agents), ("Channels", state.channels)):
        if counters:
            joined = ", ".join(f"{name}={count}" for name, count in sorted(counters.items()))
            console.print(f"{label}: {joined}")
        else:
            console.print(f"{label}: [dim]none[/]")


@app.command()
def run(
    config_path: Optional[str] = ConfigOption,
    data_dir: Optional[str] = DataDirOption,
    gateway_url: Optional[str] = GatewayOption,
    verbose: bool = VerboseOption
):
    """Run the collector until interrupted (SIGINT/SIGTERM)."""
    config = _load_config(config_path, data_dir, gateway_url)
    _setup_logging(config, verbose)
    service = CollectorService(config)
    sys.exit(service.run_forever())


@app.command()
def collect(
    config_path: Optional[str] = ConfigOption,
    data_dir: Optional[str] = DataDirOption,
    gateway_url: Optional[str] = GatewayOption,
    verbose: bool = VerboseOption
):
    """Run a single collection cycle and persist the result."""
    config = _load_config(config_path, data_dir, gateway_url)
    _setup_logging(config, verbose, console_output=verbose)

    service = CollectorService(config)
    service.load()
    record = service.run_cycle()

    if record is None:
        console.print("[yellow]No new metrics collected this cycle[/]")
    else:
        console.print(
            f"[green]✓[/] Collected {record.tokens_in:,} in, {record.tokens_out:,} out, "
            f"{record.context_tokens:,} context from session {record.session.id}"
        )
    _display_state(service.state)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def summary(
    config_path: Optional[str] = ConfigOption,
    data_dir: Optional[str] = DataDirOption
):
    """Show usage totals from latest.json."""
    config = _load_config(config_path, data_dir)
    state = JsonStore(config.paths.data_dir).load()
    if not state.sessions and state.total.total_tokens == 0:
        console.print("\n[bold yellow]No token usage data found[/]")
        console.print("Run `token-audit collect` or `token-audit run` to start collecting.\n")
        sys.exit(EXIT_CODE_PASS)
    _display_state(state)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def history(
    days: int = typer.Option(7, "--days", "-n", help="Number of archived days to show"),
    config_path: Optional[str] = ConfigOption,
    data_dir: Optional[str] = DataDirOption
):
    """Show archived daily usage."""
    config = _load_config(config_path, data_dir)
    records = Archiver(config.paths.archive_dir).load_history(days)
    if not records:
        console.print("[dim]No archived days found.[/]")
        sys.exit(EXIT_CODE_PASS)

    table = _usage_table(f"Archived Usage (last {len(records)} days)")
    for record in records:
        _bucket_row(table, record.date, record.token_usage)
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def archive(
    on_date: Optional[str] = typer.Option(
        None,
        "--date",
        help="Archive the day before this date (YYYY-MM-DD, default today)"
    ),
    config_path: Optional[str] = ConfigOption,
    data_dir: Optional[str] = DataDirOption
):
    """Write the archive record for the previous day."""
    config = _load_config(config_path, data_dir)
    try:
        today = date.fromisoformat(on_date) if on_date else datetime.now(timezone.utc).date()
    except ValueError:
        console.print(f"[red]Invalid date:[/] {on_date}")
        sys.exit(EXIT_CODE_FAIL)

    state = JsonStore(config.paths.data_dir).load()
    try:
        record = Archiver(config.paths.archive_dir).archive_day(today, state)
    except OSError as e:
        console.print(f"[red]Error writing archive:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(
        f"[green]✓[/] Archived {record.date}: {record.token_usage.total_tokens:,} tokens"
    )
    sys.exit(EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
