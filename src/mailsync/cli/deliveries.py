"""CLI commands for webhook delivery logs."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from ..configuration.cli import load_runtime_settings
from ..configuration.settings import DEFAULT_CONFIG_PATH
from ..storage.store import SqliteMailStore
from ..sync.models import DeliveryStatus


console = Console()

deliveries_app = typer.Typer(help="Inspect outbound webhook deliveries")

_STATUS_STYLES = {
    DeliveryStatus.SUCCESS: "green",
    DeliveryStatus.FAILED: "yellow",
    DeliveryStatus.ERROR: "red",
}


@deliveries_app.command("list")
def list_deliveries(
    message_id: Optional[int] = typer.Option(None, "--message", "-m", help="Filter by message id"),
    limit: int = typer.Option(50, "--limit", "-n", min=1, help="Maximum rows"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
    config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config", help="Path to config file"),
) -> None:
    """List webhook delivery attempts, newest first."""
    settings = load_runtime_settings(config_path)
    store = SqliteMailStore(settings.storage.db_path)
    try:
        attempts = store.list_delivery_attempts(message_id)
    finally:
        store.close()
    attempts = sorted(attempts, key=lambda a: (a.attempted_at, a.id or 0), reverse=True)[:limit]

    if json_output:
        print(json.dumps([attempt.model_dump(mode="json") for attempt in attempts]))
        return

    if not attempts:
        console.print("[yellow]No delivery attempts recorded.[/yellow]")
        return

    table = Table(title="Webhook deliveries")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Message", style="cyan")
    table.add_column("Target")
    table.add_column("Status")
    table.add_column("Code", justify="right")
    table.add_column("Attempted", style="blue")
    for attempt in attempts:
        style = _STATUS_STYLES.get(attempt.status, "white")
        table.add_row(
            str(attempt.id),
            str(attempt.message_id) if attempt.message_id is not None else "-",
            attempt.target,
            f"[{style}]{attempt.status.value}[/{style}]",
            str(attempt.response_code) if attempt.response_code is not None else "-",
            attempt.attempted_at.strftime("%Y-%m-%d %H:%M:%S"),
        )
    console.print(table)
