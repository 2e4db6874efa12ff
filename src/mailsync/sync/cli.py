"""CLI commands that run the sync engine."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from ..configuration.cli import load_runtime_settings
from ..configuration.settings import DEFAULT_CONFIG_PATH
from ..errors import AccountNotFoundError, SessionActiveError
from .engine import build_connection_manager, run_engine


console = Console()
error_console = Console(stderr=True)

sync_app = typer.Typer(help="Mailbox synchronization commands")


@sync_app.command("run")
def run_sync(
    config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config", help="Path to config file"),
) -> None:
    """Sync every enabled account until interrupted (Ctrl+C)."""
    settings = load_runtime_settings(config_path)
    manager = build_connection_manager(settings)
    console.print("[bold blue]Starting mailbox sync[/bold blue] (Ctrl+C to stop)")
    try:
        asyncio.run(
            run_engine(manager, reconcile_interval=settings.sync.reconcile_interval_seconds)
        )
    except KeyboardInterrupt:
        pass
    finally:
        manager.store.close()
    console.print("Sync stopped")


@sync_app.command("once")
def sync_once(
    account_id: str = typer.Option(..., "--account", "-a", help="Account id"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
    config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config", help="Path to config file"),
) -> None:
    """Run one backfill pass for an account and exit."""
    settings = load_runtime_settings(config_path)
    manager = build_connection_manager(settings)
    try:
        session = asyncio.run(manager.sync_once(account_id))
    except (AccountNotFoundError, SessionActiveError) as exc:
        error_console.print(f"Error: {exc}")
        raise typer.Exit(1) from exc
    finally:
        manager.store.close()

    report = session.last_scan
    errored = session.errored

    if json_output:
        print(
            json.dumps(
                {
                    "account_id": account_id,
                    "success": report is not None and not errored,
                    "error": str(session.last_error) if session.last_error else None,
                    "matched": report.matched if report else 0,
                    "ingested": report.ingested if report else 0,
                    "duplicates": report.duplicates if report else 0,
                    "failed": report.failed if report else 0,
                }
            )
        )
    elif report is not None:
        table = Table(title=f"Backfill for {account_id}")
        table.add_column("Matched", style="cyan")
        table.add_column("Ingested", style="green")
        table.add_column("Duplicates", style="blue")
        table.add_column("Failed", style="red")
        table.add_row(
            str(report.matched), str(report.ingested), str(report.duplicates), str(report.failed)
        )
        console.print(table)

    if errored or report is None:
        error_console.print(f"Sync failed: {session.last_error}")
        raise typer.Exit(1)
