"""CLI commands for registering and toggling mailbox accounts."""

from __future__ import annotations

import json
import uuid
from pathlib import Path
from typing import Optional

import typer
from pydantic import SecretStr, ValidationError
from rich.console import Console
from rich.table import Table

from ..configuration.cli import load_runtime_settings
from ..configuration.settings import DEFAULT_CONFIG_PATH
from ..storage.store import SqliteMailStore
from ..sync.models import Account, ImapEndpoint


console = Console()
error_console = Console(stderr=True)

accounts_app = typer.Typer(help="Mailbox account commands")


def _open_store(config_path: Path) -> SqliteMailStore:
    settings = load_runtime_settings(config_path)
    return SqliteMailStore(settings.storage.db_path)


@accounts_app.command("add")
def add_account(
    email: str = typer.Option(..., "--email", "-e", help="Mailbox address"),
    host: str = typer.Option(..., "--host", help="IMAP hostname"),
    password: str = typer.Option(
        ..., "--password", prompt=True, hide_input=True, help="IMAP password or app password"
    ),
    port: int = typer.Option(993, "--port", "-p", help="IMAP port (TLS)"),
    username: Optional[str] = typer.Option(None, "--username", "-u", help="Login name (defaults to email)"),
    user_id: str = typer.Option("default", "--user", help="Owning user id"),
    folder: str = typer.Option("INBOX", "--folder", "-f", help="Folder to watch"),
    account_id: Optional[str] = typer.Option(None, "--id", help="Account id (generated if omitted)"),
    disabled: bool = typer.Option(False, "--disabled", help="Register without enabling sync"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
    config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config", help="Path to config file"),
) -> None:
    """Register a mailbox account.

    Examples:
        mailsync accounts add --email me@example.com --host imap.example.com
    """
    if port == 143:
        error_console.print("Error: plain IMAP (port 143) is unsupported; use TLS (993)")
        raise typer.Exit(1)

    try:
        account = Account(
            id=account_id or uuid.uuid4().hex,
            user_id=user_id,
            email=email,
            folder=folder,
            sync_enabled=not disabled,
            endpoint=ImapEndpoint(
                host=host,
                port=port,
                username=username or email,
                password=SecretStr(password),
            ),
        )
    except ValidationError as exc:
        error_console.print(f"Error: invalid account: {exc}")
        raise typer.Exit(1) from exc

    store = _open_store(config_path)
    try:
        store.add_account(account)
    finally:
        store.close()

    if json_output:
        print(json.dumps({"id": account.id, "email": account.email, "sync_enabled": account.sync_enabled}))
        return
    console.print(f"[green]Added account[/green] {account.id} ({account.email})")


@accounts_app.command("list")
def list_accounts(
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
    config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config", help="Path to config file"),
) -> None:
    """List registered accounts."""
    store = _open_store(config_path)
    try:
        accounts = store.list_accounts()
    finally:
        store.close()

    if json_output:
        print(
            json.dumps(
                [
                    {
                        "id": account.id,
                        "email": account.email,
                        "host": account.endpoint.host,
                        "folder": account.folder,
                        "sync_enabled": account.sync_enabled,
                        "last_synced_at": account.last_synced_at.isoformat()
                        if account.last_synced_at
                        else None,
                    }
                    for account in accounts
                ]
            )
        )
        return

    if not accounts:
        console.print("[yellow]No accounts registered.[/yellow]")
        console.print("Add one with: mailsync accounts add --email you@example.com --host imap.example.com")
        return

    table = Table(title="Mailbox Accounts")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Email", style="green")
    table.add_column("Host", style="blue")
    table.add_column("Folder", style="magenta")
    table.add_column("Sync", style="yellow")
    table.add_column("Last Synced")
    for account in accounts:
        table.add_row(
            account.id,
            account.email,
            f"{account.endpoint.host}:{account.endpoint.port}",
            account.folder,
            "enabled" if account.sync_enabled else "disabled",
            account.last_synced_at.strftime("%Y-%m-%d %H:%M") if account.last_synced_at else "Never",
        )
    console.print(table)


def _set_enabled(account_id: str, enabled: bool, config_path: Path) -> None:
    store = _open_store(config_path)
    try:
        found = store.set_sync_enabled(account_id, enabled)
    finally:
        store.close()
    if not found:
        error_console.print(f"Error: account {account_id} not found")
        raise typer.Exit(1)
    state = "enabled" if enabled else "disabled"
    console.print(f"Sync {state} for {account_id}")


@accounts_app.command("enable")
def enable_account(
    account_id: str = typer.Argument(..., help="Account id"),
    config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config", help="Path to config file"),
) -> None:
    """Enable sync for an account (picked up on the next reconcile)."""
    _set_enabled(account_id, True, config_path)


@accounts_app.command("disable")
def disable_account(
    account_id: str = typer.Argument(..., help="Account id"),
    config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config", help="Path to config file"),
) -> None:
    """Disable sync for an account (its session stops on the next reconcile)."""
    _set_enabled(account_id, False, config_path)
