"""CLI commands for inspecting ingested messages."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from ..configuration.cli import load_runtime_settings
from ..configuration.settings import DEFAULT_CONFIG_PATH
from ..errors import ClassificationError
from ..storage.store import SqliteMailStore
from ..sync.engine import build_classifier
from ..sync.models import Classification, Message, MessageCategory


console = Console()
error_console = Console(stderr=True)

UNCATEGORIZED = "Uncategorized"

messages_app = typer.Typer(help="Inspect ingested messages")


@messages_app.command("list")
def list_messages(
    account_id: Optional[str] = typer.Option(None, "--account", "-a", help="Filter by account id"),
    category: Optional[str] = typer.Option(None, "--category", "-c", help="Filter by category"),
    limit: int = typer.Option(50, "--limit", "-n", min=1, help="Maximum rows"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
    config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config", help="Path to config file"),
) -> None:
    """List stored messages, newest first."""
    category_filter = _parse_category(category) if category else None

    settings = load_runtime_settings(config_path)
    store = SqliteMailStore(settings.storage.db_path)
    try:
        messages = store.list_messages(account_id, category=category_filter, limit=limit)
    finally:
        store.close()

    if json_output:
        print(
            json.dumps(
                [
                    message.model_dump(
                        mode="json",
                        include={
                            "id",
                            "account_id",
                            "message_id",
                            "subject",
                            "from_address",
                            "received_at",
                            "is_read",
                            "category",
                            "category_confidence",
                        },
                    )
                    for message in messages
                ]
            )
        )
        return

    if not messages:
        console.print("[yellow]No messages found.[/yellow]")
        return

    table = Table(title="Messages")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Received", style="blue")
    table.add_column("From", style="green")
    table.add_column("Subject")
    table.add_column("Category", style="magenta")
    for message in messages:
        category_label = "-"
        if message.category is not None:
            category_label = message.category.value
            if message.category_confidence is not None:
                category_label += f" ({message.category_confidence:.0%})"
        table.add_row(
            str(message.id),
            message.received_at.strftime("%Y-%m-%d %H:%M"),
            message.from_name or message.from_address,
            message.subject[:60],
            category_label,
        )
    console.print(table)


def _parse_category(category: str) -> MessageCategory:
    try:
        return MessageCategory(category)
    except ValueError:
        valid = ", ".join(c.value for c in MessageCategory)
        error_console.print(f"Error: unknown category '{category}'. Valid: {valid}")
        raise typer.Exit(1)


def _load_message(store: SqliteMailStore, message_id: int) -> Message:
    message = store.get_message(message_id)
    if message is None:
        error_console.print(f"Error: message {message_id} not found")
        raise typer.Exit(1)
    return message


@messages_app.command("show")
def show_message(
    message_id: int = typer.Argument(..., help="Store id of the message"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
    config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config", help="Path to config file"),
) -> None:
    """Show one stored message with its body and webhook deliveries."""
    settings = load_runtime_settings(config_path)
    store = SqliteMailStore(settings.storage.db_path)
    try:
        message = _load_message(store, message_id)
        deliveries = store.list_delivery_attempts(message_id)
    finally:
        store.close()

    if json_output:
        payload = message.model_dump(mode="json")
        payload["deliveries"] = [attempt.model_dump(mode="json") for attempt in deliveries]
        print(json.dumps(payload))
        return

    category = message.category.value if message.category else "-"
    console.print(f"[bold]{message.subject or '(no subject)'}[/bold]")
    console.print(f"From:     {message.from_name} <{message.from_address}>")
    console.print(f"To:       {', '.join(a.address for a in message.to_addresses) or '-'}")
    console.print(f"Received: {message.received_at.isoformat()}")
    console.print(f"Account:  {message.account_id} ({message.folder}, uid {message.uid})")
    console.print(f"Category: {category}")
    console.print()
    console.print(message.body_text or "[dim](empty body)[/dim]")
    if deliveries:
        console.print(f"\n[cyan]{len(deliveries)} webhook delivery attempt(s)[/cyan]")


@messages_app.command("categorize")
def categorize_message(
    message_id: int = typer.Argument(..., help="Store id of the message"),
    category: Optional[str] = typer.Option(
        None, "--category", "-c", help="Set this category instead of asking the classifier"
    ),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
    config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config", help="Path to config file"),
) -> None:
    """Re-run classification for one message and store the result."""
    manual = _parse_category(category) if category else None
    settings = load_runtime_settings(config_path)
    store = SqliteMailStore(settings.storage.db_path)
    try:
        message = _load_message(store, message_id)
        if manual is not None:
            result = Classification(category=manual, confidence=1.0)
        else:
            classifier = build_classifier(settings)
            if classifier is None:
                error_console.print(
                    "Error: classifier not configured (set classifier.api_key or pass --category)"
                )
                raise typer.Exit(1)
            try:
                result = classifier.classify(message.subject, message.body_text)
            except ClassificationError as exc:
                error_console.print(f"Error: {exc}")
                raise typer.Exit(1) from exc
        store.update_message_category(message_id, result.category, result.confidence)
    finally:
        store.close()

    if json_output:
        print(json.dumps({"id": message_id, "success": True, **result.model_dump(mode="json")}))
        return
    console.print(
        f"[green]✓[/green] Message {message_id}: {result.category.value} ({result.confidence:.0%})"
    )


@messages_app.command("categories")
def category_counts(
    account_id: Optional[str] = typer.Option(None, "--account", "-a", help="Filter by account id"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
    config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config", help="Path to config file"),
) -> None:
    """Show the category set with the number of stored messages in each."""
    settings = load_runtime_settings(config_path)
    store = SqliteMailStore(settings.storage.db_path)
    try:
        counts = store.category_counts(account_id)
    finally:
        store.close()

    rows = [(category.value, counts[category]) for category in MessageCategory]
    rows.append((UNCATEGORIZED, counts[None]))

    if json_output:
        print(json.dumps([{"name": name, "count": count} for name, count in rows]))
        return

    table = Table(title="Categories")
    table.add_column("Category", style="magenta")
    table.add_column("Messages", justify="right")
    for name, count in rows:
        table.add_row(name, str(count))
    console.print(table)
