"""CLI commands for managing mailsync settings."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console

from .settings import (
    DEFAULT_CONFIG_PATH,
    Settings,
    bootstrap_settings,
    configure_logging,
    load_settings,
)


console = Console()
error_console = Console(stderr=True)

config_app = typer.Typer(help="Manage mailsync configuration")


def load_runtime_settings(config_path: Path) -> Settings:
    """Bootstrap settings for a command and install logging."""

    try:
        settings = bootstrap_settings(path=config_path)
    except ValueError as exc:
        error_console.print(f"[red]Invalid configuration:[/red] {exc}")
        raise typer.Exit(code=1) from exc
    configure_logging(settings.logging)
    return settings


@config_app.command("init")
def init_config(
    config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config", help="Path to config file"),
    db_path: Optional[Path] = typer.Option(None, help="Override SQLite database path"),
    elasticsearch_node: Optional[str] = typer.Option(None, help="Override Elasticsearch URL"),
    openai_api_key: Optional[str] = typer.Option(None, help="Classifier API key (stored in keyring)"),
    slack_webhook_url: Optional[str] = typer.Option(None, help="Slack incoming webhook URL"),
    webhook_url: Optional[str] = typer.Option(None, help="Outbound interest webhook URL"),
    backfill_days: Optional[int] = typer.Option(None, help="Historical window in days"),
) -> None:
    """Initialize the mailsync settings file."""

    overrides: dict = {}
    if db_path:
        overrides.setdefault("storage", {})["db_path"] = str(db_path)
    if elasticsearch_node:
        overrides.setdefault("search", {})["elasticsearch_node"] = elasticsearch_node
    if openai_api_key:
        overrides.setdefault("classifier", {})["api_key"] = openai_api_key
    if slack_webhook_url:
        overrides.setdefault("notifications", {})["slack_webhook_url"] = slack_webhook_url
    if webhook_url:
        overrides.setdefault("notifications", {})["webhook_url"] = webhook_url
    if backfill_days is not None:
        overrides.setdefault("sync", {})["backfill_days"] = backfill_days

    try:
        settings = bootstrap_settings(path=config_path, overrides=overrides)
    except ValueError as exc:
        error_console.print(f"[red]Invalid configuration:[/red] {exc}")
        raise typer.Exit(code=1) from exc
    typer.echo(f"Configuration initialized at {config_path}")
    typer.echo(_summarize_settings(settings))


@config_app.command("show")
def show_config(config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config", help="Path to config")) -> None:
    """Display effective configuration with secrets masked."""

    try:
        settings = load_settings(config_path)
    except (FileNotFoundError, ValueError) as exc:
        error_console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1) from exc
    typer.echo(_summarize_settings(settings))


@config_app.command("validate")
def validate_config(
    config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config", help="Path to config file"),
) -> None:
    """Validate configuration file for correctness."""

    try:
        settings = load_settings(config_path)
    except Exception as exc:  # noqa: BLE001
        typer.echo(f"Configuration invalid: {exc}", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"Configuration valid at {config_path}")
    typer.echo(f"   Database: {settings.storage.db_path}")
    typer.echo(f"   Elasticsearch: {settings.search.elasticsearch_node}")


def _summarize_settings(settings: Settings) -> str:
    payload = settings.model_dump(mode="json")
    classifier = payload.get("classifier", {})
    if classifier.get("api_key"):
        classifier["api_key"] = "***"
    return json.dumps(payload, indent=2)


__all__ = ["config_app", "load_runtime_settings"]
