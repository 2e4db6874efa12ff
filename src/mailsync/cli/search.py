"""CLI commands for the Elasticsearch message index."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from ..configuration.cli import load_runtime_settings
from ..configuration.settings import DEFAULT_CONFIG_PATH, Settings
from ..errors import IndexingError
from ..search.indexer import ElasticsearchIndexer


console = Console()
error_console = Console(stderr=True)

search_app = typer.Typer(help="Search index commands")


def _indexer(settings: Settings) -> ElasticsearchIndexer:
    return ElasticsearchIndexer(
        settings.search.elasticsearch_node,
        index_name=settings.search.index_name,
        timeout=settings.search.request_timeout_seconds,
    )


@search_app.command("init")
def init_index(
    config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config", help="Path to config file"),
) -> None:
    """Create the message index if it does not exist."""
    settings = load_runtime_settings(config_path)
    indexer = _indexer(settings)
    try:
        created = indexer.ensure_index()
    except IndexingError as exc:
        error_console.print(f"Error: {exc}")
        raise typer.Exit(1) from exc
    if created:
        console.print(f"[green]Created index[/green] {indexer.index_name}")
    else:
        console.print(f"Index {indexer.index_name} already exists")


@search_app.command("health")
def index_health(
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
    config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config", help="Path to config file"),
) -> None:
    """Show Elasticsearch cluster health."""
    settings = load_runtime_settings(config_path)
    try:
        health = _indexer(settings).health()
    except IndexingError as exc:
        error_console.print(f"Error: {exc}")
        raise typer.Exit(1) from exc

    if json_output:
        print(json.dumps(health))
        return
    status = health.get("status", "unknown")
    color = {"green": "green", "yellow": "yellow", "red": "red"}.get(status, "white")
    console.print(f"Cluster [bold]{health.get('cluster_name', '?')}[/bold]: [{color}]{status}[/{color}]")
    console.print(f"Nodes: {health.get('number_of_nodes', '?')}")


@search_app.command("query")
def query_index(
    text: str = typer.Argument("", help="Full-text query"),
    account_id: Optional[str] = typer.Option(None, "--account", "-a", help="Filter by account id"),
    folder: Optional[str] = typer.Option(None, "--folder", "-f", help="Filter by folder"),
    category: Optional[str] = typer.Option(None, "--category", "-c", help="Filter by category"),
    size: int = typer.Option(20, "--size", "-n", min=1, help="Maximum hits"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
    config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config", help="Path to config file"),
) -> None:
    """Search indexed messages."""
    settings = load_runtime_settings(config_path)
    try:
        result = _indexer(settings).search(
            text, account_id=account_id, folder=folder, category=category, size=size
        )
    except (IndexingError, ValueError) as exc:
        error_console.print(f"Error: {exc}")
        raise typer.Exit(1) from exc

    if json_output:
        print(json.dumps(result))
        return

    table = Table(title=f"{result['total']} hit(s)")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Score", style="blue")
    table.add_column("From", style="green")
    table.add_column("Subject")
    table.add_column("Category", style="magenta")
    for hit in result["hits"]:
        score = hit.get("score")
        table.add_row(
            str(hit.get("id")),
            f"{score:.2f}" if isinstance(score, (int, float)) else "-",
            hit.get("from_name") or hit.get("from_address") or "",
            (hit.get("subject") or "")[:60],
            hit.get("category") or "-",
        )
    console.print(table)
