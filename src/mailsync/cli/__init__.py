"""Command line entry points for mailsync."""

from typer import Typer

from ..configuration.cli import config_app
from ..sync.cli import sync_app
from .accounts import accounts_app
from .deliveries import deliveries_app
from .messages import messages_app
from .search import search_app


cli = Typer(help="mailsync command line tools")
cli.add_typer(config_app, name="config")
cli.add_typer(accounts_app, name="accounts")
cli.add_typer(sync_app, name="sync")
cli.add_typer(messages_app, name="messages")
cli.add_typer(deliveries_app, name="deliveries")
cli.add_typer(search_app, name="search")

__all__ = [
    "cli",
    "config_app",
    "accounts_app",
    "sync_app",
    "messages_app",
    "deliveries_app",
    "search_app",
]
