"""Durable storage for accounts, messages and delivery attempts."""

from .store import AccountStore, SqliteMailStore

__all__ = ["AccountStore", "SqliteMailStore"]
