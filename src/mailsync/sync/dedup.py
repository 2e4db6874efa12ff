"""Existence check that keeps a message from being ingested twice."""

from __future__ import annotations

import logging

from ..storage.store import AccountStore
from .models import Message


logger = logging.getLogger(__name__)


class DedupGate:
    """Answers "already ingested?" against durable storage.

    The check is advisory. Two triggers can both pass it for the same
    message; the UNIQUE constraint on insert settles that race.
    """

    def __init__(self, store: AccountStore) -> None:
        self._store = store

    def is_duplicate(self, message: Message) -> bool:
        try:
            existing = self._store.find_message(message.account_id, message.message_id)
        except Exception as exc:  # noqa: BLE001
            # Fall through to the insert, which enforces uniqueness itself
            logger.warning(
                f"Dedup lookup failed, deferring to insert: {exc}",
                extra={"account_id": message.account_id, "uid": message.uid},
            )
            return False
        return existing is not None


__all__ = ["DedupGate"]
