"""SQLite-backed account and message store.

Holds the three tables the sync engine reads and writes: accounts, canonical
messages and webhook delivery attempts. ``(account_id, message_id)`` is
UNIQUE on ``messages`` so a racing duplicate insert fails atomically and
surfaces as ``DuplicateMessageError``.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Protocol, runtime_checkable

from pydantic import SecretStr

from ..errors import DuplicateMessageError
from ..sync.models import (
    Account,
    DeliveryAttempt,
    DeliveryStatus,
    EmailAddress,
    ImapEndpoint,
    Message,
    MessageCategory,
)


logger = logging.getLogger(__name__)


@runtime_checkable
class AccountStore(Protocol):
    """What the sync engine needs from durable storage."""

    def list_sync_enabled_accounts(self) -> List[Account]: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def update_last_synced(self, account_id: str, timestamp: datetime) -> None: ...

    def find_message(self, account_id: str, message_id: str) -> Optional[Message]: ...

    def insert_message(self, message: Message) -> Message: ...

    def update_message_category(
        self, message_id: int, category: MessageCategory, confidence: float
    ) -> None: ...

    def record_delivery_attempt(self, attempt: DeliveryAttempt) -> DeliveryAttempt: ...


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------


SCHEMA = """
CREATE TABLE IF NOT EXISTS accounts (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    email TEXT NOT NULL,
    imap_host TEXT NOT NULL,
    imap_port INTEGER NOT NULL DEFAULT 993,
    imap_username TEXT NOT NULL,
    imap_password TEXT NOT NULL,
    folder TEXT NOT NULL DEFAULT 'INBOX',
    sync_enabled BOOLEAN NOT NULL DEFAULT 1,
    last_synced_at TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    account_id TEXT NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
    message_id TEXT NOT NULL,
    uid INTEGER NOT NULL,
    subject TEXT NOT NULL,
    from_address TEXT NOT NULL DEFAULT '',
    from_name TEXT NOT NULL DEFAULT '',
    to_addresses TEXT NOT NULL DEFAULT '[]',
    cc_addresses TEXT NOT NULL DEFAULT '[]',
    folder TEXT NOT NULL,
    body_text TEXT NOT NULL DEFAULT '',
    body_html TEXT NOT NULL DEFAULT '',
    received_at TEXT NOT NULL,
    is_read BOOLEAN NOT NULL DEFAULT 0,
    category TEXT,
    category_confidence REAL,
    ingested_at TEXT NOT NULL,
    UNIQUE (account_id, message_id)
);

CREATE INDEX IF NOT EXISTS idx_messages_account ON messages(account_id);
CREATE INDEX IF NOT EXISTS idx_messages_received_at ON messages(received_at);
CREATE INDEX IF NOT EXISTS idx_messages_category ON messages(category);

CREATE TABLE IF NOT EXISTS delivery_attempts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    message_id INTEGER REFERENCES messages(id) ON DELETE CASCADE,
    target TEXT NOT NULL,
    status TEXT NOT NULL,
    response_code INTEGER,
    response_body TEXT NOT NULL DEFAULT '',
    attempted_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_delivery_message ON delivery_attempts(message_id);
"""

_MESSAGE_COLUMNS = """
    id, account_id, message_id, uid, subject, from_address, from_name,
    to_addresses, cc_addresses, folder, body_text, body_html, received_at,
    is_read, category, category_confidence, ingested_at
"""

_ACCOUNT_COLUMNS = """
    id, user_id, email, imap_host, imap_port, imap_username, imap_password,
    folder, sync_enabled, last_synced_at
"""


class SqliteMailStore:
    """SQLite store shared by the engine, the CLI and the notifier.

    The connection is opened with ``check_same_thread=False`` because the
    pipeline calls it from the event loop while notifiers may record delivery
    attempts from worker threads; a lock serializes every statement.
    """

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(str(self._path), check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._conn.executescript(SCHEMA)

    def close(self) -> None:
        with self._lock:
            self._conn.commit()
            self._conn.close()

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def add_account(self, account: Account) -> Account:
        """Insert or replace an account record."""
        endpoint = account.endpoint
        with self._lock, self._conn:
            self._conn.execute(
                """
                INSERT INTO accounts(
                    id, user_id, email, imap_host, imap_port, imap_username,
                    imap_password, folder, sync_enabled, last_synced_at, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    user_id=excluded.user_id,
                    email=excluded.email,
                    imap_host=excluded.imap_host,
                    imap_port=excluded.imap_port,
                    imap_username=excluded.imap_username,
                    imap_password=excluded.imap_password,
                    folder=excluded.folder,
                    sync_enabled=excluded.sync_enabled
                """,
                (
                    account.id,
                    account.user_id,
                    account.email,
                    endpoint.host,
                    endpoint.port,
                    endpoint.username,
                    endpoint.password.get_secret_value(),
                    account.folder,
                    int(account.sync_enabled),
                    _iso(account.last_synced_at),
                    datetime.now(timezone.utc).isoformat(),
                ),
            )
        logger.info(f"Stored account {account.id}", extra={"account_id": account.id})
        return account

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._lock:
            row = self._conn.execute(
                f"SELECT {_ACCOUNT_COLUMNS} FROM accounts WHERE id = ?",
                (account_id,),
            ).fetchone()
        return _row_to_account(row) if row else None

    def list_accounts(self) -> List[Account]:
        with self._lock:
            rows = self._conn.execute(
                f"SELECT {_ACCOUNT_COLUMNS} FROM accounts ORDER BY id"
            ).fetchall()
        return [_row_to_account(row) for row in rows]

    def list_sync_enabled_accounts(self) -> List[Account]:
        with self._lock:
            rows = self._conn.execute(
                f"SELECT {_ACCOUNT_COLUMNS} FROM accounts WHERE sync_enabled = 1 ORDER BY id"
            ).fetchall()
        return [_row_to_account(row) for row in rows]

    def set_sync_enabled(self, account_id: str, enabled: bool) -> bool:
        """Toggle the sync flag; returns False when the account is unknown."""
        with self._lock, self._conn:
            cur = self._conn.execute(
                "UPDATE accounts SET sync_enabled = ? WHERE id = ?",
                (int(enabled), account_id),
            )
        return cur.rowcount > 0

    def update_last_synced(self, account_id: str, timestamp: datetime) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                "UPDATE accounts SET last_synced_at = ? WHERE id = ?",
                (timestamp.isoformat(), account_id),
            )

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def find_message(self, account_id: str, message_id: str) -> Optional[Message]:
        with self._lock:
            row = self._conn.execute(
                f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE account_id = ? AND message_id = ?",
                (account_id, message_id),
            ).fetchone()
        return _row_to_message(row) if row else None

    def insert_message(self, message: Message) -> Message:
        """Persist a new message and return it with its store id.

        Raises:
            DuplicateMessageError: If ``(account_id, message_id)`` already exists
        """
        try:
            with self._lock, self._conn:
                cur = self._conn.execute(
                    """
                    INSERT INTO messages(
                        account_id, message_id, uid, subject, from_address, from_name,
                        to_addresses, cc_addresses, folder, body_text, body_html,
                        received_at, is_read, category, category_confidence, ingested_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        message.account_id,
                        message.message_id,
                        message.uid,
                        message.subject,
                        message.from_address,
                        message.from_name,
                        _dump_addresses(message.to_addresses),
                        _dump_addresses(message.cc_addresses),
                        message.folder,
                        message.body_text,
                        message.body_html,
                        message.received_at.isoformat(),
                        int(message.is_read),
                        message.category.value if message.category else None,
                        message.category_confidence,
                        message.ingested_at.isoformat(),
                    ),
                )
        except sqlite3.IntegrityError as exc:
            if "UNIQUE" not in str(exc).upper():
                raise
            raise DuplicateMessageError(
                details={
                    "account_id": message.account_id,
                    "message_id": message.message_id,
                }
            ) from exc
        return message.model_copy(update={"id": cur.lastrowid})

    def update_message_category(
        self,
        message_id: int,
        category: MessageCategory,
        confidence: float,
    ) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                "UPDATE messages SET category = ?, category_confidence = ? WHERE id = ?",
                (MessageCategory(category).value, confidence, message_id),
            )

    def list_messages(
        self,
        account_id: Optional[str] = None,
        *,
        category: Optional[MessageCategory] = None,
        limit: int = 50,
    ) -> List[Message]:
        """List stored messages, newest first."""
        clauses = []
        params: list = []
        if account_id is not None:
            clauses.append("account_id = ?")
            params.append(account_id)
        if category is not None:
            clauses.append("category = ?")
            params.append(MessageCategory(category).value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        with self._lock:
            rows = self._conn.execute(
                f"SELECT {_MESSAGE_COLUMNS} FROM messages {where} "
                "ORDER BY received_at DESC, id DESC LIMIT ?",
                params,
            ).fetchall()
        return [_row_to_message(row) for row in rows]

    def get_message(self, message_id: int) -> Optional[Message]:
        with self._lock:
            row = self._conn.execute(
                f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE id = ?",
                (message_id,),
            ).fetchone()
        return _row_to_message(row) if row else None

    def category_counts(self, account_id: Optional[str] = None) -> Dict[Optional[MessageCategory], int]:
        """Count stored messages per category; ``None`` counts uncategorized ones."""
        query = "SELECT category, COUNT(*) FROM messages"
        params: tuple = ()
        if account_id is not None:
            query += " WHERE account_id = ?"
            params = (account_id,)
        with self._lock:
            rows = self._conn.execute(query + " GROUP BY category", params).fetchall()
        counts: Dict[Optional[MessageCategory], int] = {category: 0 for category in MessageCategory}
        counts[None] = 0
        for category, count in rows:
            counts[MessageCategory(category) if category else None] = int(count)
        return counts

    def count_messages(self, account_id: Optional[str] = None) -> int:
        with self._lock:
            if account_id is None:
                row = self._conn.execute("SELECT COUNT(*) FROM messages").fetchone()
            else:
                row = self._conn.execute(
                    "SELECT COUNT(*) FROM messages WHERE account_id = ?",
                    (account_id,),
                ).fetchone()
        return int(row[0])

    # ------------------------------------------------------------------
    # Delivery attempts
    # ------------------------------------------------------------------

    def record_delivery_attempt(self, attempt: DeliveryAttempt) -> DeliveryAttempt:
        with self._lock, self._conn:
            cur = self._conn.execute(
                """
                INSERT INTO delivery_attempts(
                    message_id, target, status, response_code, response_body, attempted_at
                )
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    attempt.message_id,
                    attempt.target,
                    DeliveryStatus(attempt.status).value,
                    attempt.response_code,
                    attempt.response_body,
                    attempt.attempted_at.isoformat(),
                ),
            )
        return attempt.model_copy(update={"id": cur.lastrowid})

    def list_delivery_attempts(self, message_id: Optional[int] = None) -> List[DeliveryAttempt]:
        with self._lock:
            if message_id is None:
                rows = self._conn.execute(
                    "SELECT id, message_id, target, status, response_code, response_body, attempted_at "
                    "FROM delivery_attempts ORDER BY id"
                ).fetchall()
            else:
                rows = self._conn.execute(
                    "SELECT id, message_id, target, status, response_code, response_body, attempted_at "
                    "FROM delivery_attempts WHERE message_id = ? ORDER BY id",
                    (message_id,),
                ).fetchall()
        return [
            DeliveryAttempt(
                id=row[0],
                message_id=row[1],
                target=row[2],
                status=DeliveryStatus(row[3]),
                response_code=row[4],
                response_body=row[5],
                attempted_at=datetime.fromisoformat(row[6]),
            )
            for row in rows
        ]

    def iter_messages(self, account_id: str) -> Iterator[Message]:
        with self._lock:
            rows = self._conn.execute(
                f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE account_id = ? ORDER BY id",
                (account_id,),
            ).fetchall()
        for row in rows:
            yield _row_to_message(row)


# ---------------------------------------------------------------------------
# Row mapping
# ---------------------------------------------------------------------------


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _dump_addresses(addresses: List[EmailAddress]) -> str:
    return json.dumps([addr.model_dump() for addr in addresses])


def _load_addresses(raw: Optional[str]) -> List[EmailAddress]:
    if not raw:
        return []
    return [EmailAddress(**item) for item in json.loads(raw)]


def _row_to_account(row) -> Account:
    return Account(
        id=row[0],
        user_id=row[1],
        email=row[2],
        endpoint=ImapEndpoint(
            host=row[3],
            port=row[4],
            username=row[5],
            password=SecretStr(row[6]),
        ),
        folder=row[7],
        sync_enabled=bool(row[8]),
        last_synced_at=datetime.fromisoformat(row[9]) if row[9] else None,
    )


def _row_to_message(row) -> Message:
    return Message(
        id=row[0],
        account_id=row[1],
        message_id=row[2],
        uid=row[3],
        subject=row[4],
        from_address=row[5],
        from_name=row[6],
        to_addresses=_load_addresses(row[7]),
        cc_addresses=_load_addresses(row[8]),
        folder=row[9],
        body_text=row[10],
        body_html=row[11],
        received_at=datetime.fromisoformat(row[12]),
        is_read=bool(row[13]),
        category=MessageCategory(row[14]) if row[14] else None,
        category_confidence=row[15],
        ingested_at=datetime.fromisoformat(row[16]),
    )


__all__ = ["AccountStore", "SCHEMA", "SqliteMailStore"]
