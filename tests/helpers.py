"""Test helpers: message builders and an in-memory mailbox transport."""

from __future__ import annotations

import asyncio
import threading
import time
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from email.message import EmailMessage
from email.utils import format_datetime
from typing import Callable, Dict, Iterable, List, Optional

import pytest

from mailsync.sync.models import FolderRef, ImapEndpoint, RawMessage


# ============================================================================
# Message builders
# ============================================================================


def build_email(
    *,
    subject: Optional[str] = "Quick question about pricing",
    sender: Optional[str] = "Alice Example <alice@example.com>",
    to: Optional[str] = "bob@example.com",
    cc: Optional[str] = None,
    body: Optional[str] = "Hi Bob, could you send over pricing details?",
    html: Optional[str] = None,
    message_id: Optional[str] = "<msg-1@example.com>",
    date: Optional[datetime] = datetime(2024, 1, 15, 9, 30, tzinfo=timezone.utc),
) -> bytes:
    """Build RFC822 bytes; pass None to leave a header or part out."""
    msg = EmailMessage()
    if subject is not None:
        msg["Subject"] = subject
    if sender is not None:
        msg["From"] = sender
    if to is not None:
        msg["To"] = to
    if cc is not None:
        msg["Cc"] = cc
    if message_id is not None:
        msg["Message-ID"] = message_id
    if date is not None:
        msg["Date"] = format_datetime(date)

    if body is not None:
        msg.set_content(body)
        if html is not None:
            msg.add_alternative(html, subtype="html")
    elif html is not None:
        msg.set_content(html, subtype="html")
    return msg.as_bytes()


def make_raw(
    uid: int,
    *,
    folder: str = "INBOX",
    flags: Iterable = (),
    internal_date: Optional[datetime] = None,
    **email_kwargs,
) -> RawMessage:
    email_kwargs.setdefault("message_id", f"<msg-{uid}@example.com>")
    return RawMessage(
        uid=uid,
        folder=folder,
        content=build_email(**email_kwargs),
        flags=tuple(flags),
        internal_date=internal_date,
    )


# ============================================================================
# Fake transport
# ============================================================================


class FakeHandle:
    def __init__(self, endpoint: ImapEndpoint) -> None:
        self.endpoint = endpoint
        self.wake = threading.Event()
        self.closed = False


class FakeTransport:
    """Thread-safe in-memory ``MailboxTransport``.

    ``deliver`` adds a message and signals the next IDLE cycle, mimicking an
    EXISTS push. ``add`` adds a message silently so only a poll finds it.
    """

    def __init__(
        self,
        messages: Optional[Iterable[RawMessage]] = None,
        *,
        connect_errors: Optional[List[BaseException]] = None,
    ) -> None:
        self.messages: Dict[int, RawMessage] = {raw.uid: raw for raw in messages or ()}
        self.connect_errors = list(connect_errors or [])
        self.vanished: set = set()
        self.idle_error: Optional[BaseException] = None
        self.connect_gate: Optional[threading.Event] = None
        self.calls: Dict[str, int] = defaultdict(int)
        self.read_only_flags: List[bool] = []
        self.handles: List[FakeHandle] = []
        self._activity = threading.Event()
        self._lock = threading.Lock()

    def _count(self, name: str) -> None:
        with self._lock:
            self.calls[name] += 1

    def add(self, raw: RawMessage) -> None:
        with self._lock:
            self.messages[raw.uid] = raw

    def deliver(self, raw: RawMessage) -> None:
        self.add(raw)
        self._activity.set()

    def connect(self, endpoint: ImapEndpoint) -> FakeHandle:
        self._count("connect")
        if self.connect_gate is not None:
            self.connect_gate.wait(5)
        if self.connect_errors:
            raise self.connect_errors.pop(0)
        handle = FakeHandle(endpoint)
        self.handles.append(handle)
        return handle

    def open_folder(self, handle: FakeHandle, name: str, read_only: bool = True) -> FolderRef:
        self._count("open_folder")
        self.read_only_flags.append(read_only)
        return FolderRef(handle=handle, name=name, read_only=read_only, exists=len(self.messages))

    def search_since(self, folder: FolderRef, cutoff: datetime) -> List[int]:
        self._count("search_since")
        with self._lock:
            return sorted(
                uid
                for uid, raw in self.messages.items()
                if raw.internal_date is None
                or raw.internal_date.date() >= (cutoff - timedelta(days=1)).date()
            )

    def search_unseen(self, folder: FolderRef) -> List[int]:
        self._count("search_unseen")
        with self._lock:
            return sorted(uid for uid, raw in self.messages.items() if not raw.is_seen)

    def fetch_raw(self, folder: FolderRef, uid: int) -> Optional[RawMessage]:
        self._count("fetch_raw")
        with self._lock:
            if uid in self.vanished:
                return None
            return self.messages.get(uid)

    def wait_for_activity(self, handle: FakeHandle, timeout: float) -> bool:
        self._count("wait_for_activity")
        deadline = time.monotonic() + timeout
        try:
            while not handle.wake.is_set():
                if self.idle_error is not None:
                    raise self.idle_error
                if self._activity.is_set():
                    self._activity.clear()
                    return True
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                handle.wake.wait(min(0.01, remaining))
            return False
        finally:
            handle.wake.clear()

    def interrupt_wait(self, handle: FakeHandle) -> None:
        handle.wake.set()

    def keepalive(self, handle: FakeHandle) -> None:
        self._count("keepalive")

    def close(self, handle: FakeHandle) -> None:
        self._count("close")
        handle.closed = True
        handle.wake.set()


async def wait_until(predicate: Callable[[], bool], timeout: float = 3.0) -> None:
    """Poll ``predicate`` on the event loop until true or fail the test."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            pytest.fail("condition not reached in time")
        await asyncio.sleep(0.01)
