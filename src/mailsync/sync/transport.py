"""Mailbox transport: the blocking IMAP command surface used by sessions.

``ImapTransport`` wraps ``imapclient`` with a TLS-only connection policy and
translates client failures into ``TransportError``. Every method blocks;
sessions call them from worker threads, one command at a time per handle.
The only method that is safe to call concurrently with a running command is
``interrupt_wait``, which wakes an in-flight IDLE.
"""

from __future__ import annotations

import asyncio
import logging
import random
import socket
import ssl
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Iterator, List, Optional, Protocol, runtime_checkable

import certifi
from imapclient import IMAPClient
from imapclient.exceptions import IMAPClientError, LoginError

from ..errors import AuthenticationError, MailSyncError, TransportError
from .models import FolderRef, ImapEndpoint, RawMessage


logger = logging.getLogger(__name__)

# Seconds per idle_check slice; bounds how long interrupt_wait takes to land.
IDLE_CHECK_SLICE = 1.0

_ACTIVITY_MARKERS = (b"EXISTS", b"RECENT")


# ---------------------------------------------------------------------------
# Retry strategy
# ---------------------------------------------------------------------------


@dataclass
class RetryStrategy:
    """Exponential backoff retry configuration with jitter."""

    max_retries: int = 2
    base_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: float = 2.0
    jitter: bool = True

    def calculate_delay(self, retry_count: int) -> float:
        delay = min(self.base_delay * (self.exponential_base**retry_count), self.max_delay)
        if self.jitter:
            delay *= 1 + random.random() * 0.5
        return delay

    def should_retry(self, retry_count: int, exc: BaseException) -> bool:
        if retry_count >= self.max_retries:
            return False
        if isinstance(exc, MailSyncError):
            # AuthenticationError is not recoverable; never retry bad credentials
            return exc.recoverable
        if isinstance(exc, (TimeoutError, asyncio.TimeoutError, socket.timeout)):
            return True
        if isinstance(exc, LoginError):
            return False
        if isinstance(exc, (socket.error, OSError)):
            return True
        return isinstance(exc, IMAPClient.AbortError)


# ---------------------------------------------------------------------------
# Transport protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class MailboxTransport(Protocol):
    """Blocking command surface a session drives against one remote mailbox."""

    def connect(self, endpoint: ImapEndpoint) -> Any: ...

    def open_folder(self, handle: Any, name: str, read_only: bool = True) -> FolderRef: ...

    def search_since(self, folder: FolderRef, cutoff: datetime) -> List[int]: ...

    def search_unseen(self, folder: FolderRef) -> List[int]: ...

    def fetch_raw(self, folder: FolderRef, uid: int) -> Optional[RawMessage]: ...

    def wait_for_activity(self, handle: Any, timeout: float) -> bool: ...

    def interrupt_wait(self, handle: Any) -> None: ...

    def keepalive(self, handle: Any) -> None: ...

    def close(self, handle: Any) -> None: ...


@dataclass
class ImapHandle:
    """An authenticated IMAP client plus the event that wakes its IDLE."""

    client: IMAPClient
    host: str
    username: str
    wake: threading.Event = field(default_factory=threading.Event)
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


# ---------------------------------------------------------------------------
# imapclient implementation
# ---------------------------------------------------------------------------


@contextmanager
def _translate_errors(action: str, **context: Any) -> Iterator[None]:
    try:
        yield
    except MailSyncError:
        raise
    except LoginError as exc:
        raise AuthenticationError(str(exc) or None, details={"action": action, **context}) from exc
    except (IMAPClientError, OSError, socket.timeout) as exc:
        raise TransportError(
            f"IMAP {action} failed: {exc}",
            details={"action": action, **context},
        ) from exc


class ImapTransport:
    """``MailboxTransport`` backed by ``imapclient`` over TLS."""

    def __init__(self, *, connection_timeout: float = 30) -> None:
        self.connection_timeout = connection_timeout

    def connect(self, endpoint: ImapEndpoint) -> ImapHandle:
        if endpoint.port == 143:
            raise TransportError(
                "Plain IMAP (port 143) is unsupported; TLS required",
                details={"host": endpoint.host},
            )
        with _translate_errors("connect", host=endpoint.host):
            client = IMAPClient(
                host=endpoint.host,
                port=endpoint.port,
                ssl=True,
                ssl_context=self._create_ssl_context(),
                timeout=self.connection_timeout,
                use_uid=True,
            )
            # Keep INTERNALDATE timezone-aware for the backfill cutoff
            client.normalise_times = False
            try:
                client.login(endpoint.username, endpoint.password.get_secret_value())
            except Exception:
                self._safe_shutdown(client)
                raise
        logger.info(
            f"Connected to {endpoint.host}:{endpoint.port} as {endpoint.username}",
            extra={"host": endpoint.host},
        )
        return ImapHandle(client=client, host=endpoint.host, username=endpoint.username)

    def _create_ssl_context(self) -> ssl.SSLContext:
        context = ssl.create_default_context()
        context.load_verify_locations(certifi.where())
        context.minimum_version = ssl.TLSVersion.TLSv1_2
        context.check_hostname = True
        context.verify_mode = ssl.CERT_REQUIRED
        return context

    def open_folder(self, handle: ImapHandle, name: str, read_only: bool = True) -> FolderRef:
        # readonly=True issues EXAMINE, so \Seen flags are never touched
        with _translate_errors("select", folder=name):
            info = handle.client.select_folder(name, readonly=read_only)
        return FolderRef(
            handle=handle,
            name=name,
            read_only=read_only,
            uidvalidity=_as_int(info.get(b"UIDVALIDITY")),
            exists=_as_int(info.get(b"EXISTS")) or 0,
        )

    def search_since(self, folder: FolderRef, cutoff: datetime) -> List[int]:
        # SINCE compares dates in the server's zone; widen by a day and let
        # callers filter on the exact INTERNALDATE
        since = (cutoff - timedelta(days=1)).date()
        with _translate_errors("search", folder=folder.name):
            uids = folder.handle.client.search(["SINCE", since])
        return sorted(int(uid) for uid in uids)

    def search_unseen(self, folder: FolderRef) -> List[int]:
        with _translate_errors("search", folder=folder.name):
            uids = folder.handle.client.search(["UNSEEN"])
        return sorted(int(uid) for uid in uids)

    def fetch_raw(self, folder: FolderRef, uid: int) -> Optional[RawMessage]:
        with _translate_errors("fetch", folder=folder.name, uid=uid):
            response = folder.handle.client.fetch([uid], ["BODY.PEEK[]", "FLAGS", "INTERNALDATE"])
        data = response.get(uid)
        if not data or b"BODY[]" not in data:
            # Expunged between search and fetch
            return None
        return RawMessage(
            uid=uid,
            folder=folder.name,
            content=data[b"BODY[]"] or b"",
            flags=tuple(data.get(b"FLAGS", ())),
            internal_date=data.get(b"INTERNALDATE"),
        )

    def wait_for_activity(self, handle: ImapHandle, timeout: float) -> bool:
        """Run one IDLE cycle; True when the server reported new mail.

        Returns early when ``interrupt_wait`` is called from another thread.
        """
        client = handle.client
        deadline = time.monotonic() + timeout
        responses: List[Any] = []
        with _translate_errors("idle", host=handle.host):
            client.idle()
            logger.debug(f"IDLE started on {handle.host}")
            try:
                while not handle.wake.is_set():
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        break
                    batch = client.idle_check(timeout=min(IDLE_CHECK_SLICE, remaining))
                    if batch:
                        responses.extend(batch)
                        break
            finally:
                handle.wake.clear()
            _, done_responses = client.idle_done()
            responses.extend(done_responses or [])
        return _detect_activity(responses)

    def interrupt_wait(self, handle: ImapHandle) -> None:
        handle.wake.set()

    def keepalive(self, handle: ImapHandle) -> None:
        with _translate_errors("noop", host=handle.host):
            handle.client.noop()

    def close(self, handle: ImapHandle) -> None:
        handle.wake.set()
        try:
            handle.client.logout()
        except Exception as exc:  # noqa: BLE001
            logger.warning(f"Error during logout from {handle.host}", exc_info=exc)
            self._safe_shutdown(handle.client)

    @staticmethod
    def _safe_shutdown(client: IMAPClient) -> None:
        try:
            client.shutdown()
        except Exception:  # noqa: BLE001
            logger.debug("Socket shutdown after failed session raised", exc_info=True)


def _as_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _detect_activity(responses: List[Any]) -> bool:
    """True if IDLE responses include EXISTS or RECENT."""
    for response in responses:
        if not isinstance(response, (tuple, list)) or len(response) < 2:
            continue
        indicator = response[1]
        if isinstance(indicator, str):
            indicator = indicator.encode()
        if isinstance(indicator, bytes) and indicator.upper() in _ACTIVITY_MARKERS:
            return True
    return False


__all__ = [
    "IDLE_CHECK_SLICE",
    "ImapHandle",
    "ImapTransport",
    "MailboxTransport",
    "RetryStrategy",
]
