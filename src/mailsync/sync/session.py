"""One live connection to one account's mailbox.

A session owns its transport handle and walks the lifecycle in
``state_machine``: connect (with retry), backfill, then listen until it is
stopped or the transport fails. Sessions never retry after ``errored``; the
connection manager drops them and a later ``start`` creates a new one.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, Optional, Set

from ..errors import MailSyncError
from .backfill import BackfillScanner, ScanReport
from .listener import LiveListener
from .models import Account, FolderRef
from .pipeline import IngestOutcome
from .state_machine import SessionState, SessionStateMachine
from .transport import MailboxTransport, RetryStrategy


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionInfo:
    """Point-in-time view of a session for listing."""

    account_id: str
    email: str
    state: SessionState
    folder: str
    started_at: datetime
    ingested: int
    duplicates: int
    failed: int
    last_error: Optional[str] = None


class MailboxSession:
    """Lifecycle and serialized command access for one account."""

    def __init__(
        self,
        account: Account,
        *,
        transport: MailboxTransport,
        backfill: BackfillScanner,
        listener: Optional[LiveListener] = None,
        retry_strategy: Optional[RetryStrategy] = None,
    ) -> None:
        self.account = account
        self.transport = transport
        self.backfill = backfill
        self.listener = listener
        self.retry_strategy = retry_strategy or RetryStrategy()
        self.machine = SessionStateMachine(account.id)

        self.handle: Any = None
        self.folder_ref: Optional[FolderRef] = None
        self.stop_event = asyncio.Event()
        self.started_at = datetime.now(timezone.utc)
        self.last_scan: Optional[ScanReport] = None
        self.last_error: Optional[BaseException] = None
        self.counters: Dict[str, int] = {outcome.value: 0 for outcome in IngestOutcome}

        self._command_lock = asyncio.Lock()
        self._closed = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._seen_uids: Set[int] = set()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self.machine.state

    @property
    def closing(self) -> bool:
        return self.stop_event.is_set() or self.state in {
            SessionState.STOPPING,
            SessionState.ERRORED,
        }

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    @property
    def errored(self) -> bool:
        return any(t.to_state == SessionState.ERRORED for t in self.machine.history)

    @property
    def command_in_flight(self) -> bool:
        return self._command_lock.locked()

    @property
    def task(self) -> Optional[asyncio.Task]:
        return self._task

    def info(self) -> SessionInfo:
        return SessionInfo(
            account_id=self.account.id,
            email=self.account.email,
            state=self.state,
            folder=self.folder_ref.name if self.folder_ref else self.account.folder,
            started_at=self.started_at,
            ingested=self.counters[IngestOutcome.INGESTED.value],
            duplicates=self.counters[IngestOutcome.DUPLICATE.value],
            failed=self.counters[IngestOutcome.PARSE_FAILED.value]
            + self.counters[IngestOutcome.PERSIST_FAILED.value],
            last_error=str(self.last_error) if self.last_error else None,
        )

    def has_seen(self, uid: int) -> bool:
        return uid in self._seen_uids

    def mark_seen(self, uid: int) -> None:
        self._seen_uids.add(uid)

    def retain_seen(self, unseen_uids: Iterable[int]) -> None:
        """Forget uids the server no longer reports as unseen.

        Keeps the set bounded by the folder's unseen count. A message marked
        unread again is refetched and stopped by the dedup gate.
        """
        self._seen_uids.intersection_update(unseen_uids)

    def set_folder(self, folder: FolderRef) -> None:
        previous = self.folder_ref
        if (
            previous is not None
            and folder.uidvalidity is not None
            and previous.uidvalidity != folder.uidvalidity
        ):
            # Old uids name different messages under a new UIDVALIDITY
            logger.info(
                f"UIDVALIDITY changed for {self.account.email}/{folder.name}, "
                f"forgetting {len(self._seen_uids)} seen uid(s)",
                extra={"account_id": self.account.id, "folder": folder.name},
            )
            self._seen_uids.clear()
        self.folder_ref = folder

    def record_outcome(self, uid: int, outcome: IngestOutcome) -> None:
        self.counters[outcome.value] += 1
        # Persist failures stay eligible for the next poll
        if outcome != IngestOutcome.PERSIST_FAILED:
            self._seen_uids.add(uid)

    def _transition(self, to_state: SessionState, reason: Optional[str] = None) -> None:
        self.machine.transition(to_state, reason=reason)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def execute(self, func: Callable[..., Any], *args: Any) -> Any:
        """Run a blocking transport call in a worker thread.

        One command runs at a time per session. If the caller is cancelled
        the lock is held until the worker thread returns, so teardown never
        overlaps a running command.
        """
        async with self._command_lock:
            loop = asyncio.get_running_loop()
            future = loop.run_in_executor(None, functools.partial(func, *args))
            try:
                return await asyncio.shield(future)
            except asyncio.CancelledError:
                await asyncio.wait({future})
                if not future.cancelled():
                    # Consume the result so it is not reported as unretrieved
                    future.exception()
                raise

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, on_done: Optional[Callable[["MailboxSession", asyncio.Task], None]] = None) -> asyncio.Task:
        if self._task is not None:
            raise RuntimeError(f"Session for {self.account.id} already started")
        self._task = asyncio.get_running_loop().create_task(
            self.run(), name=f"mailsync-session-{self.account.id}"
        )
        if on_done is not None:
            self._task.add_done_callback(functools.partial(on_done, self))
        return self._task

    async def run(self) -> None:
        account = self.account
        try:
            if self.stop_event.is_set():
                return
            self._transition(SessionState.CONNECTING)
            self.handle = await self._connect_with_retry()
            if self.stop_event.is_set():
                return

            self._transition(SessionState.BACKFILLING)
            self.last_scan = await self.backfill.scan(self)
            if self.stop_event.is_set() or self.listener is None:
                return

            self._transition(SessionState.LISTENING)
            await self.listener.run(self)
        except Exception as exc:  # noqa: BLE001
            self.last_error = exc
            if self.stop_event.is_set():
                logger.debug(
                    f"Session {account.id} raised while stopping: {exc}",
                    extra={"account_id": account.id},
                )
            else:
                logger.error(
                    f"Session for {account.email} failed in {self.state.value}: {exc}",
                    extra={"account_id": account.id, "state": self.state.value},
                    exc_info=not isinstance(exc, MailSyncError),
                )
                if self.machine.can_transition(SessionState.ERRORED):
                    self._transition(SessionState.ERRORED, reason=str(exc))
        finally:
            await self._teardown()

    async def _connect_with_retry(self) -> Any:
        retry_count = 0
        while True:
            try:
                return await self.execute(self.transport.connect, self.account.endpoint)
            except Exception as exc:  # noqa: BLE001
                if self.stop_event.is_set() or not self.retry_strategy.should_retry(retry_count, exc):
                    raise
                delay = self.retry_strategy.calculate_delay(retry_count)
                retry_count += 1
                logger.warning(
                    f"Connect to {self.account.endpoint.host} failed, retrying in {delay:.1f}s "
                    f"(attempt {retry_count}): {exc}",
                    extra={"account_id": self.account.id},
                )
                try:
                    await asyncio.wait_for(self.stop_event.wait(), timeout=delay)
                except asyncio.TimeoutError:
                    continue
                raise

    async def _teardown(self) -> None:
        if self.state not in {
            SessionState.STOPPING,
            SessionState.ERRORED,
            SessionState.DISCONNECTED,
        }:
            self._transition(SessionState.STOPPING)

        if self.handle is not None:
            handle, self.handle = self.handle, None
            try:
                await self.execute(self.transport.close, handle)
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    f"Error closing transport for {self.account.id}: {exc}",
                    extra={"account_id": self.account.id},
                )
        self.folder_ref = None

        if self.state != SessionState.DISCONNECTED:
            self._transition(SessionState.DISCONNECTED)
        self._closed.set()
        logger.info(
            f"Session for {self.account.email} closed",
            extra={"account_id": self.account.id},
        )

    async def stop(self) -> None:
        """Request shutdown and wait until the transport is torn down.

        Stopping is cooperative: a connect or fetch already running in a
        worker thread finishes first, so its handle is always closed.
        """
        if self._task is None or self._task.done():
            self._closed.set()
            return
        self.stop_event.set()
        if self.listener is not None:
            self.listener.request_stop()
        if self.handle is not None:
            self.transport.interrupt_wait(self.handle)
        await self.wait_closed()

    async def wait_closed(self) -> None:
        if self._task is None:
            return
        # A task cancelled before its first step never reaches teardown
        await asyncio.wait({self._task})
        self._closed.set()


__all__ = ["MailboxSession", "SessionInfo"]
