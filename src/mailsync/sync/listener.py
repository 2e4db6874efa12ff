"""Live-update mode: push-wait, keepalive and poll for one session.

Three timer-driven tasks feed triggers into a queue consumed by a single
processing loop, so only the processing loop ever searches, fetches and
ingests. Every transport command goes through ``MailboxSession.execute``,
which allows one command at a time per handle.

- push: one IDLE cycle at a time, queueing ``push`` when the server reports
  new mail
- keepalive: NOOP every ``keepalive_interval`` unless a command is in flight
- poll: every ``poll_interval`` queues ``poll`` and interrupts the current
  IDLE so it is re-issued once the poll is processed
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, List, Optional

from ..errors import TransportError
from .pipeline import FanoutPipeline

if TYPE_CHECKING:
    from .session import MailboxSession


logger = logging.getLogger(__name__)

PUSH = "push"
POLL = "poll"
_STOP = object()


class LiveListener:
    """Runs until the session is stopped or a transport fault occurs."""

    def __init__(
        self,
        *,
        pipeline: FanoutPipeline,
        idle_timeout: float = 300,
        keepalive_interval: float = 10,
        poll_interval: float = 60,
    ) -> None:
        self.pipeline = pipeline
        self.idle_timeout = idle_timeout
        self.keepalive_interval = keepalive_interval
        self.poll_interval = poll_interval
        self._queue: Optional[asyncio.Queue] = None
        self.keepalive_count = 0
        self.poll_count = 0
        self.push_count = 0

    def request_stop(self) -> None:
        """Wake the processing loop; the session's stop event ends the timers."""
        if self._queue is not None:
            self._queue.put_nowait(_STOP)

    async def run(self, session: "MailboxSession") -> None:
        """Listen until stopped.

        Raises:
            TransportError: If any task fails while the session is not stopping
        """
        self._queue = asyncio.Queue()
        name = session.account.id
        tasks: List[asyncio.Task] = [
            asyncio.create_task(self._push_loop(session), name=f"push-{name}"),
            asyncio.create_task(self._keepalive_loop(session), name=f"keepalive-{name}"),
            asyncio.create_task(self._poll_loop(session), name=f"poll-{name}"),
            asyncio.create_task(self._process_loop(session), name=f"process-{name}"),
        ]
        logger.info(
            f"Listening on {session.account.email}/{session.account.folder}",
            extra={"account_id": name},
        )

        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            self._queue = None

        if session.stop_event.is_set():
            return

        for task in done:
            if task.cancelled():
                continue
            exc = task.exception()
            if exc is None:
                continue
            if isinstance(exc, TransportError):
                raise exc
            raise TransportError(
                f"Listener task {task.get_name()} failed: {exc}",
                details={"account_id": name},
            ) from exc
        raise TransportError(
            "Listener stopped unexpectedly",
            details={"account_id": name},
        )

    async def _wait_or_stop(self, session: "MailboxSession", interval: float) -> bool:
        """Sleep ``interval``; True if the session was stopped meanwhile."""
        try:
            await asyncio.wait_for(session.stop_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            return False
        return True

    async def _push_loop(self, session: "MailboxSession") -> None:
        transport = session.transport
        while not session.stop_event.is_set():
            # Let queued triggers run before the next IDLE takes the handle
            await self._queue.join()
            if session.stop_event.is_set():
                break
            signalled = await session.execute(
                transport.wait_for_activity, session.handle, self.idle_timeout
            )
            if signalled and not session.stop_event.is_set():
                self.push_count += 1
                logger.debug(
                    f"New mail signalled for {session.account.email}",
                    extra={"account_id": session.account.id},
                )
                self._queue.put_nowait(PUSH)

    async def _keepalive_loop(self, session: "MailboxSession") -> None:
        while not await self._wait_or_stop(session, self.keepalive_interval):
            if session.command_in_flight:
                # An IDLE or fetch is already keeping the connection busy
                continue
            await session.execute(session.transport.keepalive, session.handle)
            self.keepalive_count += 1

    async def _poll_loop(self, session: "MailboxSession") -> None:
        while not await self._wait_or_stop(session, self.poll_interval):
            self.poll_count += 1
            self._queue.put_nowait(POLL)
            session.transport.interrupt_wait(session.handle)

    async def _process_loop(self, session: "MailboxSession") -> None:
        while True:
            trigger = await self._queue.get()
            try:
                if trigger is _STOP or session.stop_event.is_set():
                    return
                await self._process(session, trigger)
            finally:
                self._queue.task_done()

    async def _process(self, session: "MailboxSession", trigger: str) -> None:
        transport = session.transport
        folder = session.folder_ref
        uids = await session.execute(transport.search_unseen, folder)
        session.retain_seen(uids)
        fresh = [uid for uid in uids if not session.has_seen(uid)]
        if fresh:
            logger.info(
                f"{trigger}: {len(fresh)} unseen message(s) for {session.account.email}",
                extra={"account_id": session.account.id, "folder": folder.name},
            )

        for uid in fresh:
            if session.stop_event.is_set():
                return
            raw = await session.execute(transport.fetch_raw, folder, uid)
            if raw is None:
                logger.debug(
                    f"Message uid={uid} vanished before fetch",
                    extra={"account_id": session.account.id, "uid": uid},
                )
                continue
            outcome = await self.pipeline.ingest(session.account, raw)
            session.record_outcome(uid, outcome)


__all__ = ["LiveListener", "POLL", "PUSH"]
