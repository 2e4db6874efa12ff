"""Registry of live mailbox sessions, at most one per account id.

The registry lock protects only the mapping itself. Connecting, backfilling
and listening happen inside each session's own task, so a slow account never
blocks ``start`` or ``stop`` for another.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Set

from ..configuration.settings import SyncSettings
from ..errors import AccountNotFoundError, SessionActiveError
from ..storage.store import AccountStore
from .backfill import BackfillScanner
from .listener import LiveListener
from .models import Account
from .pipeline import FanoutPipeline
from .session import MailboxSession, SessionInfo
from .transport import MailboxTransport, RetryStrategy


logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConnectionManager:
    """Owns every active ``MailboxSession``."""

    def __init__(
        self,
        *,
        store: AccountStore,
        transport: MailboxTransport,
        pipeline: FanoutPipeline,
        settings: Optional[SyncSettings] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.transport = transport
        self.pipeline = pipeline
        self.settings = settings or SyncSettings()
        self._clock = clock
        self._sessions: Dict[str, MailboxSession] = {}
        self._errored: Set[str] = set()
        self._lock = asyncio.Lock()

    def _create_session(self, account: Account, *, listen: bool = True) -> MailboxSession:
        settings = self.settings
        backfill = BackfillScanner(
            pipeline=self.pipeline,
            store=self.store,
            backfill_days=settings.backfill_days,
            clock=self._clock,
        )
        listener = None
        if listen:
            listener = LiveListener(
                pipeline=self.pipeline,
                idle_timeout=settings.idle_timeout_seconds,
                keepalive_interval=settings.keepalive_interval_seconds,
                poll_interval=settings.poll_interval_seconds,
            )
        return MailboxSession(
            account,
            transport=self.transport,
            backfill=backfill,
            listener=listener,
            retry_strategy=RetryStrategy(max_retries=settings.connect_max_retries),
        )

    def _on_session_done(self, session: MailboxSession, task: asyncio.Task) -> None:
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                f"Session task for {session.account.id} ended with an exception",
                exc_info=task.exception(),
            )
        if self._sessions.get(session.account.id) is session:
            del self._sessions[session.account.id]
            if session.errored and session.listener is not None:
                # Held back from reconcile until started explicitly or re-enabled
                self._errored.add(session.account.id)
            logger.debug(
                f"Session for {session.account.id} removed from registry",
                extra={"account_id": session.account.id},
            )

    @property
    def errored_accounts(self) -> Set[str]:
        return set(self._errored)

    async def start(self, account: Account) -> MailboxSession:
        """Start a session for ``account``; returns the existing one if live.

        An explicit start also clears a previous ``errored`` outcome.
        """
        self._errored.discard(account.id)
        while True:
            async with self._lock:
                existing = self._sessions.get(account.id)
                if existing is None or existing.closed:
                    session = self._create_session(account)
                    self._sessions[account.id] = session
                    session.start(on_done=self._on_session_done)
                    logger.info(
                        f"Started session for {account.email}",
                        extra={"account_id": account.id},
                    )
                    return session
                if not existing.closing:
                    logger.info(
                        f"Session for {account.email} already running",
                        extra={"account_id": account.id},
                    )
                    return existing
            # A previous session is still tearing down; wait outside the lock
            await existing.wait_closed()

    async def start_account(self, account_id: str) -> MailboxSession:
        """Load ``account_id`` from the store and start it.

        Raises:
            AccountNotFoundError: If the store has no such account
        """
        account = self.store.get_account(account_id)
        if account is None:
            raise AccountNotFoundError(
                f"Account {account_id} not found", details={"account_id": account_id}
            )
        return await self.start(account)

    async def stop(self, account_id: str) -> bool:
        """Stop and remove a session; False if none was active."""
        session = self._sessions.get(account_id)
        if session is None:
            return False
        await session.stop()
        async with self._lock:
            if self._sessions.get(account_id) is session:
                del self._sessions[account_id]
        logger.info(f"Stopped session for {account_id}", extra={"account_id": account_id})
        return True

    async def start_all(self) -> List[str]:
        """Start every sync-enabled account; one failure never blocks the rest."""
        try:
            accounts = self.store.list_sync_enabled_accounts()
        except Exception as exc:  # noqa: BLE001
            logger.error(f"Failed to load sync-enabled accounts: {exc}", exc_info=exc)
            return []

        started: List[str] = []
        for account in accounts:
            try:
                await self.start(account)
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    f"Failed to start session for {account.id}: {exc}",
                    extra={"account_id": account.id},
                    exc_info=exc,
                )
                continue
            started.append(account.id)
        logger.info(f"Started {len(started)} of {len(accounts)} sync-enabled account(s)")
        return started

    async def reconcile(self) -> Dict[str, List[str]]:
        """Align the registry with the store's sync-enabled accounts.

        Accounts whose last session errored are not restarted. Disabling such
        an account clears the mark, so enabling it again starts a new session.
        """
        accounts = {account.id: account for account in self.store.list_sync_enabled_accounts()}
        active = set(self._sessions)
        self._errored &= set(accounts)

        stopped: List[str] = []
        for account_id in sorted(active - set(accounts)):
            await self.stop(account_id)
            stopped.append(account_id)

        started: List[str] = []
        for account_id in sorted(set(accounts) - active - self._errored):
            try:
                await self.start(accounts[account_id])
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    f"Failed to start session for {account_id}: {exc}",
                    extra={"account_id": account_id},
                    exc_info=exc,
                )
                continue
            started.append(account_id)

        if started or stopped:
            logger.info(f"Reconciled sessions: started={started} stopped={stopped}")
        return {"started": started, "stopped": stopped}

    def list_sessions(self) -> List[SessionInfo]:
        return [self._sessions[key].info() for key in sorted(self._sessions)]

    def get_session(self, account_id: str) -> Optional[MailboxSession]:
        return self._sessions.get(account_id)

    def __contains__(self, account_id: object) -> bool:
        return account_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    async def stop_all(self) -> None:
        await asyncio.gather(*(self.stop(account_id) for account_id in list(self._sessions)))

    async def sync_once(self, account_id: str) -> MailboxSession:
        """Connect, run one backfill pass and disconnect.

        The one-shot session is registered while it runs, so it counts as the
        account's single live session.

        Raises:
            AccountNotFoundError: If the store has no such account
            SessionActiveError: If the account already has a live session
        """
        account = self.store.get_account(account_id)
        if account is None:
            raise AccountNotFoundError(
                f"Account {account_id} not found", details={"account_id": account_id}
            )
        async with self._lock:
            existing = self._sessions.get(account_id)
            if existing is not None and not existing.closed:
                raise SessionActiveError(
                    f"Account {account_id} already has a {existing.state.value} session",
                    details={"account_id": account_id, "state": existing.state.value},
                )
            session = self._create_session(account, listen=False)
            self._sessions[account_id] = session
            session.start(on_done=self._on_session_done)
        await session.wait_closed()
        async with self._lock:
            if self._sessions.get(account_id) is session:
                del self._sessions[account_id]
        return session


__all__ = ["ConnectionManager"]
