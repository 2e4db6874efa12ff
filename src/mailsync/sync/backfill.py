"""Bounded historical backfill run once per session activation."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Callable, Optional

from ..storage.store import AccountStore
from .pipeline import FanoutPipeline, IngestOutcome

if TYPE_CHECKING:
    from .session import MailboxSession


logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ScanReport:
    """Counts from one backfill pass."""

    cutoff: datetime
    candidates: int = 0
    matched: int = 0
    ingested: int = 0
    duplicates: int = 0
    failed: int = 0
    before_cutoff: int = 0
    vanished: int = 0
    interrupted: bool = False
    completed_at: Optional[datetime] = field(default=None)

    def record(self, outcome: IngestOutcome) -> None:
        if outcome == IngestOutcome.INGESTED:
            self.ingested += 1
        elif outcome == IngestOutcome.DUPLICATE:
            self.duplicates += 1
        else:
            self.failed += 1


class BackfillScanner:
    """Drains the last ``backfill_days`` of a folder through the pipeline.

    The folder is opened read-only and messages are fetched with
    ``BODY.PEEK[]``, so scanning never marks anything as read. IMAP ``SINCE``
    matches whole days; the exact cutoff is applied on INTERNALDATE.
    """

    def __init__(
        self,
        *,
        pipeline: FanoutPipeline,
        store: AccountStore,
        backfill_days: int = 30,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.pipeline = pipeline
        self.store = store
        self.backfill_days = backfill_days
        self._clock = clock

    def cutoff_for(self, activated_at: datetime) -> datetime:
        return activated_at - timedelta(days=self.backfill_days)

    async def scan(self, session: "MailboxSession") -> ScanReport:
        account = session.account
        transport = session.transport
        activated_at = self._clock()
        cutoff = self.cutoff_for(activated_at)
        report = ScanReport(cutoff=cutoff)

        folder = await session.execute(transport.open_folder, session.handle, account.folder, True)
        session.set_folder(folder)

        uids = await session.execute(transport.search_since, folder, cutoff)
        report.candidates = len(uids)
        if not uids:
            logger.info(
                f"Backfill for {account.email}: no messages since {cutoff.isoformat()}",
                extra={"account_id": account.id, "folder": account.folder},
            )

        for uid in uids:
            if session.stop_event.is_set():
                report.interrupted = True
                break

            raw = await session.execute(transport.fetch_raw, folder, uid)
            if raw is None:
                report.vanished += 1
                logger.debug(
                    f"Message uid={uid} vanished before fetch",
                    extra={"account_id": account.id, "uid": uid},
                )
                continue

            if raw.internal_date is not None and _as_utc(raw.internal_date) < cutoff:
                report.before_cutoff += 1
                session.mark_seen(uid)
                continue

            report.matched += 1
            outcome = await self.pipeline.ingest(account, raw)
            report.record(outcome)
            session.record_outcome(uid, outcome)

        if not report.interrupted:
            report.completed_at = activated_at
            try:
                self.store.update_last_synced(account.id, activated_at)
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    f"Failed to update last synced time for {account.id}: {exc}",
                    extra={"account_id": account.id},
                    exc_info=exc,
                )

        logger.info(
            f"Backfill for {account.email}: {report.matched} matched, "
            f"{report.ingested} ingested, {report.duplicates} duplicates, "
            f"{report.failed} failed",
            extra={"account_id": account.id, "folder": account.folder},
        )
        return report


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


__all__ = ["BackfillScanner", "ScanReport"]
