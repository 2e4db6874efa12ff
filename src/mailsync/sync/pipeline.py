"""Fan-out pipeline: persist a new message, then classify, index and notify.

Each step after persistence is isolated. A classifier timeout leaves the
category unset, an indexer outage never rolls back the stored row, and a
notifier failure is only logged. Blocking collaborators run in worker
threads so one slow HTTP call does not stall other sessions.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

from ..classification.classifier import Classifier
from ..errors import DuplicateMessageError
from ..notifications.service import Notifier
from ..search.indexer import SearchIndexer, message_to_document
from ..storage.store import AccountStore
from .dedup import DedupGate
from .email_parser import ParseFailure, normalize_message
from .models import (
    POSITIVE_INTEREST_CATEGORY,
    Account,
    Classification,
    Message,
    MessageCategory,
    RawMessage,
)


logger = logging.getLogger(__name__)


class IngestOutcome(str, Enum):
    """What happened to one raw message."""

    INGESTED = "ingested"
    DUPLICATE = "duplicate"
    PARSE_FAILED = "parse_failed"
    PERSIST_FAILED = "persist_failed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _short(subject: str) -> str:
    return subject[:50]


class FanoutPipeline:
    """Normalizer, dedup gate and downstream fan-out for one raw message."""

    def __init__(
        self,
        *,
        store: AccountStore,
        classifier: Optional[Classifier] = None,
        indexer: Optional[SearchIndexer] = None,
        notifier: Optional[Notifier] = None,
        dedup: Optional[DedupGate] = None,
        positive_category: MessageCategory = POSITIVE_INTEREST_CATEGORY,
        classifier_timeout: float = 30.0,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.classifier = classifier
        self.indexer = indexer
        self.notifier = notifier
        self.dedup = dedup or DedupGate(store)
        self.positive_category = MessageCategory(positive_category)
        self.classifier_timeout = classifier_timeout
        self._clock = clock

    async def ingest(self, account: Account, raw: RawMessage) -> IngestOutcome:
        result = normalize_message(raw, account_id=account.id, ingested_at=self._clock())
        if isinstance(result, ParseFailure):
            logger.warning(
                f"Skipping unparseable message uid={result.uid}: {result.reason}",
                extra={"account_id": account.id, "folder": result.folder, "uid": result.uid},
            )
            return IngestOutcome.PARSE_FAILED

        message = result.message
        if self.dedup.is_duplicate(message):
            logger.debug(
                f"Message {message.message_id} already ingested",
                extra={"account_id": account.id, "uid": message.uid},
            )
            return IngestOutcome.DUPLICATE

        # Step 1: persist; everything after this is best effort
        try:
            stored = self.store.insert_message(message)
        except DuplicateMessageError:
            logger.debug(
                f"Lost insert race for {message.message_id}",
                extra={"account_id": account.id, "uid": message.uid},
            )
            return IngestOutcome.DUPLICATE
        except Exception as exc:  # noqa: BLE001
            logger.error(
                f"Failed to persist message uid={message.uid}: {exc}",
                extra={"account_id": account.id, "uid": message.uid},
                exc_info=exc,
            )
            return IngestOutcome.PERSIST_FAILED

        logger.info(
            f"Ingested \"{_short(stored.subject)}\" from {stored.from_address or 'unknown sender'}",
            extra={"account_id": account.id, "uid": stored.uid, "message_pk": stored.id},
        )

        # Steps 2 and 3
        classification = await self._classify(stored)
        if classification is not None:
            stored = stored.model_copy(
                update={
                    "category": classification.category,
                    "category_confidence": classification.confidence,
                }
            )
            try:
                self.store.update_message_category(
                    stored.id, classification.category, classification.confidence
                )
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    f"Failed to store category for message {stored.id}: {exc}",
                    extra={"account_id": account.id, "message_pk": stored.id},
                    exc_info=exc,
                )

        # Step 4
        await self._index(stored)

        # Step 5
        if stored.category == self.positive_category:
            await self._notify(stored)

        return IngestOutcome.INGESTED

    async def _classify(self, message: Message) -> Optional[Classification]:
        if self.classifier is None:
            return None
        try:
            classification = await asyncio.wait_for(
                asyncio.to_thread(self.classifier.classify, message.subject, message.body_text),
                timeout=self.classifier_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(
                f"Classifier timed out after {self.classifier_timeout}s for message {message.id}",
                extra={"account_id": message.account_id, "message_pk": message.id},
            )
            return None
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                f"Classification failed for message {message.id}: {exc}",
                extra={"account_id": message.account_id, "message_pk": message.id},
            )
            return None

        logger.info(
            f"Classified message {message.id} as {classification.category.value} "
            f"({classification.confidence:.2f})",
            extra={"account_id": message.account_id, "message_pk": message.id},
        )
        return classification

    async def _index(self, message: Message) -> None:
        if self.indexer is None:
            return
        try:
            await asyncio.to_thread(
                self.indexer.upsert, str(message.id), message_to_document(message)
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                f"Indexing failed for message {message.id}: {exc}",
                extra={"account_id": message.account_id, "message_pk": message.id},
            )

    async def _notify(self, message: Message) -> None:
        if self.notifier is None:
            return
        try:
            await asyncio.to_thread(self.notifier.notify_interest, message)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                f"Interest notification failed for message {message.id}: {exc}",
                extra={"account_id": message.account_id, "message_pk": message.id},
            )


__all__ = ["FanoutPipeline", "IngestOutcome"]
