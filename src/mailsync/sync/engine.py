"""Wiring from settings to a running sync engine."""

from __future__ import annotations

import asyncio
import logging
import signal
from typing import Optional

from ..classification.classifier import LLMClassifier
from ..configuration.settings import Settings
from ..notifications.channels import SlackChannel, WebhookChannel, is_configured_url
from ..notifications.service import InterestNotifier
from ..search.indexer import ElasticsearchIndexer
from ..storage.store import SqliteMailStore
from .connection_manager import ConnectionManager
from .pipeline import FanoutPipeline
from .transport import ImapTransport, MailboxTransport


logger = logging.getLogger(__name__)


def build_classifier(settings: Settings) -> Optional[LLMClassifier]:
    """Return the configured classifier, or None when it is disabled or has no key."""
    classifier_settings = settings.classifier
    if not classifier_settings.enabled or classifier_settings.api_key is None:
        return None
    return LLMClassifier(
        api_key=classifier_settings.api_key.get_secret_value(),
        base_url=classifier_settings.base_url,
        model=classifier_settings.model,
        timeout=classifier_settings.timeout_seconds,
        temperature=classifier_settings.temperature,
        max_tokens=classifier_settings.max_tokens,
    )


def build_pipeline(settings: Settings, store: SqliteMailStore) -> FanoutPipeline:
    """Assemble the fan-out pipeline; unconfigured collaborators are left out."""
    classifier = build_classifier(settings)
    if classifier is None:
        logger.info("Classifier not configured; messages will be stored uncategorized")

    indexer = None
    if settings.search.enabled:
        indexer = ElasticsearchIndexer(
            settings.search.elasticsearch_node,
            index_name=settings.search.index_name,
            timeout=settings.search.request_timeout_seconds,
        )

    notifications = settings.notifications
    notifier = None
    if is_configured_url(notifications.slack_webhook_url) or is_configured_url(notifications.webhook_url):
        notifier = InterestNotifier(
            store=store,
            slack=SlackChannel(notifications.slack_webhook_url, timeout=notifications.timeout_seconds),
            webhook=WebhookChannel(notifications.webhook_url, timeout=notifications.timeout_seconds),
        )

    return FanoutPipeline(
        store=store,
        classifier=classifier,
        indexer=indexer,
        notifier=notifier,
        positive_category=settings.classifier.positive_category,
        classifier_timeout=settings.sync.classifier_timeout_seconds,
    )


def build_connection_manager(
    settings: Settings,
    *,
    store: Optional[SqliteMailStore] = None,
    transport: Optional[MailboxTransport] = None,
) -> ConnectionManager:
    store = store or SqliteMailStore(settings.storage.db_path)
    transport = transport or ImapTransport(connection_timeout=settings.sync.connect_timeout_seconds)
    return ConnectionManager(
        store=store,
        transport=transport,
        pipeline=build_pipeline(settings, store),
        settings=settings.sync,
    )


async def run_engine(
    manager: ConnectionManager,
    *,
    reconcile_interval: float,
    stop_event: Optional[asyncio.Event] = None,
) -> None:
    """Run until SIGINT/SIGTERM (or ``stop_event``), reconciling periodically."""
    stop_event = stop_event or asyncio.Event()
    loop = asyncio.get_running_loop()
    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            # Not supported off the main thread or on Windows
            logger.debug(f"Signal handler for {sig!r} not installed")

    try:
        await manager.start_all()
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=reconcile_interval)
            except asyncio.TimeoutError:
                pass
            else:
                break
            try:
                await manager.reconcile()
            except Exception as exc:  # noqa: BLE001
                logger.error(f"Reconcile pass failed: {exc}", exc_info=exc)
    finally:
        logger.info("Shutting down sync engine")
        await manager.stop_all()
        for sig in installed:
            loop.remove_signal_handler(sig)


__all__ = ["build_connection_manager", "build_pipeline", "run_engine"]
