"""Tests for engine wiring and the run loop."""

from __future__ import annotations

import asyncio

import pytest

from mailsync.classification.classifier import LLMClassifier
from mailsync.configuration.settings import Settings, SyncSettings
from mailsync.notifications.service import InterestNotifier
from mailsync.search.indexer import ElasticsearchIndexer
from mailsync.sync.connection_manager import ConnectionManager
from mailsync.sync.engine import (
    build_classifier,
    build_connection_manager,
    build_pipeline,
    run_engine,
)
from mailsync.sync.models import MessageCategory
from mailsync.sync.pipeline import FanoutPipeline
from tests.helpers import FakeTransport, wait_until


def _settings(tmp_path, **sections) -> Settings:
    payload = {"storage": {"db_path": str(tmp_path / "mail.db")}}
    payload.update(sections)
    return Settings.model_validate(payload)


def test_unconfigured_collaborators_are_left_out(tmp_path, store):
    settings = _settings(tmp_path, search={"enabled": False})

    pipeline = build_pipeline(settings, store)

    assert pipeline.classifier is None
    assert pipeline.indexer is None
    assert pipeline.notifier is None


def test_configured_collaborators_are_wired(tmp_path, store):
    settings = _settings(
        tmp_path,
        classifier={"api_key": "sk-test", "positive_category": "Meeting Booked"},
        search={"elasticsearch_node": "http://es.local:9200"},
        notifications={"webhook_url": "https://hooks.example.com/in"},
        sync={"classifier_timeout_seconds": 12},
    )

    pipeline = build_pipeline(settings, store)

    assert isinstance(pipeline.classifier, LLMClassifier)
    assert isinstance(pipeline.indexer, ElasticsearchIndexer)
    assert isinstance(pipeline.notifier, InterestNotifier)
    assert pipeline.positive_category == MessageCategory.MEETING_BOOKED
    assert pipeline.classifier_timeout == 12


def test_placeholder_webhooks_disable_notifier(tmp_path, store):
    settings = _settings(
        tmp_path,
        search={"enabled": False},
        notifications={"slack_webhook_url": "https://hooks.slack.com/services/your_slack_webhook"},
    )
    assert build_pipeline(settings, store).notifier is None


def test_build_connection_manager_uses_given_transport(tmp_path, store):
    transport = FakeTransport()
    manager = build_connection_manager(
        _settings(tmp_path, sync={"backfill_days": 5}),
        store=store,
        transport=transport,
    )

    assert manager.transport is transport
    assert manager.store is store
    assert manager.settings.backfill_days == 5


@pytest.mark.asyncio
async def test_run_engine_reconciles_until_stopped(store, account):
    manager = ConnectionManager(
        store=store,
        transport=FakeTransport(),
        pipeline=FanoutPipeline(store=store),
        settings=SyncSettings(idle_timeout_seconds=0.5, poll_interval_seconds=5),
    )
    stop_event = asyncio.Event()

    task = asyncio.create_task(run_engine(manager, reconcile_interval=0.05, stop_event=stop_event))
    await wait_until(lambda: account.id in manager)

    store.set_sync_enabled(account.id, False)
    await wait_until(lambda: account.id not in manager)

    store.set_sync_enabled(account.id, True)
    await wait_until(lambda: account.id in manager)

    stop_event.set()
    await asyncio.wait_for(task, timeout=3)
    assert len(manager) == 0


def test_build_classifier_needs_key_and_enabled_flag(tmp_path):
    assert build_classifier(_settings(tmp_path)) is None
    assert build_classifier(_settings(tmp_path, classifier={"api_key": "sk-test", "enabled": False})) is None

    classifier = build_classifier(_settings(tmp_path, classifier={"api_key": "sk-test"}))
    assert isinstance(classifier, LLMClassifier)
