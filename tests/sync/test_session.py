"""Tests for mailbox session lifecycle and live listening."""

from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timedelta, timezone

import pytest

from mailsync.errors import AuthenticationError, TransportError
from mailsync.sync.backfill import BackfillScanner
from mailsync.sync.listener import LiveListener
from mailsync.sync.models import FolderRef
from mailsync.sync.pipeline import FanoutPipeline, IngestOutcome
from mailsync.sync.session import MailboxSession
from mailsync.sync.state_machine import SessionState
from mailsync.sync.transport import RetryStrategy
from tests.helpers import FakeTransport, make_raw, wait_until


def _recent(days: float = 1) -> datetime:
    return datetime.now(timezone.utc) - timedelta(days=days)


def _session(
    account,
    store,
    transport: FakeTransport,
    *,
    listen: bool = True,
    idle_timeout: float = 0.5,
    keepalive_interval: float = 5,
    poll_interval: float = 5,
    retry_strategy: RetryStrategy = None,
) -> MailboxSession:
    pipeline = FanoutPipeline(store=store)
    listener = None
    if listen:
        listener = LiveListener(
            pipeline=pipeline,
            idle_timeout=idle_timeout,
            keepalive_interval=keepalive_interval,
            poll_interval=poll_interval,
        )
    return MailboxSession(
        account,
        transport=transport,
        backfill=BackfillScanner(pipeline=pipeline, store=store),
        listener=listener,
        retry_strategy=retry_strategy or RetryStrategy(base_delay=0.01, jitter=False),
    )


def _states(session: MailboxSession):
    return [t.to_state for t in session.machine.history]


@pytest.mark.asyncio
async def test_session_backfills_listens_and_ingests_pushed_mail(store, account):
    transport = FakeTransport([make_raw(1, internal_date=_recent())])
    session = _session(account, store, transport)

    session.start()
    await wait_until(lambda: session.state == SessionState.LISTENING)
    assert store.count_messages(account.id) == 1
    assert session.last_scan.ingested == 1

    transport.deliver(make_raw(2, internal_date=_recent(0)))
    await wait_until(lambda: store.count_messages(account.id) == 2)
    assert session.listener.push_count >= 1

    await session.stop()

    assert session.closed
    assert session.state == SessionState.DISCONNECTED
    assert _states(session) == [
        SessionState.CONNECTING,
        SessionState.BACKFILLING,
        SessionState.LISTENING,
        SessionState.STOPPING,
        SessionState.DISCONNECTED,
    ]
    assert transport.calls["close"] == 1
    assert transport.handles[0].closed


@pytest.mark.asyncio
async def test_poll_finds_mail_when_push_is_silent(store, account):
    transport = FakeTransport()
    session = _session(account, store, transport, poll_interval=0.1)

    session.start()
    await wait_until(lambda: session.state == SessionState.LISTENING)
    transport.add(make_raw(5))

    await wait_until(lambda: store.count_messages(account.id) == 1)
    assert session.listener.poll_count >= 1
    assert session.listener.push_count == 0

    await session.stop()


@pytest.mark.asyncio
async def test_message_seen_in_backfill_is_not_refetched(store, account):
    transport = FakeTransport([make_raw(1, internal_date=_recent())])
    session = _session(account, store, transport, poll_interval=0.05)

    session.start()
    await wait_until(lambda: session.state == SessionState.LISTENING)
    fetches_after_backfill = transport.calls["fetch_raw"]
    await wait_until(lambda: session.listener.poll_count >= 2)
    await session.stop()

    assert transport.calls["fetch_raw"] == fetches_after_backfill
    assert session.counters[IngestOutcome.DUPLICATE.value] == 0


@pytest.mark.asyncio
async def test_poll_forgets_uids_no_longer_unseen(store, account):
    transport = FakeTransport(
        [
            make_raw(1, internal_date=_recent(), flags=(b"\\Seen",)),
            make_raw(2, internal_date=_recent()),
        ]
    )
    session = _session(account, store, transport, poll_interval=0.05)

    session.start()
    await wait_until(lambda: session.state == SessionState.LISTENING)
    await wait_until(lambda: session.listener.poll_count >= 1 and not session.has_seen(1))
    await session.stop()

    assert session.last_scan.ingested == 2
    assert session.has_seen(2)


@pytest.mark.asyncio
async def test_uidvalidity_change_forgets_seen_uids(store, account, transport):
    session = _session(account, store, transport, listen=False)
    session.set_folder(FolderRef(handle=None, name="INBOX", uidvalidity=7))
    session.mark_seen(1)

    session.set_folder(FolderRef(handle=None, name="INBOX", uidvalidity=7))
    assert session.has_seen(1)

    session.set_folder(FolderRef(handle=None, name="INBOX", uidvalidity=8))
    assert not session.has_seen(1)
    assert session.folder_ref.uidvalidity == 8


@pytest.mark.asyncio
async def test_keepalive_runs_while_handle_is_free(store, account):
    transport = FakeTransport()
    session = _session(account, store, transport, listen=False)
    session.handle = transport.connect(account.endpoint)
    listener = LiveListener(pipeline=FanoutPipeline(store=store), keepalive_interval=0.02)

    task = asyncio.create_task(listener._keepalive_loop(session))
    await wait_until(lambda: transport.calls["keepalive"] >= 2)
    session.stop_event.set()
    await task

    assert listener.keepalive_count == transport.calls["keepalive"]


@pytest.mark.asyncio
async def test_keepalive_skipped_while_command_in_flight(store, account):
    transport = FakeTransport()
    session = _session(account, store, transport, listen=False)
    session.handle = transport.connect(account.endpoint)
    listener = LiveListener(pipeline=FanoutPipeline(store=store), keepalive_interval=0.02)
    gate = threading.Event()

    busy = asyncio.create_task(session.execute(gate.wait, 5))
    await wait_until(lambda: session.command_in_flight)
    task = asyncio.create_task(listener._keepalive_loop(session))
    await asyncio.sleep(0.15)

    assert transport.calls["keepalive"] == 0

    gate.set()
    await busy
    session.stop_event.set()
    await task


@pytest.mark.asyncio
async def test_stop_while_listening_silences_every_timer(store, account):
    transport = FakeTransport()
    session = _session(account, store, transport, keepalive_interval=0.02, poll_interval=0.05)

    session.start()
    await wait_until(lambda: session.state == SessionState.LISTENING)
    await wait_until(lambda: session.listener.poll_count >= 1)
    await session.stop()

    snapshot = dict(transport.calls)
    await asyncio.sleep(0.2)

    assert dict(transport.calls) == snapshot
    assert session.task.done()


@pytest.mark.asyncio
async def test_transport_fault_moves_session_to_errored(store, account):
    transport = FakeTransport()
    session = _session(account, store, transport)

    session.start()
    await wait_until(lambda: session.state == SessionState.LISTENING)
    transport.idle_error = TransportError("connection reset by peer")
    await asyncio.wait_for(session.wait_closed(), timeout=3)

    assert isinstance(session.last_error, TransportError)
    assert _states(session)[-2:] == [SessionState.ERRORED, SessionState.DISCONNECTED]
    assert SessionState.STOPPING not in _states(session)
    assert transport.calls["close"] == 1


@pytest.mark.asyncio
async def test_authentication_failure_is_not_retried(store, account):
    transport = FakeTransport(connect_errors=[AuthenticationError("bad password")] * 3)
    session = _session(
        account,
        store,
        transport,
        retry_strategy=RetryStrategy(max_retries=3, base_delay=0.01, jitter=False),
    )

    session.start()
    await asyncio.wait_for(session.wait_closed(), timeout=3)

    assert transport.calls["connect"] == 1
    assert isinstance(session.last_error, AuthenticationError)
    assert _states(session) == [
        SessionState.CONNECTING,
        SessionState.ERRORED,
        SessionState.DISCONNECTED,
    ]
    assert session.info().last_error == "bad password"


@pytest.mark.asyncio
async def test_transient_connect_failure_is_retried(store, account):
    transport = FakeTransport(connect_errors=[TransportError("timed out")])
    session = _session(account, store, transport)

    session.start()
    await wait_until(lambda: session.state == SessionState.LISTENING)

    assert transport.calls["connect"] == 2
    await session.stop()


@pytest.mark.asyncio
async def test_stop_during_connect_closes_the_new_handle(store, account):
    transport = FakeTransport()
    transport.connect_gate = threading.Event()
    session = _session(account, store, transport)

    session.start()
    await wait_until(lambda: transport.calls["connect"] == 1)
    stopping = asyncio.create_task(session.stop())
    await asyncio.sleep(0.05)
    assert not stopping.done()

    transport.connect_gate.set()
    await asyncio.wait_for(stopping, timeout=3)

    assert transport.handles[0].closed
    assert _states(session) == [
        SessionState.CONNECTING,
        SessionState.STOPPING,
        SessionState.DISCONNECTED,
    ]


@pytest.mark.asyncio
async def test_stop_before_task_runs_never_connects(store, account):
    transport = FakeTransport()
    session = _session(account, store, transport)

    session.start()
    await session.stop()

    assert session.closed
    assert transport.calls["connect"] == 0
    assert session.state == SessionState.DISCONNECTED


@pytest.mark.asyncio
async def test_backfill_only_session_disconnects_after_scan(store, account):
    transport = FakeTransport([make_raw(1, internal_date=_recent())])
    session = _session(account, store, transport, listen=False)

    session.start()
    await asyncio.wait_for(session.wait_closed(), timeout=3)

    assert session.last_scan.ingested == 1
    assert _states(session) == [
        SessionState.CONNECTING,
        SessionState.BACKFILLING,
        SessionState.STOPPING,
        SessionState.DISCONNECTED,
    ]


@pytest.mark.asyncio
async def test_info_reports_counters(store, account):
    transport = FakeTransport(
        [make_raw(1, internal_date=_recent()), make_raw(2, internal_date=_recent())]
    )
    session = _session(account, store, transport)

    session.start()
    await wait_until(lambda: session.state == SessionState.LISTENING)
    info = session.info()
    await session.stop()

    assert info.account_id == account.id
    assert info.email == account.email
    assert info.folder == "INBOX"
    assert info.state == SessionState.LISTENING
    assert info.ingested == 2
    assert info.failed == 0
    assert info.last_error is None


@pytest.mark.asyncio
async def test_session_cannot_be_started_twice(store, account):
    session = _session(account, store, FakeTransport())
    session.start()
    with pytest.raises(RuntimeError):
        session.start()
    await session.stop()
