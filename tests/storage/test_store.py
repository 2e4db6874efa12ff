"""Tests for the SQLite account and message store."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from mailsync.errors import DuplicateMessageError
from mailsync.storage.store import AccountStore, SqliteMailStore
from mailsync.sync.models import (
    DeliveryAttempt,
    DeliveryStatus,
    EmailAddress,
    Message,
    MessageCategory,
)


NOW = datetime(2024, 3, 1, 8, 0, tzinfo=timezone.utc)


def _message(account_id: str = "acct-1", message_id: str = "m1@example.com", **overrides) -> Message:
    fields = dict(
        account_id=account_id,
        message_id=message_id,
        uid=1,
        subject="Hello",
        from_address="alice@example.com",
        from_name="Alice",
        to_addresses=[EmailAddress(address="bob@example.com", name="Bob")],
        folder="INBOX",
        body_text="Hi",
        received_at=NOW,
        ingested_at=NOW,
    )
    fields.update(overrides)
    return Message(**fields)


def test_store_satisfies_protocol(store):
    assert isinstance(store, AccountStore)


def test_account_round_trip(store, account):
    loaded = store.get_account(account.id)

    assert loaded.email == account.email
    assert loaded.endpoint.host == "imap.example.com"
    assert loaded.endpoint.port == 993
    assert loaded.endpoint.password.get_secret_value() == "app-password"
    assert loaded.folder == "INBOX"
    assert loaded.sync_enabled is True
    assert loaded.last_synced_at is None
    assert store.get_account("missing") is None


def test_add_account_upserts(store, account):
    store.add_account(account.model_copy(update={"folder": "Sales"}))
    assert [a.folder for a in store.list_accounts()] == ["Sales"]


def test_sync_enabled_filter_and_toggle(store, account):
    store.add_account(account.model_copy(update={"id": "acct-2", "sync_enabled": False}))

    assert [a.id for a in store.list_sync_enabled_accounts()] == ["acct-1"]
    assert store.set_sync_enabled("acct-2", True) is True
    assert [a.id for a in store.list_sync_enabled_accounts()] == ["acct-1", "acct-2"]
    assert store.set_sync_enabled("missing", True) is False


def test_update_last_synced(store, account):
    store.update_last_synced(account.id, NOW)
    assert store.get_account(account.id).last_synced_at == NOW


def test_insert_assigns_id_and_round_trips(store, account):
    stored = store.insert_message(_message())

    assert stored.id is not None
    found = store.find_message(account.id, "m1@example.com")
    assert found == stored
    assert found.to_addresses[0].name == "Bob"


def test_duplicate_insert_raises(store, account):
    store.insert_message(_message())
    with pytest.raises(DuplicateMessageError):
        store.insert_message(_message(uid=2))
    assert store.count_messages(account.id) == 1


def test_message_id_is_scoped_per_account(store, account):
    store.add_account(account.model_copy(update={"id": "acct-2"}))
    store.insert_message(_message())
    store.insert_message(_message(account_id="acct-2"))

    assert store.count_messages() == 2
    assert store.find_message("acct-2", "m1@example.com") is not None


def test_update_message_category(store, account):
    stored = store.insert_message(_message())
    store.update_message_category(stored.id, MessageCategory.MEETING_BOOKED, 0.75)

    found = store.find_message(account.id, stored.message_id)
    assert found.category == MessageCategory.MEETING_BOOKED
    assert found.category_confidence == pytest.approx(0.75)


def test_list_messages_filters_and_orders(store, account):
    older = store.insert_message(_message(message_id="old", received_at=NOW - timedelta(days=1)))
    newer = store.insert_message(_message(message_id="new"))
    store.update_message_category(older.id, MessageCategory.SPAM, 0.9)

    assert [m.message_id for m in store.list_messages(account.id)] == ["new", "old"]
    assert [m.message_id for m in store.list_messages(category=MessageCategory.SPAM)] == ["old"]
    assert [m.message_id for m in store.list_messages(limit=1)] == [newer.message_id]
    assert store.list_messages("acct-2") == []


def test_get_message_by_store_id(store, account):
    stored = store.insert_message(_message())

    loaded = store.get_message(stored.id)

    assert loaded.message_id == "m1@example.com"
    assert loaded.to_addresses[0].address == "bob@example.com"
    assert store.get_message(stored.id + 100) is None


def test_category_counts_include_uncategorized(store, account):
    first = store.insert_message(_message(message_id="a"))
    second = store.insert_message(_message(message_id="b"))
    store.insert_message(_message(message_id="c"))
    store.update_message_category(first.id, MessageCategory.INTERESTED, 0.9)
    store.update_message_category(second.id, MessageCategory.INTERESTED, 0.8)

    counts = store.category_counts()

    assert counts[MessageCategory.INTERESTED] == 2
    assert counts[MessageCategory.SPAM] == 0
    assert counts[None] == 1
    assert sum(store.category_counts("acct-2").values()) == 0


def test_delivery_attempts_are_recorded(store, account):
    stored = store.insert_message(_message())
    attempt = store.record_delivery_attempt(
        DeliveryAttempt(
            message_id=stored.id,
            target="https://hooks.example.com/in",
            status=DeliveryStatus.FAILED,
            response_code=502,
            response_body="bad gateway",
            attempted_at=NOW,
        )
    )

    assert attempt.id is not None
    [loaded] = store.list_delivery_attempts(stored.id)
    assert loaded.status == DeliveryStatus.FAILED
    assert loaded.response_code == 502
    assert loaded.attempted_at == NOW
    assert store.list_delivery_attempts() == [loaded]


def test_store_persists_across_reopen(tmp_path, account):
    path = tmp_path / "nested" / "mail.db"
    first = SqliteMailStore(path)
    first.add_account(account)
    first.insert_message(_message())
    first.close()

    second = SqliteMailStore(path)
    try:
        assert second.count_messages(account.id) == 1
        assert [m.message_id for m in second.iter_messages(account.id)] == ["m1@example.com"]
    finally:
        second.close()
