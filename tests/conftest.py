"""Shared fixtures for mailsync tests."""

from __future__ import annotations

import os

import pytest
from pydantic import SecretStr

# Never touch the developer's real keyring from tests
os.environ.setdefault("PYTHON_KEYRING_BACKEND", "keyring.backends.null.Keyring")

from mailsync.storage.store import SqliteMailStore  # noqa: E402
from mailsync.sync.models import Account, ImapEndpoint  # noqa: E402
from tests.helpers import FakeTransport  # noqa: E402


@pytest.fixture(autouse=True)
def _clear_mailsync_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in list(os.environ):
        if name.startswith("MAILSYNC_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture
def account() -> Account:
    return Account(
        id="acct-1",
        user_id="user-1",
        email="bob@example.com",
        endpoint=ImapEndpoint(
            host="imap.example.com",
            username="bob@example.com",
            password=SecretStr("app-password"),
        ),
    )


@pytest.fixture
def store(tmp_path, account):
    mail_store = SqliteMailStore(tmp_path / "mailsync.db")
    mail_store.add_account(account)
    yield mail_store
    mail_store.close()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()
