"""Tests for the session lifecycle state machine."""

from __future__ import annotations

import itertools

import pytest

from mailsync.errors import InvalidStateTransitionError
from mailsync.sync.state_machine import (
    VALID_TRANSITIONS,
    SessionState,
    SessionStateMachine,
)


def test_new_machine_starts_disconnected():
    machine = SessionStateMachine("acct-1")
    assert machine.state == SessionState.DISCONNECTED
    assert machine.history == []


def test_happy_path_records_history():
    machine = SessionStateMachine("acct-1")
    for state in (
        SessionState.CONNECTING,
        SessionState.BACKFILLING,
        SessionState.LISTENING,
        SessionState.STOPPING,
        SessionState.DISCONNECTED,
    ):
        machine.transition(state)

    assert machine.state == SessionState.DISCONNECTED
    assert [t.to_state for t in machine.history] == [
        SessionState.CONNECTING,
        SessionState.BACKFILLING,
        SessionState.LISTENING,
        SessionState.STOPPING,
        SessionState.DISCONNECTED,
    ]
    assert all(t.account_id == "acct-1" for t in machine.history)


def test_errored_path_ends_disconnected():
    machine = SessionStateMachine("acct-1")
    machine.transition(SessionState.CONNECTING)
    record = machine.transition(SessionState.ERRORED, reason="login refused")
    machine.transition(SessionState.DISCONNECTED)

    assert record.reason == "login refused"
    assert machine.state == SessionState.DISCONNECTED


def test_listening_cannot_go_back_to_backfilling():
    machine = SessionStateMachine("acct-1", initial=SessionState.LISTENING)

    with pytest.raises(InvalidStateTransitionError) as exc_info:
        machine.transition(SessionState.BACKFILLING)

    assert isinstance(exc_info.value, ValueError)
    assert machine.state == SessionState.LISTENING
    assert machine.history == []


def test_errored_never_reconnects():
    machine = SessionStateMachine("acct-1", initial=SessionState.ERRORED)
    assert not machine.can_transition(SessionState.CONNECTING)
    with pytest.raises(InvalidStateTransitionError):
        machine.transition(SessionState.CONNECTING)


@pytest.mark.parametrize(
    "from_state,to_state",
    list(itertools.product(SessionState, SessionState)),
)
def test_only_listed_transitions_are_allowed(from_state, to_state):
    machine = SessionStateMachine("acct-1", initial=from_state)
    allowed = to_state in VALID_TRANSITIONS[from_state]

    assert machine.can_transition(to_state) is allowed
    if allowed:
        machine.transition(to_state)
        assert machine.state == to_state
    else:
        with pytest.raises(InvalidStateTransitionError):
            machine.transition(to_state)
        assert machine.state == from_state


def test_stop_is_reachable_from_every_active_state():
    for state in (SessionState.CONNECTING, SessionState.BACKFILLING, SessionState.LISTENING):
        machine = SessionStateMachine("acct-1", initial=state)
        machine.transition(SessionState.STOPPING)
        machine.transition(SessionState.DISCONNECTED)
        assert machine.state == SessionState.DISCONNECTED
