"""Session lifecycle states and transition validation.

Every mailbox session walks the same state machine. Transitions are checked
against ``VALID_TRANSITIONS`` before they happen so that a programming error
in the session code surfaces as ``InvalidStateTransitionError`` instead of a
silently corrupted lifecycle.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from ..errors import InvalidStateTransitionError


logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    """Session lifecycle states."""

    DISCONNECTED = "disconnected"  # No transport open
    CONNECTING = "connecting"  # Handshake and login in progress
    BACKFILLING = "backfilling"  # Draining the historical window
    LISTENING = "listening"  # Push, poll and keepalive active
    STOPPING = "stopping"  # Teardown requested
    ERRORED = "errored"  # Transport fault, session is being dropped


VALID_TRANSITIONS: Dict[SessionState, Set[SessionState]] = {
    SessionState.DISCONNECTED: {
        SessionState.CONNECTING,
    },
    SessionState.CONNECTING: {
        SessionState.BACKFILLING,  # Logged in
        SessionState.ERRORED,  # Connect or auth failure
        SessionState.STOPPING,  # Stop requested mid-handshake
    },
    SessionState.BACKFILLING: {
        SessionState.LISTENING,
        SessionState.ERRORED,
        SessionState.STOPPING,
    },
    SessionState.LISTENING: {
        SessionState.ERRORED,
        SessionState.STOPPING,
    },
    SessionState.STOPPING: {
        SessionState.DISCONNECTED,
    },
    SessionState.ERRORED: {
        SessionState.DISCONNECTED,  # Teardown finished
    },
}


@dataclass
class StateTransition:
    """Records one state change of a session."""

    account_id: str
    from_state: SessionState
    to_state: SessionState
    timestamp: datetime
    reason: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def is_valid(self) -> bool:
        return self.to_state in VALID_TRANSITIONS.get(self.from_state, set())


class SessionStateMachine:
    """Holds the current state of one session and its transition history."""

    def __init__(
        self,
        account_id: str,
        initial: SessionState = SessionState.DISCONNECTED,
    ) -> None:
        self.account_id = account_id
        self._state = initial
        self._history: List[StateTransition] = []

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def history(self) -> List[StateTransition]:
        return list(self._history)

    def can_transition(self, to_state: SessionState) -> bool:
        return to_state in VALID_TRANSITIONS.get(self._state, set())

    def transition(
        self,
        to_state: SessionState,
        *,
        reason: Optional[str] = None,
    ) -> StateTransition:
        """Move to ``to_state``.

        Raises:
            InvalidStateTransitionError: If the move is not in VALID_TRANSITIONS
        """
        transition = StateTransition(
            account_id=self.account_id,
            from_state=self._state,
            to_state=to_state,
            timestamp=datetime.now(timezone.utc),
            reason=reason,
        )

        if not transition.is_valid():
            logger.error(
                "Invalid session state transition",
                extra={
                    "account_id": self.account_id,
                    "from_state": self._state.value,
                    "to_state": to_state.value,
                },
            )
            raise InvalidStateTransitionError(
                f"Invalid transition: {self._state.value} -> {to_state.value}",
                details={"account_id": self.account_id},
            )

        logger.debug(
            f"Session {self.account_id}: {self._state.value} -> {to_state.value}",
            extra={"account_id": self.account_id, "reason": reason},
        )
        self._state = to_state
        self._history.append(transition)
        return transition


__all__ = [
    "SessionState",
    "SessionStateMachine",
    "StateTransition",
    "VALID_TRANSITIONS",
]
