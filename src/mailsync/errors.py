"""Centralized error definitions for mailsync.

The hierarchy mirrors how failures propagate through the sync engine:

- ``TransportError`` ends a single mailbox session (it moves to ``errored``).
- ``ParseError`` skips a single message.
- ``DuplicateMessageError`` means "already ingested" and is never surfaced.
- ``CollaboratorError`` subclasses are isolated to one fan-out step.

Only Connection Manager operations raise to their callers.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class MailSyncError(Exception):
    """Base exception for all mailsync errors.

    Attributes:
        code: Error code for categorization
        recoverable: Whether the error is potentially recoverable
        details: Additional error details for debugging
    """

    code: str = "MAILSYNC_ERROR"
    default_message: str = "An unexpected error occurred"
    recoverable: bool = True

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message or self.default_message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "code": self.code,
            "message": self.message,
            "recoverable": self.recoverable,
            "details": self.details,
        }


# =============================================================================
# Transport Errors
# =============================================================================


class TransportError(MailSyncError):
    """Connect, authentication or network failure on a mailbox transport."""

    code = "TRANSPORT_ERROR"
    default_message = "Mailbox transport failed"


class AuthenticationError(TransportError):
    """The remote server rejected the account credentials."""

    code = "AUTHENTICATION_ERROR"
    default_message = "Mailbox authentication failed"
    recoverable = False


# =============================================================================
# Message Errors
# =============================================================================


class ParseError(MailSyncError):
    """A raw message could not be normalized."""

    code = "PARSE_ERROR"
    default_message = "Malformed message"


class DuplicateMessageError(MailSyncError):
    """The (account id, message id) pair is already stored."""

    code = "DUPLICATE_MESSAGE"
    default_message = "Message already ingested"


# =============================================================================
# Collaborator Errors
# =============================================================================


class CollaboratorError(MailSyncError):
    """Base error for downstream collaborators of the fan-out pipeline."""

    code = "COLLABORATOR_ERROR"
    default_message = "Downstream collaborator failed"


class ClassificationError(CollaboratorError):
    code = "CLASSIFICATION_ERROR"
    default_message = "Message classification failed"


class IndexingError(CollaboratorError):
    code = "INDEXING_ERROR"
    default_message = "Search indexing failed"


class NotificationError(CollaboratorError):
    code = "NOTIFICATION_ERROR"
    default_message = "Notification delivery failed"


# =============================================================================
# Engine Errors
# =============================================================================


class AccountNotFoundError(MailSyncError):
    """Raised when an operation names an account the store does not know."""

    code = "ACCOUNT_NOT_FOUND"
    default_message = "Account not found"
    recoverable = False


class SessionActiveError(MailSyncError):
    """Raised when a one-shot sync targets an account with a live session."""

    code = "SESSION_ACTIVE"
    default_message = "A session is already active for this account"
    recoverable = False


class InvalidStateTransitionError(MailSyncError, ValueError):
    """Raised when a session attempts a transition outside its state machine.

    Example:
        Moving a session from ``listening`` straight back to ``backfilling``
        is not a valid flow and raises this exception.
    """

    code = "INVALID_STATE_TRANSITION"
    default_message = "Invalid session state transition"
    recoverable = False


__all__ = [
    "MailSyncError",
    "TransportError",
    "AuthenticationError",
    "ParseError",
    "DuplicateMessageError",
    "CollaboratorError",
    "ClassificationError",
    "IndexingError",
    "NotificationError",
    "AccountNotFoundError",
    "SessionActiveError",
    "InvalidStateTransitionError",
]
