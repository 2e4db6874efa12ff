"""Data models shared by the mailbox sync engine.

Accounts and canonical messages are pydantic models so they validate at the
storage boundary. Raw transport payloads and folder handles are plain
dataclasses because they never leave the engine.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from email.utils import getaddresses
from typing import Any, List, Optional, Tuple

from pydantic import BaseModel, Field, SecretStr, field_validator


class MessageCategory(str, Enum):
    """Fixed set of categories the classifier may assign."""

    INTERESTED = "Interested"
    MEETING_BOOKED = "Meeting Booked"
    NOT_INTERESTED = "Not Interested"
    SPAM = "Spam"
    OUT_OF_OFFICE = "Out of Office"


POSITIVE_INTEREST_CATEGORY = MessageCategory.INTERESTED


class ImapEndpoint(BaseModel):
    """Connection endpoint and credentials for one remote mailbox."""

    host: str = Field(..., description="IMAP hostname")
    port: int = Field(default=993, ge=1, le=65535, description="IMAP port (TLS)")
    username: str = Field(..., description="Login name")
    password: SecretStr = Field(..., description="Login password")


class Account(BaseModel):
    """A user's mailbox account as recorded in the account store."""

    id: str = Field(..., description="Account identifier")
    user_id: str = Field(..., description="Owning user identifier")
    email: str = Field(..., description="Mailbox address")
    endpoint: ImapEndpoint
    folder: str = Field(default="INBOX", description="Folder to watch")
    sync_enabled: bool = Field(default=True)
    last_synced_at: Optional[datetime] = Field(default=None)


class EmailAddress(BaseModel):
    """Parsed email participant with optional display name."""

    address: str = Field(..., description="Email address (user@domain.com)")
    name: str = Field(default="", description="Display name")

    @field_validator("address")
    @classmethod
    def _validate_address(cls, value: str) -> str:  # type: ignore[override]
        if "@" not in value or value.count("@") != 1:
            raise ValueError(f"Invalid email address: {value}")
        return value.strip().lower()

    @classmethod
    def from_header(cls, header_value: Optional[str]) -> List["EmailAddress"]:
        """Parse every valid address out of a raw header value."""
        if not header_value or not str(header_value).strip():
            return []

        result = []
        for display_name, addr in getaddresses([str(header_value)]):
            if not addr or addr.count("@") != 1:
                continue
            result.append(cls(address=addr, name=(display_name or "").strip()))
        return result


class Message(BaseModel):
    """Canonical message record.

    Identity is ``(account_id, message_id)``. ``uid`` only addresses the
    message on the remote server.
    """

    id: Optional[int] = Field(default=None, description="Store-assigned id")
    account_id: str
    message_id: str = Field(..., min_length=1)
    uid: int = Field(..., ge=0)
    subject: str
    from_address: str = ""
    from_name: str = ""
    to_addresses: List[EmailAddress] = Field(default_factory=list)
    cc_addresses: List[EmailAddress] = Field(default_factory=list)
    folder: str
    body_text: str = ""
    body_html: str = ""
    received_at: datetime
    is_read: bool = False
    category: Optional[MessageCategory] = None
    category_confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    ingested_at: datetime


class Classification(BaseModel):
    """Classifier verdict for one message."""

    category: MessageCategory
    confidence: float = Field(..., ge=0.0, le=1.0)
    reasoning: Optional[str] = None


class DeliveryStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    ERROR = "error"


class DeliveryAttempt(BaseModel):
    """Persisted record of one outbound webhook attempt."""

    id: Optional[int] = None
    message_id: Optional[int] = Field(default=None, description="Store id of the message")
    target: str
    status: DeliveryStatus
    response_code: Optional[int] = None
    response_body: str = ""
    attempted_at: datetime


@dataclass(frozen=True)
class RawMessage:
    """Raw message as fetched from the transport."""

    uid: int
    folder: str
    content: bytes
    flags: Tuple[Any, ...] = ()
    internal_date: Optional[datetime] = None

    @property
    def is_seen(self) -> bool:
        for flag in self.flags:
            value = flag.decode() if isinstance(flag, bytes) else str(flag)
            if value.lower() == "\\seen":
                return True
        return False


@dataclass
class FolderRef:
    """An opened folder on a transport handle."""

    handle: Any
    name: str
    read_only: bool = True
    uidvalidity: Optional[int] = None
    exists: int = 0
    metadata: dict = field(default_factory=dict)


__all__ = [
    "Account",
    "Classification",
    "DeliveryAttempt",
    "DeliveryStatus",
    "EmailAddress",
    "FolderRef",
    "ImapEndpoint",
    "Message",
    "MessageCategory",
    "POSITIVE_INTEREST_CATEGORY",
    "RawMessage",
]
