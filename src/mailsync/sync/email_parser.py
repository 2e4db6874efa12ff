"""Normalize raw RFC822/MIME messages into canonical ``Message`` records.

``normalize_message`` is a pure function. It never raises on malformed
input; it returns a ``ParseFailure`` instead so a scan or listener can log
and skip the single message.

Defaults applied to partial messages:

- missing subject becomes ``(No Subject)``
- missing sender becomes an empty address
- missing body becomes an empty string
- missing or invalid ``Date`` becomes the ingestion time
- missing ``Message-ID`` becomes ``{account_id}-{uid}-{ingested_at in ms}``
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from email import message_from_bytes
from email.message import EmailMessage as StdEmailMessage
from email.policy import default as email_policy
from email.utils import parsedate_to_datetime
from typing import Optional, Tuple, Union

import html2text

from .models import EmailAddress, Message, RawMessage


logger = logging.getLogger(__name__)

NO_SUBJECT = "(No Subject)"


@dataclass(frozen=True)
class NormalizedMessage:
    """Successful normalization result."""

    message: Message


@dataclass(frozen=True)
class ParseFailure:
    """Failed normalization result; the message is skipped."""

    uid: int
    folder: str
    reason: str


NormalizeResult = Union[NormalizedMessage, ParseFailure]


def normalize_message(
    raw: RawMessage,
    *,
    account_id: str,
    ingested_at: Optional[datetime] = None,
) -> NormalizeResult:
    """Parse ``raw`` into a canonical message for ``account_id``.

    Args:
        raw: Message bytes and fetch metadata from the transport
        account_id: Owning account, part of the message identity
        ingested_at: Ingestion time; defaults to now (UTC)

    Returns:
        ``NormalizedMessage`` on success, ``ParseFailure`` otherwise
    """
    ingested_at = _ensure_aware(ingested_at or datetime.now(timezone.utc))

    if not isinstance(raw.content, (bytes, bytearray)) or not raw.content.strip():
        return ParseFailure(uid=raw.uid, folder=raw.folder, reason="empty message content")

    try:
        msg = message_from_bytes(bytes(raw.content), policy=email_policy)
        if not msg.keys():
            return ParseFailure(uid=raw.uid, folder=raw.folder, reason="no headers")

        sender = _first_address(msg.get("From"))
        body_text, body_html = _extract_body(msg)

        message = Message(
            account_id=account_id,
            message_id=_extract_message_id(msg, account_id, raw.uid, ingested_at),
            uid=raw.uid,
            subject=_extract_subject(msg),
            from_address=sender.address if sender else "",
            from_name=sender.name if sender else "",
            to_addresses=EmailAddress.from_header(_header(msg, "To")),
            cc_addresses=EmailAddress.from_header(_header(msg, "Cc")),
            folder=raw.folder,
            body_text=body_text,
            body_html=body_html,
            received_at=_extract_date(msg, ingested_at),
            is_read=raw.is_seen,
            ingested_at=ingested_at,
        )
    except Exception as exc:  # noqa: BLE001
        return ParseFailure(uid=raw.uid, folder=raw.folder, reason=f"{type(exc).__name__}: {exc}")

    return NormalizedMessage(message=message)


def synthetic_message_id(account_id: str, uid: int, ingested_at: datetime) -> str:
    millis = int(ingested_at.timestamp() * 1000)
    return f"{account_id}-{uid}-{millis}"


def _header(msg: StdEmailMessage, name: str) -> str:
    value = msg.get(name)
    return str(value) if value is not None else ""


def _extract_message_id(
    msg: StdEmailMessage,
    account_id: str,
    uid: int,
    ingested_at: datetime,
) -> str:
    message_id = _header(msg, "Message-ID").strip().strip("<>").strip()
    if message_id:
        return message_id
    fallback = synthetic_message_id(account_id, uid, ingested_at)
    logger.debug(
        f"Message missing Message-ID, using {fallback}",
        extra={"account_id": account_id, "uid": uid},
    )
    return fallback


def _extract_subject(msg: StdEmailMessage) -> str:
    # policy.default already decodes RFC 2047 encoded words
    subject = " ".join(_header(msg, "Subject").split())
    return subject or NO_SUBJECT


def _first_address(header_value) -> Optional[EmailAddress]:
    if header_value is None:
        return None
    addresses = EmailAddress.from_header(str(header_value))
    return addresses[0] if addresses else None


def _extract_date(msg: StdEmailMessage, ingested_at: datetime) -> datetime:
    try:
        date_header = _header(msg, "Date")
        if date_header:
            return _ensure_aware(parsedate_to_datetime(date_header))
    except (TypeError, ValueError, IndexError) as exc:
        logger.debug(f"Unparseable Date header, using ingestion time: {exc}")
    return ingested_at


def _extract_body(msg: StdEmailMessage) -> Tuple[str, str]:
    """Return ``(plain, html)``; plain falls back to rendered HTML."""
    body_plain: Optional[str] = None
    body_html: Optional[str] = None

    parts = msg.walk() if msg.is_multipart() else [msg]
    for part in parts:
        if part.is_multipart() or part.get_content_disposition() == "attachment":
            continue
        content_type = part.get_content_type()
        if content_type == "text/plain" and body_plain is None:
            body_plain = _part_text(part)
        elif content_type == "text/html" and body_html is None:
            body_html = _part_text(part)

    html = (body_html or "").strip()
    if body_plain is not None and body_plain.strip():
        return body_plain.strip(), html
    if html:
        return _html_to_text(html), html
    return "", html


def _part_text(part: StdEmailMessage) -> Optional[str]:
    try:
        content = part.get_content()
    except (LookupError, UnicodeDecodeError, AssertionError) as exc:
        logger.debug(f"Falling back to raw payload decode: {exc}")
        payload = part.get_payload(decode=True) or b""
        return payload.decode("utf-8", errors="replace")
    if isinstance(content, bytes):
        return content.decode("utf-8", errors="replace")
    return content


def _html_to_text(html: str) -> str:
    converter = html2text.HTML2Text()
    converter.ignore_links = False
    converter.ignore_images = True
    converter.body_width = 0
    return converter.handle(html).strip()


def _ensure_aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


__all__ = [
    "NO_SUBJECT",
    "NormalizeResult",
    "NormalizedMessage",
    "ParseFailure",
    "normalize_message",
    "synthetic_message_id",
]
