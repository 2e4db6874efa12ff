"""Outbound notification channels for positive-interest messages.

- Slack: incoming-webhook alert using Block Kit
- Webhook: ``email.interested`` event posted to a user-configured URL

A channel whose URL is unset or still a template placeholder reports itself
unavailable and is skipped.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import requests

from ..sync.models import DeliveryAttempt, DeliveryStatus, Message


logger = logging.getLogger(__name__)

PLACEHOLDER_MARKERS = ("your_slack", "your-unique", "your_webhook")
SLACK_PREVIEW_CHARS = 200
WEBHOOK_PREVIEW_CHARS = 500
INTERESTED_EVENT = "email.interested"


def is_configured_url(url: Optional[str]) -> bool:
    if not url or not url.strip():
        return False
    lowered = url.lower()
    return not any(marker in lowered for marker in PLACEHOLDER_MARKERS)


class NotificationChannel(ABC):
    """Abstract base class for notification channels."""

    name: str = "channel"

    @abstractmethod
    def deliver(self, message: Message) -> bool:
        """Deliver an alert about ``message``; True on success."""

    @abstractmethod
    def is_available(self) -> bool:
        """Check if this channel is configured for delivery."""


class SlackChannel(NotificationChannel):
    """Slack incoming-webhook alert."""

    name = "slack"

    def __init__(self, webhook_url: Optional[str], *, timeout: float = 10.0) -> None:
        self.webhook_url = webhook_url
        self.timeout = timeout

    def is_available(self) -> bool:
        return is_configured_url(self.webhook_url)

    def build_payload(self, message: Message) -> Dict[str, Any]:
        title = "\U0001F3AF New Interested Email"
        preview = message.body_text[:SLACK_PREVIEW_CHARS]
        return {
            "text": title,
            "blocks": [
                {"type": "header", "text": {"type": "plain_text", "text": title}},
                {
                    "type": "section",
                    "fields": [
                        {
                            "type": "mrkdwn",
                            "text": f"*From:*\n{message.from_name or message.from_address}",
                        },
                        {"type": "mrkdwn", "text": f"*Email:*\n{message.from_address}"},
                    ],
                },
                {
                    "type": "section",
                    "fields": [{"type": "mrkdwn", "text": f"*Subject:*\n{message.subject}"}],
                },
                {
                    "type": "section",
                    "text": {"type": "mrkdwn", "text": f"*Preview:*\n{preview}..."},
                },
            ],
        }

    def deliver(self, message: Message) -> bool:
        if not self.is_available():
            logger.info("Slack webhook URL not configured, skipping notification")
            return False
        try:
            response = requests.post(
                self.webhook_url,
                json=self.build_payload(message),
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as exc:
            logger.error(f"Error sending Slack notification: {exc}")
            return False

        if response.ok:
            logger.info("Slack notification sent successfully")
            return True
        logger.error(f"Failed to send Slack notification: {response.status_code} {response.text[:200]}")
        return False


class WebhookChannel(NotificationChannel):
    """Generic JSON webhook; every attempt yields a ``DeliveryAttempt``."""

    name = "webhook"

    def __init__(self, url: Optional[str], *, timeout: float = 10.0) -> None:
        self.url = url
        self.timeout = timeout

    def is_available(self) -> bool:
        return is_configured_url(self.url)

    def build_payload(self, message: Message, *, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or datetime.now(timezone.utc)
        return {
            "event": INTERESTED_EVENT,
            "timestamp": now.isoformat(),
            "data": {
                "from": message.from_address,
                "from_name": message.from_name,
                "subject": message.subject,
                "body_preview": message.body_text[:WEBHOOK_PREVIEW_CHARS],
                "received_at": message.received_at.isoformat(),
            },
        }

    def send(self, message: Message) -> Optional[DeliveryAttempt]:
        """POST the event; None when the channel is not configured."""
        if not self.is_available():
            logger.info("Webhook URL not configured, skipping webhook")
            return None

        attempted_at = datetime.now(timezone.utc)
        try:
            response = requests.post(
                self.url,
                json=self.build_payload(message, now=attempted_at),
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as exc:
            logger.error(f"Error sending webhook: {exc}")
            return DeliveryAttempt(
                message_id=message.id,
                target=self.url,
                status=DeliveryStatus.ERROR,
                response_body=str(exc),
                attempted_at=attempted_at,
            )

        status = DeliveryStatus.SUCCESS if response.ok else DeliveryStatus.FAILED
        logger.info(f"Webhook sent: {status.value}")
        return DeliveryAttempt(
            message_id=message.id,
            target=self.url,
            status=status,
            response_code=response.status_code,
            response_body=response.text,
            attempted_at=attempted_at,
        )

    def deliver(self, message: Message) -> bool:
        attempt = self.send(message)
        return attempt is not None and attempt.status == DeliveryStatus.SUCCESS


__all__ = [
    "NotificationChannel",
    "SlackChannel",
    "WebhookChannel",
    "is_configured_url",
]
