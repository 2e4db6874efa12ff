"""Positive-interest notifications (Slack and outbound webhook)."""

from .channels import NotificationChannel, SlackChannel, WebhookChannel
from .service import InterestNotifier, Notifier

__all__ = [
    "InterestNotifier",
    "NotificationChannel",
    "Notifier",
    "SlackChannel",
    "WebhookChannel",
]
