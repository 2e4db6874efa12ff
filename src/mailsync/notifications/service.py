"""Interest notifier: alerts downstream systems about positive-interest mail."""

from __future__ import annotations

import logging
from typing import Optional, Protocol, runtime_checkable

from ..storage.store import AccountStore
from ..sync.models import DeliveryAttempt, Message
from .channels import SlackChannel, WebhookChannel


logger = logging.getLogger(__name__)


@runtime_checkable
class Notifier(Protocol):
    def notify_interest(self, message: Message) -> None: ...

    def record_delivery_attempt(self, attempt: DeliveryAttempt) -> None: ...


class InterestNotifier:
    """Sends the Slack alert and the outbound webhook for one message.

    Usage:
        notifier = InterestNotifier(store=store, slack=SlackChannel(url))
        notifier.notify_interest(message)
    """

    def __init__(
        self,
        *,
        store: Optional[AccountStore] = None,
        slack: Optional[SlackChannel] = None,
        webhook: Optional[WebhookChannel] = None,
    ) -> None:
        self.store = store
        self.slack = slack
        self.webhook = webhook

    def notify_interest(self, message: Message) -> None:
        if self.slack is not None:
            self.slack.deliver(message)

        if self.webhook is not None:
            attempt = self.webhook.send(message)
            if attempt is not None:
                self.record_delivery_attempt(attempt)

    def record_delivery_attempt(self, attempt: DeliveryAttempt) -> None:
        if self.store is None:
            return
        try:
            self.store.record_delivery_attempt(attempt)
        except Exception as exc:  # noqa: BLE001
            logger.error(
                f"Failed to record delivery attempt to {attempt.target}: {exc}",
                extra={"message_pk": attempt.message_id},
                exc_info=exc,
            )


__all__ = ["InterestNotifier", "Notifier"]
