"""Best-effort notices about booking events.

Delivery failures are logged and never affect the state change that
triggered them.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any

import httpx

from clinic_scheduler.core import config

logger = logging.getLogger(__name__)


class NotificationEvent:
    APPOINTMENT_CREATED = 'appointment.created'
    APPOINTMENT_APPROVED = 'appointment.approved'
    APPOINTMENT_CANCELLED = 'appointment.cancelled'
    APPOINTMENT_EXPIRED = 'appointment.expired'
    PAYMENT_CONFIRMED = 'payment.confirmed'
    CHANGE_REQUEST_APPROVED = 'change_request.approved'
    CHANGE_REQUEST_REJECTED = 'change_request.rejected'


class Notifier(ABC):
    @abstractmethod
    def send(self, event: str, recipient: str | None, payload: dict[str, Any]) -> None:
        ...


class LoggingNotifier(Notifier):
    """Writes notices to the log."""

    def send(self, event: str, recipient: str | None, payload: dict[str, Any]) -> None:
        logger.info('Notice %s for %s: %s', event, recipient or '<unknown>', payload)


class WebhookNotifier(Notifier):
    """Posts notices as JSON to an external mail/notification relay."""

    def __init__(self, url: str, timeout: float | None = None):
        self.url = url
        self.timeout = timeout if timeout is not None else config.HTTP_TIMEOUT_SECONDS

    def send(self, event: str, recipient: str | None, payload: dict[str, Any]) -> None:
        with httpx.Client(timeout=self.timeout) as client:
            response = client.post(
                self.url,
                json={'event': event, 'recipient': recipient, 'payload': payload},
            )
            response.raise_for_status()


def default_notifier() -> Notifier:
    if config.NOTIFICATION_WEBHOOK_URL:
        return WebhookNotifier(config.NOTIFICATION_WEBHOOK_URL)
    return LoggingNotifier()


def notify_safely(notifier: Notifier | None, event: str, recipient: str | None, payload: dict[str, Any]) -> bool:
    if notifier is None:
        return False
    try:
        notifier.send(event, recipient, payload)
    except Exception:
        logger.exception('Failed to deliver %s notice to %s', event, recipient)
        return False
    return True
