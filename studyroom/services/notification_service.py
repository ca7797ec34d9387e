"""
Member Notifications

Delivery (email/SMS) belongs to an external gateway. The engine only hands
it (recipient, subject, message); whatever happens next never affects
reservation state.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from ..config import settings

logger = logging.getLogger(__name__)


@dataclass
class Notification:
    recipient: str
    subject: str
    message: str


class Notifier:
    """Base notifier. Subclasses deliver; callers use ``notify``."""

    def send(self, notification: Notification) -> None:
        raise NotImplementedError

    def notify(self, recipient: Optional[str], subject: str, message: str) -> bool:
        """Fire-and-forget: failures are logged and reported as False"""
        if not recipient:
            logger.warning(f"Notification '{subject}' skipped: no recipient")
            return False
        try:
            self.send(Notification(recipient=recipient, subject=subject, message=message))
            return True
        except Exception as e:
            logger.error(f"Notification '{subject}' to {recipient} failed: {e}")
            return False


class LoggingNotifier(Notifier):
    """Writes notifications to the log; used when no gateway is configured"""

    def send(self, notification: Notification) -> None:
        logger.info(f"Notify {notification.recipient}: {notification.subject} - {notification.message}")


class WebhookNotifier(Notifier):
    """POSTs each notification as JSON to the delivery gateway"""

    def __init__(self, url: str, timeout: float = 5.0):
        self.url = url
        self.timeout = timeout

    def send(self, notification: Notification) -> None:
        with httpx.Client(timeout=self.timeout) as client:
            response = client.post(self.url, json={
                "recipient": notification.recipient,
                "subject": notification.subject,
                "message": notification.message,
            })
            response.raise_for_status()


def get_notifier() -> Notifier:
    if settings.notification_webhook_url:
        return WebhookNotifier(
            settings.notification_webhook_url,
            timeout=settings.notification_timeout_seconds
        )
    return LoggingNotifier()
