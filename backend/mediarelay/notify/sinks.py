"""
Notification sinks.

Notifications are best-effort and fire-and-forget: safe_notify() swallows
every sink failure so a broken sink can never block or abort the pipeline.
"""

import logging
from abc import ABC, abstractmethod

logger = logging.getLogger(__name__)


class NotificationSink(ABC):
    """Destination for operator notifications."""

    @abstractmethod
    def notify(self, subject: str, body: str) -> None:
        pass


class NullNotificationSink(NotificationSink):
    """Discards every notification."""

    def notify(self, subject: str, body: str) -> None:
        return None


class LoggingNotificationSink(NotificationSink):
    """Writes notifications to a dedicated logger."""

    def __init__(self, logger_name: str = "mediarelay.notifications", level: int = logging.INFO):
        self._logger = logging.getLogger(logger_name)
        self.level = level

    def notify(self, subject: str, body: str) -> None:
        self._logger.log(self.level, f"{subject}\n{body}")


def safe_notify(sink: NotificationSink, subject: str, body: str) -> None:
    """Deliver a notification, logging and discarding any sink failure."""
    try:
        sink.notify(subject, body)
    except Exception as e:
        logger.warning(f"Notification '{subject}' could not be delivered: {e}")
