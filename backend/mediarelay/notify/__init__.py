"""Best-effort operator notifications."""

from .sinks import LoggingNotificationSink, NotificationSink, NullNotificationSink, safe_notify

__all__ = [
    "LoggingNotificationSink",
    "NotificationSink",
    "NullNotificationSink",
    "safe_notify",
]
