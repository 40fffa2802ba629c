"""Email infrastructure package."""

from parkingmate.infrastructure.email.notifier import (
    LoggingNotifier,
    NotificationError,
    Notifier,
    SendGridNotifier,
    SentNotification,
    close_notifier,
    get_notifier,
)

__all__ = [
    "LoggingNotifier",
    "NotificationError",
    "Notifier",
    "SendGridNotifier",
    "SentNotification",
    "close_notifier",
    "get_notifier",
]
