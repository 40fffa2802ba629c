"""Infrastructure layer package."""

from parkingmate.infrastructure.db import (
    close_db,
    get_session,
    get_session_factory,
    init_db,
)
from parkingmate.infrastructure.email import (
    LoggingNotifier,
    NotificationError,
    Notifier,
    SendGridNotifier,
    get_notifier,
)

__all__ = [
    # Database
    "close_db",
    "get_session",
    "get_session_factory",
    "init_db",
    # Email
    "LoggingNotifier",
    "NotificationError",
    "Notifier",
    "SendGridNotifier",
    "get_notifier",
]
