"""Notification sub-package: best-effort observer notifications."""

from cgm_agent.notifications.handlers import (
    Notification,
    NotificationDispatcher,
    NotificationHandler,
    NotificationSink,
    create_dispatcher,
)

__all__ = [
    "Notification",
    "NotificationDispatcher",
    "NotificationHandler",
    "NotificationSink",
    "create_dispatcher",
]
