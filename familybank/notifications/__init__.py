"""Notification delivery."""

from familybank.notifications.dispatcher import NotificationDispatcher, build_message
from familybank.notifications.notifier import (
    InMemoryNotifier,
    LoggingNotifier,
    Notification,
    Notifier,
)

__all__ = [
    "InMemoryNotifier",
    "LoggingNotifier",
    "Notification",
    "NotificationDispatcher",
    "Notifier",
    "build_message",
]
