"""Event notifications for deposits and withdrawals."""

from poolwallet.notifications.base import (
    Event,
    EventDispatcher,
    EventType,
    LoggingNotifier,
    Notifier,
)

__all__ = ["Event", "EventDispatcher", "EventType", "LoggingNotifier", "Notifier"]
