"""
Notifications for Checkpoint.

Usage:
    from checkpoint.notify import EscalationController, select_notifier

    notifier = select_notifier(settings.notifications)
    controller = EscalationController(store, notifier, settings.notifications, "myproject")
    controller.handle_run(run)
"""

from checkpoint.notify.escalation import Delivery, EscalationController, QuietHours
from checkpoint.notify.notifiers import (
    LinuxNotifier,
    LogNotifier,
    MacOSNotifier,
    MultiNotifier,
    Notification,
    Notifier,
    NotifierError,
    WebhookNotifier,
    select_notifier,
)

__all__ = [
    "Delivery",
    "EscalationController",
    "QuietHours",
    "Notification",
    "Notifier",
    "NotifierError",
    "LinuxNotifier",
    "LogNotifier",
    "MacOSNotifier",
    "MultiNotifier",
    "WebhookNotifier",
    "select_notifier",
]
