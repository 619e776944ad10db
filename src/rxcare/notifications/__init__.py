"""
RxCare Notifications

Multi-channel intervention notifications with scheduled retries.
"""

from rxcare.notifications.dispatcher import (
    DeliveryStatus,
    NotificationChannel,
    NotificationDispatcher,
    NotificationReport,
    NotificationUrgency,
    ScheduledNotification,
)
from rxcare.notifications.scheduler import AsyncioNotificationScheduler, NotificationScheduler

__all__ = [
    "DeliveryStatus",
    "NotificationChannel",
    "NotificationDispatcher",
    "NotificationReport",
    "NotificationUrgency",
    "ScheduledNotification",
    "AsyncioNotificationScheduler",
    "NotificationScheduler",
]
