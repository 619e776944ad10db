"""
Intervention Notifications

Multi-channel delivery for intervention events:
- Email when the recipient has an address and has not opted out
- SMS for high/critical urgency or explicit opt-in, when a phone exists
- Bounded retries with exponential backoff through an injected scheduler

Delivery failures are recorded here and never fail the business
operation that triggered them.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable
import uuid

import structlog

from rxcare.collaborators import MessageContent, MessageTransport, UserDirectory
from rxcare.config import NotificationSettings
from rxcare.models.base import utcnow
from rxcare.models.people import StaffUser
from rxcare.notifications.scheduler import NotificationScheduler

logger = structlog.get_logger(__name__)


# =============================================================================
# Notification Types
# =============================================================================

class NotificationChannel(str, Enum):
    """Notification delivery channels."""
    EMAIL = "email"
    SMS = "sms"


class NotificationUrgency(str, Enum):
    """Notification urgency levels."""
    CRITICAL = "critical"
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    RETRYING = "retrying"
    FAILED = "failed"


URGENT = (NotificationUrgency.HIGH, NotificationUrgency.CRITICAL)


@dataclass
class ScheduledNotification:
    """One delivery of one event to one recipient on one channel."""
    id: str
    event: str
    recipient_id: str
    channel: NotificationChannel
    address: str
    content: MessageContent
    urgency: NotificationUrgency
    max_attempts: int
    deadline: datetime
    attempts: int = 0
    status: DeliveryStatus = DeliveryStatus.PENDING
    last_error: str | None = None
    next_attempt_at: datetime | None = None
    sent_at: datetime | None = None
    finished_at: datetime | None = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class NotificationReport:
    """Outcome of the inline delivery attempts."""
    sent: int = 0
    failed: int = 0
    retrying: int = 0
    notification_ids: list[str] = field(default_factory=list)


# =============================================================================
# Dispatcher
# =============================================================================

class NotificationDispatcher:
    """
    Resolves channels, sends, and schedules retries.

    The tracking table is a process-local cache keyed by notification id.
    Finished deliveries stay in it for one retry window, then are dropped.
    Audit entries are the system of record.
    """

    def __init__(
        self,
        users: UserDirectory,
        transports: dict[NotificationChannel, MessageTransport],
        scheduler: NotificationScheduler,
        settings: NotificationSettings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.users = users
        self.transports = transports
        self.scheduler = scheduler
        self.settings = settings or NotificationSettings()
        self.clock = clock
        self._notifications: dict[str, ScheduledNotification] = {}

    def resolve_channels(
        self, user: StaffUser, urgency: NotificationUrgency
    ) -> list[tuple[NotificationChannel, str]]:
        """Channels and addresses to use for a recipient."""
        channels = []
        if user.email and user.email_notifications and NotificationChannel.EMAIL in self.transports:
            channels.append((NotificationChannel.EMAIL, user.email))
        wants_sms = urgency in URGENT or user.sms_notifications
        if wants_sms and user.phone_number and NotificationChannel.SMS in self.transports:
            channels.append((NotificationChannel.SMS, user.phone_number))
        return channels

    def max_attempts_for(self, urgency: NotificationUrgency) -> int:
        if urgency in URGENT:
            return self.settings.max_attempts_urgent
        return self.settings.max_attempts

    async def notify(
        self,
        event: str,
        recipients: list[str],
        message: str,
        urgency: NotificationUrgency = NotificationUrgency.NORMAL,
        subject: str | None = None,
    ) -> NotificationReport:
        """
        Deliver an event to each recipient on each resolved channel.

        Args:
            event: Event name, e.g. "intervention_assigned"
            recipients: User IDs
            message: Body text
            urgency: Drives SMS use and the retry budget

        Returns:
            NotificationReport counting inline outcomes. Deliveries still
            retrying are counted under `retrying`.
        """
        urgency = NotificationUrgency(urgency)
        content = MessageContent(subject=subject or event.replace("_", " ").title(), body=message)
        report = NotificationReport()
        now = self.clock()
        deadline = now + timedelta(hours=self.settings.retry_window_hours)
        self._prune(now)

        for recipient_id in dict.fromkeys(recipients):
            user = await self.users.find_by_id(recipient_id)
            if user is None:
                logger.warning("Notification recipient not found", recipient_id=recipient_id, event=event)
                report.failed += 1
                continue

            for channel, address in self.resolve_channels(user, urgency):
                notification = ScheduledNotification(
                    id=str(uuid.uuid4()),
                    event=event,
                    recipient_id=recipient_id,
                    channel=channel,
                    address=address,
                    content=content,
                    urgency=urgency,
                    max_attempts=self.max_attempts_for(urgency),
                    deadline=deadline,
                    created_at=now,
                )
                self._notifications[notification.id] = notification
                report.notification_ids.append(notification.id)

                await self._attempt(notification)
                if notification.status == DeliveryStatus.SENT:
                    report.sent += 1
                elif notification.status == DeliveryStatus.RETRYING:
                    report.retrying += 1
                else:
                    report.failed += 1

        logger.info(
            "Notifications dispatched",
            event_name=event,
            sent=report.sent,
            failed=report.failed,
            retrying=report.retrying,
        )
        return report

    async def _attempt(self, notification: ScheduledNotification) -> None:
        notification.attempts += 1
        transport = self.transports[notification.channel]
        try:
            await transport.send(notification.address, notification.content)
        except Exception as e:
            notification.last_error = str(e)
            self._schedule_retry(notification)
            return

        notification.status = DeliveryStatus.SENT
        notification.sent_at = self.clock()
        notification.finished_at = notification.sent_at
        notification.next_attempt_at = None
        logger.info(
            "Notification sent",
            notification_id=notification.id,
            channel=notification.channel.value,
            attempts=notification.attempts,
        )

    def _schedule_retry(self, notification: ScheduledNotification) -> None:
        delay = self.settings.base_retry_delay_seconds * (2 ** notification.attempts)
        next_at = self.clock() + timedelta(seconds=delay)

        if notification.attempts >= notification.max_attempts or next_at > notification.deadline:
            self._give_up(notification)
            return

        handle = self.scheduler.call_later(delay, lambda: self._attempt(notification))
        if handle is None:
            self._give_up(notification)
            return

        notification.status = DeliveryStatus.RETRYING
        notification.next_attempt_at = next_at
        logger.warning(
            "Notification delivery failed, retry scheduled",
            notification_id=notification.id,
            channel=notification.channel.value,
            attempts=notification.attempts,
            delay_seconds=delay,
            error=notification.last_error,
        )

    def _give_up(self, notification: ScheduledNotification) -> None:
        notification.status = DeliveryStatus.FAILED
        notification.finished_at = self.clock()
        notification.next_attempt_at = None
        logger.error(
            "Notification delivery failed permanently",
            notification_id=notification.id,
            channel=notification.channel.value,
            attempts=notification.attempts,
            error=notification.last_error,
        )

    def _prune(self, now: datetime) -> None:
        cutoff = now - timedelta(hours=self.settings.retry_window_hours)
        expired = [
            key for key, n in self._notifications.items()
            if n.finished_at is not None and n.finished_at < cutoff
        ]
        for key in expired:
            del self._notifications[key]

    def get_notification(self, notification_id: str) -> ScheduledNotification | None:
        return self._notifications.get(notification_id)

    def pending(self) -> list[ScheduledNotification]:
        """Deliveries still awaiting a retry."""
        return [n for n in self._notifications.values() if n.status == DeliveryStatus.RETRYING]
