"""
Tests for notification channel selection and retry scheduling.
"""

import uuid

import pytest

from rxcare.config import NotificationSettings
from rxcare.models.people import StaffUser
from rxcare.notifications.dispatcher import (
    DeliveryStatus,
    NotificationChannel,
    NotificationDispatcher,
    NotificationUrgency,
)

from conftest import NURSE_ID, PHARMACIST_ID, PHYSICIAN_ID, RecordingTransport


def make_dispatcher(users, scheduler, clock, email, sms=None, **settings):
    transports = {NotificationChannel.EMAIL: email}
    if sms is not None:
        transports[NotificationChannel.SMS] = sms
    return NotificationDispatcher(users, transports, scheduler, NotificationSettings(**settings), clock=clock)


async def drain(scheduler):
    delays = []
    while scheduler.calls:
        delays.append(await scheduler.run_next())
    return delays


class TestChannels:

    def test_email_only_for_normal_urgency(self, users, scheduler, clock, email, sms):
        dispatcher = make_dispatcher(users, scheduler, clock, email, sms)
        user = StaffUser(id=PHYSICIAN_ID, email="c@x.test", phone_number="+1")
        assert dispatcher.resolve_channels(user, NotificationUrgency.NORMAL) == [
            (NotificationChannel.EMAIL, "c@x.test"),
        ]

    def test_sms_added_for_urgent_or_opt_in(self, users, scheduler, clock, email, sms):
        dispatcher = make_dispatcher(users, scheduler, clock, email, sms)
        user = StaffUser(id=PHYSICIAN_ID, email="c@x.test", phone_number="+1")
        opted_in = StaffUser(id=NURSE_ID, phone_number="+2", sms_notifications=True)

        assert [c for c, _ in dispatcher.resolve_channels(user, NotificationUrgency.CRITICAL)] == [
            NotificationChannel.EMAIL, NotificationChannel.SMS,
        ]
        assert dispatcher.resolve_channels(opted_in, NotificationUrgency.LOW) == [(NotificationChannel.SMS, "+2")]

    def test_email_opt_out_respected(self, users, scheduler, clock, email, sms):
        dispatcher = make_dispatcher(users, scheduler, clock, email, sms)
        user = StaffUser(id=PHYSICIAN_ID, email="c@x.test", phone_number="+1", email_notifications=False)

        assert dispatcher.resolve_channels(user, NotificationUrgency.NORMAL) == []
        assert dispatcher.resolve_channels(user, NotificationUrgency.CRITICAL) == [(NotificationChannel.SMS, "+1")]

    def test_channel_without_transport_skipped(self, users, scheduler, clock, email):
        dispatcher = make_dispatcher(users, scheduler, clock, email)
        user = StaffUser(id=PHYSICIAN_ID, email="c@x.test", phone_number="+1")
        assert [c for c, _ in dispatcher.resolve_channels(user, NotificationUrgency.HIGH)] == [
            NotificationChannel.EMAIL,
        ]


class TestDelivery:

    @pytest.mark.asyncio
    async def test_inline_success(self, users, scheduler, clock, email, sms):
        dispatcher = make_dispatcher(users, scheduler, clock, email, sms)
        report = await dispatcher.notify("review_requested", [PHYSICIAN_ID], "Please review", "high")

        assert report.sent == 2
        assert report.failed == 0
        assert [address for address, _ in email.sent] == ["chidi@pharmacy.test"]
        assert [address for address, _ in sms.sent] == ["+2348000000003"]
        assert scheduler.calls == []

    @pytest.mark.asyncio
    async def test_duplicate_recipients_notified_once(self, users, scheduler, clock, email):
        dispatcher = make_dispatcher(users, scheduler, clock, email)
        report = await dispatcher.notify("review_requested", [NURSE_ID, NURSE_ID], "Please review")
        assert report.sent == 1

    @pytest.mark.asyncio
    async def test_unknown_recipient_counts_as_failed(self, users, scheduler, clock, email):
        dispatcher = make_dispatcher(users, scheduler, clock, email)
        report = await dispatcher.notify("review_requested", [str(uuid.uuid4()), NURSE_ID], "Please review")
        assert report.failed == 1
        assert report.sent == 1


class TestRetries:

    @pytest.mark.asyncio
    async def test_normal_urgency_retries_twice_with_backoff(self, users, scheduler, clock):
        email = RecordingTransport(failures=10)
        dispatcher = make_dispatcher(users, scheduler, clock, email)

        report = await dispatcher.notify("intervention_assigned", [NURSE_ID], "Assigned")
        assert report.retrying == 1
        [notification_id] = report.notification_ids
        assert dispatcher.get_notification(notification_id).status == DeliveryStatus.RETRYING
        assert len(dispatcher.pending()) == 1

        assert await drain(scheduler) == [120, 240]
        notification = dispatcher.get_notification(notification_id)
        assert email.attempts == 3
        assert notification.status == DeliveryStatus.FAILED
        assert notification.last_error == "gateway timeout"
        assert dispatcher.pending() == []

    @pytest.mark.asyncio
    async def test_urgent_gets_five_attempts(self, users, scheduler, clock, sms):
        email = RecordingTransport(failures=10)
        dispatcher = make_dispatcher(users, scheduler, clock, email, sms)

        await dispatcher.notify("intervention_assigned", [PHARMACIST_ID], "Assigned", NotificationUrgency.CRITICAL)
        assert len(sms.sent) == 1

        assert await drain(scheduler) == [120, 240, 480, 960]
        assert email.attempts == 5

    @pytest.mark.asyncio
    async def test_retry_recovers(self, users, scheduler, clock):
        email = RecordingTransport(failures=1)
        dispatcher = make_dispatcher(users, scheduler, clock, email)

        report = await dispatcher.notify("intervention_assigned", [NURSE_ID], "Assigned")
        await drain(scheduler)

        notification = dispatcher.get_notification(report.notification_ids[0])
        assert notification.status == DeliveryStatus.SENT
        assert notification.attempts == 2
        assert len(email.sent) == 1

    @pytest.mark.asyncio
    async def test_stopped_scheduler_gives_up(self, users, scheduler, clock):
        await scheduler.stop()
        email = RecordingTransport(failures=1)
        dispatcher = make_dispatcher(users, scheduler, clock, email)

        report = await dispatcher.notify("intervention_assigned", [NURSE_ID], "Assigned")
        assert report.failed == 1
        assert report.retrying == 0

    @pytest.mark.asyncio
    async def test_retry_window_caps_retries(self, users, scheduler, clock):
        email = RecordingTransport(failures=1)
        dispatcher = make_dispatcher(users, scheduler, clock, email, retry_window_hours=0)

        report = await dispatcher.notify("intervention_assigned", [NURSE_ID], "Assigned")
        assert report.failed == 1
        assert scheduler.calls == []


class TestRetention:

    @pytest.mark.asyncio
    async def test_finished_deliveries_dropped_after_retry_window(self, users, scheduler, clock, email):
        dispatcher = make_dispatcher(users, scheduler, clock, email)
        for _ in range(50):
            await dispatcher.notify("intervention_assigned", [NURSE_ID], "Assigned")
        first = await dispatcher.notify("intervention_assigned", [NURSE_ID], "Assigned")
        assert len(dispatcher._notifications) == 51

        clock.advance(hours=25)
        latest = await dispatcher.notify("intervention_assigned", [NURSE_ID], "Assigned")

        assert dispatcher.get_notification(first.notification_ids[0]) is None
        assert dispatcher.get_notification(latest.notification_ids[0]).status == DeliveryStatus.SENT
        assert len(dispatcher._notifications) == 1

    @pytest.mark.asyncio
    async def test_retrying_deliveries_kept(self, users, scheduler, clock):
        email = RecordingTransport(failures=10)
        dispatcher = make_dispatcher(users, scheduler, clock, email)
        report = await dispatcher.notify("intervention_assigned", [NURSE_ID], "Assigned")

        clock.advance(hours=25)
        await dispatcher.notify("intervention_assigned", [PHYSICIAN_ID], "Assigned")

        assert dispatcher.get_notification(report.notification_ids[0]).status == DeliveryStatus.RETRYING
