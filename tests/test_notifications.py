"""
Tests for the Notification Service.

Notifications are bilingual and only flushed; the caller owns the commit.
"""

from datetime import UTC, datetime

import pytest

from app.db.models import Notification
from app.models.api import NotificationType
from app.services.notifications import NotificationService, format_date, format_date_ar

END = datetime(2026, 10, 21, 9, 30, tzinfo=UTC)


class TestDateFormatting:
    def test_english_long_date(self):
        assert format_date(END) == "October 21, 2026"

    def test_arabic_long_date(self):
        assert format_date_ar(END) == "21 أكتوبر 2026"

    def test_single_digit_day_not_padded(self):
        assert format_date(datetime(2026, 3, 5, tzinfo=UTC)) == "March 5, 2026"


class TestNotificationService:
    @pytest.mark.asyncio
    async def test_create_flushes_without_commit(self, db_session):
        service = NotificationService(db_session)

        notification = await service.create_notification(
            42,
            NotificationType.SUBSCRIPTION_CREATED,
            title="t",
            title_ar="ت",
            message="m",
            message_ar="م",
        )

        assert isinstance(notification, Notification)
        assert notification.is_read is False
        db_session.add.assert_called_once_with(notification)
        db_session.flush.assert_awaited_once()
        db_session.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_expiring_mentions_plan_and_date(self, db_session):
        notification = await NotificationService(db_session).notify_subscription_expiring(
            42, "Monthly", END
        )

        assert notification.type == "subscription_expiring"
        assert "Monthly" in notification.message
        assert "October 21, 2026" in notification.message
        assert "أكتوبر" in notification.message_ar
        assert notification.metadata_json == {"plan_name": "Monthly", "end_date": END.isoformat()}

    @pytest.mark.asyncio
    async def test_expired_mentions_grace_end(self, db_session):
        notification = await NotificationService(db_session).notify_subscription_expired(
            42, "Yearly", END
        )

        assert notification.type == "subscription_expired"
        assert "2-day grace period" in notification.message
        assert "October 21, 2026" in notification.message
        assert notification.metadata_json["grace_period_end_date"] == END.isoformat()

    @pytest.mark.asyncio
    async def test_downgraded_names_old_plan(self, db_session):
        notification = await NotificationService(db_session).notify_downgraded_to_free(
            42, "Monthly"
        )

        assert notification.type == "downgraded_to_free"
        assert notification.title == "Account Downgraded to Free Plan"
        assert "Monthly" in notification.message
        assert "Monthly" in notification.message_ar

    @pytest.mark.asyncio
    async def test_created_welcome(self, db_session):
        notification = await NotificationService(db_session).notify_subscription_created(
            42, "Monthly", END
        )
        assert notification.title == "Welcome to Monthly Plan!"
        assert notification.title_ar == "مرحباً بك في خطة Monthly!"

    @pytest.mark.asyncio
    async def test_created_welcome_without_end_date(self, db_session):
        notification = await NotificationService(db_session).notify_subscription_created(42, "Free")
        assert notification.type == "subscription_created"
        assert "until" not in notification.message
        assert notification.metadata_json == {"plan_name": "Free", "end_date": None}
