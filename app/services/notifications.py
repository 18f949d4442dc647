"""
Notification Service - bilingual user notifications for lifecycle transitions.

Notifications are added to the caller's session and flushed; the caller
commits them together with the state transition that produced them, so a
transition and its notification persist together or not at all.
"""

from datetime import UTC, datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.db.models import Notification
from app.models.api import NotificationType

logger = get_logger(__name__)

_ARABIC_MONTHS = (
    "يناير",
    "فبراير",
    "مارس",
    "أبريل",
    "مايو",
    "يونيو",
    "يوليو",
    "أغسطس",
    "سبتمبر",
    "أكتوبر",
    "نوفمبر",
    "ديسمبر",
)


def format_date(value: datetime) -> str:
    """English long date, e.g. 'October 19, 2026'."""
    return f"{value:%B} {value.day}, {value.year}"


def format_date_ar(value: datetime) -> str:
    """Arabic long date (Gregorian calendar)."""
    return f"{value.day} {_ARABIC_MONTHS[value.month - 1]} {value.year}"


class NotificationService:
    """Creates notification rows; never commits."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize with database session."""
        self.session = session

    async def create_notification(
        self,
        user_id: int,
        notification_type: NotificationType,
        title: str,
        title_ar: str,
        message: str,
        message_ar: str,
        metadata: dict[str, Any] | None = None,
    ) -> Notification:
        """Add a notification to the session and flush it."""
        notification = Notification(
            user_id=user_id,
            type=notification_type.value,
            title=title,
            title_ar=title_ar,
            message=message,
            message_ar=message_ar,
            metadata_json=metadata,
            is_read=False,
            created_at=datetime.now(UTC),
        )
        self.session.add(notification)
        await self.session.flush()

        logger.info("notification_created", user_id=user_id, type=notification_type.value)
        return notification

    async def notify_subscription_created(
        self, user_id: int, plan_name: str, end_date: datetime | None = None
    ) -> Notification:
        """Welcome message; plans without an end date (free) get no expiry sentence."""
        if end_date is None:
            message = "Your subscription has been activated successfully. Enjoy your plan!"
            message_ar = "تم تفعيل اشتراكك بنجاح. استمتع بخطتك!"
        else:
            message = (
                "Your subscription has been activated successfully. Your plan will remain "
                f"active until {format_date(end_date)}. Enjoy all the premium features!"
            )
            message_ar = (
                f"تم تفعيل اشتراكك بنجاح. ستبقى خطتك نشطة حتى {format_date_ar(end_date)}. "
                "استمتع بجميع المميزات المتقدمة!"
            )
        return await self.create_notification(
            user_id,
            NotificationType.SUBSCRIPTION_CREATED,
            title=f"Welcome to {plan_name} Plan!",
            title_ar=f"مرحباً بك في خطة {plan_name}!",
            message=message,
            message_ar=message_ar,
            metadata={
                "plan_name": plan_name,
                "end_date": end_date.isoformat() if end_date else None,
            },
        )

    async def notify_subscription_expiring(
        self, user_id: int, plan_name: str, end_date: datetime
    ) -> Notification:
        """Warning sent once, ahead of the end date."""
        return await self.create_notification(
            user_id,
            NotificationType.SUBSCRIPTION_EXPIRING,
            title="Your Subscription is Expiring Soon",
            title_ar="اشتراكك على وشك الانتهاء",
            message=(
                f"Your {plan_name} subscription will expire on {format_date(end_date)}. "
                "Renew now to continue enjoying premium features without interruption."
            ),
            message_ar=(
                f"سينتهي اشتراكك في خطة {plan_name} في {format_date_ar(end_date)}. "
                "جدد الآن للاستمرار في الاستفادة من المميزات المتقدمة دون انقطاع."
            ),
            metadata={"plan_name": plan_name, "end_date": end_date.isoformat()},
        )

    async def notify_subscription_expired(
        self, user_id: int, plan_name: str, grace_period_end_date: datetime
    ) -> Notification:
        """Sent when the grace period starts."""
        return await self.create_notification(
            user_id,
            NotificationType.SUBSCRIPTION_EXPIRED,
            title="Subscription Expired - Grace Period Active",
            title_ar="انتهى الاشتراك - فترة سماح نشطة",
            message=(
                f"Your {plan_name} subscription has expired. You have a 2-day grace period "
                f"until {format_date(grace_period_end_date)} to renew before being "
                "downgraded to the Free plan."
            ),
            message_ar=(
                f"لقد انتهى اشتراكك في خطة {plan_name}. لديك فترة سماح لمدة يومين حتى "
                f"{format_date_ar(grace_period_end_date)} للتجديد قبل التحويل إلى الخطة المجانية."
            ),
            metadata={
                "plan_name": plan_name,
                "grace_period_end_date": grace_period_end_date.isoformat(),
            },
        )

    async def notify_downgraded_to_free(self, user_id: int, old_plan_name: str) -> Notification:
        return await self.create_notification(
            user_id,
            NotificationType.DOWNGRADED_TO_FREE,
            title="Account Downgraded to Free Plan",
            title_ar="تم تحويل حسابك إلى الخطة المجانية",
            message=(
                f"Your {old_plan_name} subscription has ended and your account has been "
                "downgraded to the Free plan. Some features may be limited. Upgrade anytime "
                "to restore full access."
            ),
            message_ar=(
                f"لقد انتهى اشتراكك في خطة {old_plan_name} وتم تحويل حسابك إلى الخطة المجانية. "
                "قد تكون بعض المميزات محدودة. يمكنك الترقية في أي وقت لاستعادة الوصول الكامل."
            ),
            metadata={"old_plan_name": old_plan_name},
        )
