"""
Downgrade Enforcement - trims a user's resources to the free plan's limits.

Oldest content wins: the oldest max_menus menus stay active and the rest
are deactivated (never deleted); in every menu the oldest
max_products_per_menu items survive and the rest are deleted permanently.
Ads and branches are deleted when the free plan does not allow them.

Enforcement is idempotent; a second run finds nothing to trim. That makes it
safe to call from the scheduler, the request-time check and the bulk script.
"""

from datetime import UTC, datetime

from sqlalchemy import delete, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.db.models import Ad, Branch, Menu, MenuItem, Plan, Subscription
from app.models.api import SubscriptionStatus
from app.models.domain import DowngradeReport
from app.observability.metrics import metrics
from app.services.plans import PlanService, plan_limits

logger = get_logger(__name__)


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class DowngradeService:
    """
    Applies free plan limits.

    All trims for one user are written in one transaction.
    """

    def __init__(self, session: AsyncSession) -> None:
        """Initialize with database session."""
        self.session = session
        self.plans = PlanService(session)

    async def handle_downgrade_to_free(self, user_id: int, commit: bool = True) -> DowngradeReport:
        """
        Enforce the free plan's limits on everything the user owns.

        With commit=False the trims are only flushed and join the caller's
        transaction.

        Raises:
            PlanNotFoundError: if there is no free plan
        """
        limits = plan_limits(await self.plans.get_free_plan())

        try:
            menus_result = await self.session.execute(
                select(Menu).where(Menu.user_id == user_id).order_by(Menu.created_at, Menu.id)
            )
            menus = list(menus_result.scalars().all())

            logger.info(
                "downgrade_enforcement_started",
                user_id=user_id,
                menus=len(menus),
                max_menus=limits.max_menus,
                max_products_per_menu=limits.max_products_per_menu,
            )

            menus_deactivated: list[int] = []
            for menu in menus[limits.max_menus :]:
                if menu.is_active:
                    menu.is_active = False
                    menus_deactivated.append(menu.id)

            products_deleted: list[int] = []
            if not limits.unlimited_products:
                for menu in menus:
                    items_result = await self.session.execute(
                        select(MenuItem)
                        .where(MenuItem.menu_id == menu.id)
                        .order_by(MenuItem.created_at, MenuItem.id)
                    )
                    items = list(items_result.scalars().all())
                    for item in items[limits.max_products_per_menu :]:
                        products_deleted.append(item.id)
                        await self.session.delete(item)

            menu_ids = [menu.id for menu in menus]
            ads_deleted = 0
            branches_deleted = 0
            if menu_ids and not limits.has_ads:
                ads_result = await self.session.execute(
                    delete(Ad).where(Ad.menu_id.in_(menu_ids))
                )
                ads_deleted = ads_result.rowcount or 0  # type: ignore[attr-defined]
            if menu_ids and not limits.allow_branches:
                branches_result = await self.session.execute(
                    delete(Branch).where(Branch.menu_id.in_(menu_ids))
                )
                branches_deleted = branches_result.rowcount or 0  # type: ignore[attr-defined]

            if commit:
                await self.session.commit()
            else:
                await self.session.flush()
        except Exception:
            if commit:
                await self.session.rollback()
            logger.exception("downgrade_enforcement_failed", user_id=user_id)
            raise

        report = DowngradeReport(
            user_id=user_id,
            menus_deactivated=menus_deactivated,
            products_deleted=products_deleted,
            ads_deleted=ads_deleted,
            branches_deleted=branches_deleted,
        )
        metrics.record_downgrade(
            menus=len(menus_deactivated),
            products=len(products_deleted),
            ads=ads_deleted,
            branches=branches_deleted,
        )
        logger.info(
            "downgrade_enforcement_completed",
            user_id=user_id,
            menus_deactivated=menus_deactivated,
            products_deleted=len(products_deleted),
            ads_deleted=ads_deleted,
            branches_deleted=branches_deleted,
        )
        return report

    async def should_be_on_free_plan(self, user_id: int) -> bool:
        """
        True if the user has no live paid subscription but had a paid one
        that expired (outside any grace window).
        """
        now = _utc_now()
        active_result = await self.session.execute(
            select(Plan.price_monthly)
            .join(Subscription, Subscription.plan_id == Plan.id)
            .where(
                Subscription.user_id == user_id,
                Subscription.status == SubscriptionStatus.ACTIVE.value,
                or_(Subscription.end_date.is_(None), Subscription.end_date > now),
            )
        )
        if any(float(price or 0) > 0 for price in active_result.scalars().all()):
            return False

        expired_result = await self.session.execute(
            select(Subscription.id)
            .join(Plan, Subscription.plan_id == Plan.id)
            .where(
                Subscription.user_id == user_id,
                Subscription.status == SubscriptionStatus.EXPIRED.value,
                Plan.price_monthly > 0,
                or_(
                    Subscription.grace_period_end_date.is_(None),
                    Subscription.grace_period_end_date <= now,
                ),
            )
            .limit(1)
        )
        return expired_result.scalar_one_or_none() is not None

    async def check_and_apply_downgrade(self, user_id: int) -> DowngradeReport | None:
        """
        Self-healing check: enforce free limits if the user should be on the
        free plan. Returns None when no enforcement was needed.
        """
        if not await self.should_be_on_free_plan(user_id):
            return None

        logger.info("downgrade_self_heal_triggered", user_id=user_id)
        return await self.handle_downgrade_to_free(user_id)

    async def on_subscription_expire(
        self, subscription_id: int, user_id: int
    ) -> DowngradeReport | None:
        """Enforce free limits right after a paid subscription expires."""
        result = await self.session.execute(
            select(Plan.price_monthly)
            .join(Subscription, Subscription.plan_id == Plan.id)
            .where(Subscription.id == subscription_id)
        )
        price = result.scalar_one_or_none()
        if price is None or float(price) <= 0:
            return None

        logger.info(
            "paid_subscription_expired", subscription_id=subscription_id, user_id=user_id
        )
        return await self.handle_downgrade_to_free(user_id)
