"""
Plan lookup. Plans are read-only here; the free plan is the one with no
monthly price.
"""

from datetime import UTC, datetime

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import Plan, Subscription
from app.exceptions import PlanNotFoundError, SubscriptionNotFoundError
from app.models.api import SubscriptionStatus
from app.models.domain import PlanLimits

FREE_PLAN_NAME = "Free"


def _utc_now() -> datetime:
    return datetime.now(UTC)


def plan_limits(plan: Plan) -> PlanLimits:
    """Detach the enforcement-relevant limits from an ORM row."""
    return PlanLimits(
        plan_id=plan.id,
        name=plan.name,
        max_menus=plan.max_menus,
        max_products_per_menu=plan.max_products_per_menu,
        has_ads=plan.has_ads,
        allow_branches=plan.allow_branches,
    )


class PlanService:
    def __init__(self, session: AsyncSession) -> None:
        """Initialize with database session."""
        self.session = session

    async def get_free_plan(self) -> Plan:
        """
        Get the free plan.

        Raises:
            PlanNotFoundError: if no plan has a zero monthly price
        """
        result = await self.session.execute(
            select(Plan).where(Plan.price_monthly == 0).order_by(Plan.id).limit(1)
        )
        plan = result.scalar_one_or_none()
        if plan is None:
            raise PlanNotFoundError(FREE_PLAN_NAME)
        return plan

    async def get_active_plan(self, user_id: int) -> tuple[Subscription, Plan]:
        """
        Get the user's newest active, unexpired subscription and its plan.

        Raises:
            SubscriptionNotFoundError: if the user has no active subscription
        """
        now = _utc_now()
        result = await self.session.execute(
            select(Subscription, Plan)
            .join(Plan, Subscription.plan_id == Plan.id)
            .where(
                Subscription.user_id == user_id,
                Subscription.status == SubscriptionStatus.ACTIVE.value,
                or_(Subscription.end_date.is_(None), Subscription.end_date > now),
            )
            .order_by(Subscription.id.desc())
            .limit(1)
        )
        row = result.first()
        if row is None:
            raise SubscriptionNotFoundError(user_id)
        return row[0], row[1]
