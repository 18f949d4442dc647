"""
Tests for plan lookup.
"""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest
from conftest import make_result, make_subscription

from app.exceptions import PlanNotFoundError, SubscriptionNotFoundError
from app.services.plans import PlanService, plan_limits


class TestGetFreePlan:
    @pytest.mark.asyncio
    async def test_returns_zero_priced_plan(self, db_session, free_plan):
        db_session.execute = AsyncMock(return_value=make_result(scalar=free_plan))
        assert await PlanService(db_session).get_free_plan() is free_plan

    @pytest.mark.asyncio
    async def test_missing_free_plan_raises(self, db_session):
        with pytest.raises(PlanNotFoundError):
            await PlanService(db_session).get_free_plan()


class TestGetActivePlan:
    @pytest.mark.asyncio
    async def test_returns_subscription_and_plan(self, db_session, monthly_plan):
        subscription = make_subscription(end_date=datetime.now(UTC) + timedelta(days=10))
        db_session.execute = AsyncMock(
            return_value=make_result(rows=[(subscription, monthly_plan)])
        )

        found, plan = await PlanService(db_session).get_active_plan(42)

        assert found is subscription
        assert plan is monthly_plan

    @pytest.mark.asyncio
    async def test_no_active_subscription_raises(self, db_session):
        db_session.execute = AsyncMock(return_value=make_result(rows=[]))

        with pytest.raises(SubscriptionNotFoundError) as exc_info:
            await PlanService(db_session).get_active_plan(42)
        assert exc_info.value.user_id == 42


def test_plan_limits_detaches_row(monthly_plan):
    limits = plan_limits(monthly_plan)
    assert limits.plan_id == 2
    assert limits.max_menus == 3
    assert limits.unlimited_products is False
