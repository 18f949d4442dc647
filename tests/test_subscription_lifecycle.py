"""
Tests for the Subscription Lifecycle passes and the request-time check.
"""

import time
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from conftest import make_result, make_subscription
from sqlalchemy.exc import OperationalError

from app.db.models import Notification
from app.models.domain import GRACE_PERIOD, DowngradeReport, PassReport
from app.services.downgrade import DowngradeService
from app.services.notifications import NotificationService
from app.services.subscription_lifecycle import (
    EXPIRATION_PASS,
    GRACE_EXPIRY_PASS,
    SELF_HEAL_INTERVAL_SECONDS,
    SubscriptionLifecycleService,
)


def _added_notifications(db_session) -> list[Notification]:
    return [
        call.args[0]
        for call in db_session.add.call_args_list
        if isinstance(call.args[0], Notification)
    ]


@pytest.fixture
def downgrade(db_session) -> MagicMock:
    mock = MagicMock(spec=DowngradeService)
    mock.handle_downgrade_to_free = AsyncMock(return_value=DowngradeReport(user_id=42))
    mock.check_and_apply_downgrade = AsyncMock(return_value=None)
    return mock


class TestExpiryWarnings:
    @pytest.mark.asyncio
    async def test_warns_once(self, db_session, downgrade, now):
        sub = make_subscription(end_date=now + timedelta(days=1))
        db_session.execute = AsyncMock(
            side_effect=[make_result(rows=[(sub.id, sub.plan_id, "Monthly")]), make_result(scalar=sub)]
        )
        service = SubscriptionLifecycleService(db_session, downgrade=downgrade)

        report = await service.send_expiry_warnings(now)

        assert report.processed == 1
        assert sub.expiry_notification_sent is True
        notifications = _added_notifications(db_session)
        assert [n.type for n in notifications] == ["subscription_expiring"]
        db_session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_already_warned_row_is_skipped(self, db_session, downgrade, now):
        sub = make_subscription(end_date=now + timedelta(days=1), expiry_notification_sent=True)
        db_session.execute = AsyncMock(
            side_effect=[make_result(rows=[(sub.id, sub.plan_id, "Monthly")]), make_result(scalar=sub)]
        )

        report = await SubscriptionLifecycleService(db_session, downgrade=downgrade).send_expiry_warnings(now)

        assert report.processed == 0
        assert report.skipped == 1
        assert _added_notifications(db_session) == []
        db_session.commit.assert_not_awaited()


class TestExpirationPass:
    @pytest.mark.asyncio
    async def test_scenario_c_grace_period_starts(self, db_session, downgrade, now):
        """Ended yesterday, no grace yet: expired with a two-day grace window."""
        sub = make_subscription(end_date=now - timedelta(days=1))
        db_session.execute = AsyncMock(
            side_effect=[make_result(rows=[(sub.id, sub.plan_id, "Monthly")]), make_result(scalar=sub)]
        )

        report = await SubscriptionLifecycleService(db_session, downgrade=downgrade).start_grace_periods(now)

        assert report.name == EXPIRATION_PASS
        assert report.processed == 1
        assert sub.status == "expired"
        assert sub.grace_period_start_date == now
        assert sub.grace_period_end_date == now + GRACE_PERIOD
        notifications = _added_notifications(db_session)
        assert len(notifications) == 1
        assert notifications[0].type == "subscription_expired"
        downgrade.handle_downgrade_to_free.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_second_run_is_a_no_op(self, db_session, downgrade, now):
        """A row already in grace fails the phase re-check."""
        sub = make_subscription(end_date=now - timedelta(days=1))
        candidate = make_result(rows=[(sub.id, sub.plan_id, "Monthly")])
        db_session.execute = AsyncMock(
            side_effect=[candidate, make_result(scalar=sub), candidate, make_result(scalar=sub)]
        )
        service = SubscriptionLifecycleService(db_session, downgrade=downgrade)

        first = await service.start_grace_periods(now)
        second = await service.start_grace_periods(now + timedelta(hours=1))

        assert first.processed == 1
        assert second.processed == 0
        assert second.skipped == 1
        assert len(_added_notifications(db_session)) == 1
        assert sub.grace_period_start_date == now

    @pytest.mark.asyncio
    async def test_plan_changed_since_selection_is_skipped(self, db_session, downgrade, now):
        sub = make_subscription(end_date=now - timedelta(days=1), plan_id=3)
        db_session.execute = AsyncMock(
            side_effect=[make_result(rows=[(sub.id, 2, "Monthly")]), make_result(scalar=sub)]
        )

        report = await SubscriptionLifecycleService(db_session, downgrade=downgrade).start_grace_periods(now)

        assert report.skipped == 1
        assert sub.status == "active"

    @pytest.mark.asyncio
    async def test_failing_row_does_not_stop_the_pass(self, db_session, downgrade, now):
        first = make_subscription(id=1, user_id=1, end_date=now - timedelta(days=1))
        second = make_subscription(id=2, user_id=2, end_date=now - timedelta(days=1))
        db_session.execute = AsyncMock(
            side_effect=[
                make_result(rows=[(1, 2, "Monthly"), (2, 2, "Monthly")]),
                make_result(scalar=first),
                make_result(scalar=second),
            ]
        )
        notifications = MagicMock(spec=NotificationService)
        notifications.notify_subscription_expired = AsyncMock(
            side_effect=[OperationalError("INSERT", {}, Exception("boom")), None]
        )
        service = SubscriptionLifecycleService(
            db_session, notifications=notifications, downgrade=downgrade
        )

        report = await service.start_grace_periods(now)

        assert report.failed == 1
        assert report.processed == 1
        db_session.rollback.assert_awaited_once()
        db_session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failing_row_marks_span_as_error(self, db_session, downgrade, now):
        sub = make_subscription(id=1, user_id=1, end_date=now - timedelta(days=1))
        db_session.execute = AsyncMock(
            side_effect=[make_result(rows=[(1, 2, "Monthly")]), make_result(scalar=sub)]
        )
        error = OperationalError("INSERT", {}, Exception("boom"))
        notifications = MagicMock(spec=NotificationService)
        notifications.notify_subscription_expired = AsyncMock(side_effect=error)
        service = SubscriptionLifecycleService(
            db_session, notifications=notifications, downgrade=downgrade
        )

        with patch("app.services.subscription_lifecycle.set_span_error") as mark_error:
            await service.start_grace_periods(now)

        mark_error.assert_called_once()
        assert mark_error.call_args.args[1] is error


class TestGraceExpiryPass:
    @pytest.mark.asyncio
    async def test_scenario_d_moves_to_free_plan(self, db_session, downgrade, free_plan, now):
        """Grace ended yesterday: free plan, grace cleared, one enforcement run."""
        sub = make_subscription(
            status="expired",
            end_date=now - timedelta(days=3),
            grace_start=now - timedelta(days=3),
            grace_end=now - timedelta(days=1),
            expiry_notification_sent=True,
        )
        db_session.execute = AsyncMock(
            side_effect=[
                make_result(scalar=free_plan),
                make_result(rows=[(sub.id, sub.plan_id, "Monthly")]),
                make_result(scalar=sub),
            ]
        )

        report = await SubscriptionLifecycleService(db_session, downgrade=downgrade).downgrade_expired_grace(now)

        assert report.name == GRACE_EXPIRY_PASS
        assert report.processed == 1
        assert sub.plan_id == free_plan.id
        assert sub.status == "active"
        assert sub.billing_cycle == "free"
        assert sub.start_date == now
        assert sub.end_date is None
        assert sub.grace_period_start_date is None
        assert sub.grace_period_end_date is None
        assert sub.expiry_notification_sent is False
        downgrade.handle_downgrade_to_free.assert_awaited_once_with(42, commit=False)
        assert [n.type for n in _added_notifications(db_session)] == ["downgraded_to_free"]
        db_session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_grace_still_running_is_skipped(self, db_session, downgrade, free_plan, now):
        sub = make_subscription(
            status="expired",
            grace_start=now - timedelta(days=1),
            grace_end=now + timedelta(days=1),
        )
        db_session.execute = AsyncMock(
            side_effect=[
                make_result(scalar=free_plan),
                make_result(rows=[(sub.id, sub.plan_id, "Monthly")]),
                make_result(scalar=sub),
            ]
        )

        report = await SubscriptionLifecycleService(db_session, downgrade=downgrade).downgrade_expired_grace(now)

        assert report.skipped == 1
        downgrade.handle_downgrade_to_free.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_enforcement_failure_rolls_back_transition(
        self, db_session, downgrade, free_plan, now
    ):
        sub = make_subscription(
            status="expired",
            grace_start=now - timedelta(days=3),
            grace_end=now - timedelta(days=1),
        )
        db_session.execute = AsyncMock(
            side_effect=[
                make_result(scalar=free_plan),
                make_result(rows=[(sub.id, sub.plan_id, "Monthly")]),
                make_result(scalar=sub),
            ]
        )
        downgrade.handle_downgrade_to_free = AsyncMock(side_effect=RuntimeError("trim failed"))

        report = await SubscriptionLifecycleService(db_session, downgrade=downgrade).downgrade_expired_grace(now)

        assert report.failed == 1
        db_session.rollback.assert_awaited_once()
        db_session.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_free_plan_fails_every_candidate(self, db_session, downgrade, now):
        db_session.execute = AsyncMock(
            side_effect=[
                make_result(scalar=None),
                make_result(rows=[(1, 2, "Monthly"), (2, 3, "Yearly")]),
            ]
        )

        report = await SubscriptionLifecycleService(db_session, downgrade=downgrade).downgrade_expired_grace(now)

        assert report.failed == 2
        assert report.processed == 0
        downgrade.handle_downgrade_to_free.assert_not_awaited()


class TestRunAllChecks:
    @pytest.mark.asyncio
    async def test_runs_passes_in_order(self, db_session, downgrade, now):
        service = SubscriptionLifecycleService(db_session, downgrade=downgrade)
        calls: list[str] = []

        def recorder(name):
            async def run(now=None):
                calls.append(name)
                return PassReport(name=name)

            return run

        service.send_expiry_warnings = recorder("warn")
        service.start_grace_periods = recorder("grace")
        service.downgrade_expired_grace = recorder("downgrade")

        report = await service.run_all_checks(now)

        assert calls == ["warn", "grace", "downgrade"]
        assert report.started_at == now
        assert report.downgraded.name == "downgrade"


class TestRequestTimeCheck:
    @pytest.mark.asyncio
    async def test_overdue_subscription_lands_on_free_plan(
        self, db_session, downgrade, free_plan, now
    ):
        sub = make_subscription(end_date=now - timedelta(minutes=5))
        db_session.execute = AsyncMock(
            side_effect=[make_result(rows=[(sub, "Monthly")]), make_result(scalar=free_plan)]
        )
        service = SubscriptionLifecycleService(db_session, downgrade=downgrade)

        report = await service.check_user_subscription(42)

        assert report == DowngradeReport(user_id=42)
        assert sub.plan_id == free_plan.id
        assert sub.status == "active"
        assert sub.billing_cycle == "free"
        assert sub.end_date is None
        assert sub.grace_period_end_date is None
        assert [n.type for n in _added_notifications(db_session)] == ["downgraded_to_free"]
        downgrade.handle_downgrade_to_free.assert_awaited_once_with(42, commit=False)
        downgrade.check_and_apply_downgrade.assert_not_awaited()
        db_session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_nothing_overdue_runs_self_heal(self, db_session, downgrade):
        service = SubscriptionLifecycleService(db_session, downgrade=downgrade)

        await service.check_user_subscription(42)

        downgrade.check_and_apply_downgrade.assert_awaited_once_with(42)
        downgrade.handle_downgrade_to_free.assert_not_awaited()
        assert _added_notifications(db_session) == []

    @pytest.mark.asyncio
    async def test_recent_check_is_throttled(self, db_session, downgrade):
        service = SubscriptionLifecycleService(db_session, downgrade=downgrade)

        await service.check_user_subscription(42)
        await service.check_user_subscription(42)

        downgrade.check_and_apply_downgrade.assert_awaited_once_with(42)

    @pytest.mark.asyncio
    async def test_overdue_subscription_bypasses_throttle(
        self, db_session, downgrade, free_plan, now
    ):
        sub = make_subscription(end_date=now - timedelta(minutes=5))
        db_session.execute = AsyncMock(
            side_effect=[
                make_result(rows=[]),
                make_result(rows=[(sub, "Monthly")]),
                make_result(scalar=free_plan),
            ]
        )
        service = SubscriptionLifecycleService(db_session, downgrade=downgrade)

        await service.check_user_subscription(42)
        await service.check_user_subscription(42)

        downgrade.check_and_apply_downgrade.assert_awaited_once_with(42)
        downgrade.handle_downgrade_to_free.assert_awaited_once_with(42, commit=False)

    @pytest.mark.asyncio
    async def test_missing_free_plan_leaves_row_untouched(self, db_session, downgrade, now):
        sub = make_subscription(end_date=now - timedelta(minutes=5))
        db_session.execute = AsyncMock(
            side_effect=[make_result(rows=[(sub, "Monthly")]), make_result(scalar=None)]
        )
        service = SubscriptionLifecycleService(db_session, downgrade=downgrade)

        assert await service.check_user_subscription(42) is None

        assert sub.plan_id == 2
        assert sub.status == "active"
        db_session.rollback.assert_awaited_once()
        db_session.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_never_raises(self, db_session, downgrade):
        db_session.execute = AsyncMock(side_effect=OperationalError("SELECT", {}, Exception("down")))
        service = SubscriptionLifecycleService(db_session, downgrade=downgrade)

        assert await service.check_user_subscription(42) is None
        db_session.rollback.assert_awaited_once()


class TestRecentCheckCache:
    @pytest.mark.asyncio
    async def test_bounded_by_size(self, db_session, downgrade):
        service = SubscriptionLifecycleService(db_session, downgrade=downgrade)

        with patch("app.services.subscription_lifecycle.RECENT_CHECKS_MAX", 2):
            for user_id in (1, 2, 3):
                await service.check_user_subscription(user_id)

        assert list(SubscriptionLifecycleService._recent_checks) == [2, 3]

    @pytest.mark.asyncio
    async def test_stale_entries_evicted(self, db_session, downgrade):
        SubscriptionLifecycleService._recent_checks[7] = time.monotonic() - (
            SELF_HEAL_INTERVAL_SECONDS + 1
        )
        service = SubscriptionLifecycleService(db_session, downgrade=downgrade)

        await service.check_user_subscription(42)

        assert 7 not in SubscriptionLifecycleService._recent_checks
        assert 42 in SubscriptionLifecycleService._recent_checks
