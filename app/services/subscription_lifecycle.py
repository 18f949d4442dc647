"""
Subscription Lifecycle - the three scheduler passes and the request-time check.

Passes, in order:
1. expiry warning:  ExpiringSoon  -> ExpiringNotified  (subscription_expiring)
2. expiration:      Lapsed        -> Grace             (subscription_expired)
3. grace expiry:    GraceElapsed  -> FreePlan          (downgraded_to_free + enforcement)

Each pass selects candidates in SQL, then re-reads every row under a row
lock and acts only if classify_subscription still puts it in the pass's
phase. A row's transition and its notification commit together; a failing
row is logged and the pass moves on.

The request-time check handles one user whose paid subscription is already
past its end date: it lands the row on the free plan the way pass 3 does,
without waiting for the scheduler.
"""

import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import ClassVar

from sqlalchemy import Select, select
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.db.models import Plan, Subscription
from app.exceptions import PlanNotFoundError
from app.models.api import BillingCycle, SubscriptionStatus
from app.models.domain import (
    EXPIRY_WARNING_WINDOW,
    GRACE_PERIOD,
    DowngradeReport,
    ExpiringSoon,
    GraceElapsed,
    Lapsed,
    LifecycleRunReport,
    PassReport,
    SubscriptionPhase,
    SubscriptionUpdate,
    classify_subscription,
)
from app.observability.metrics import metrics
from app.observability.tracing import get_tracer, set_span_error
from app.services.downgrade import DowngradeService
from app.services.notifications import NotificationService
from app.services.plans import PlanService

logger = get_logger(__name__)
tracer = get_tracer(__name__)

# Minimum seconds between self-healing enforcement checks for one user
SELF_HEAL_INTERVAL_SECONDS = 300
# Upper bound on users tracked for the self-heal throttle
RECENT_CHECKS_MAX = 10_000

EXPIRY_WARNING_PASS = "expiry_warning"
EXPIRATION_PASS = "expiration"
GRACE_EXPIRY_PASS = "grace_expiry"

# (subscription, phase, plan_name, now)
RowAction = Callable[[Subscription, SubscriptionPhase, str, datetime], Awaitable[None]]


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def phase_of(subscription: Subscription, now: datetime) -> SubscriptionPhase:
    """Classify a paid subscription row."""
    return classify_subscription(
        status=subscription.status,
        is_free_plan=False,
        end_date=subscription.end_date,
        grace_period_start=subscription.grace_period_start_date,
        grace_period_end=subscription.grace_period_end_date,
        expiry_notification_sent=subscription.expiry_notification_sent,
        now=now,
    )


def free_plan_update(free_plan_id: int, now: datetime) -> SubscriptionUpdate:
    """Re-point a subscription at the free plan and reset its lifecycle fields."""
    return SubscriptionUpdate(
        plan_id=free_plan_id,
        billing_cycle=BillingCycle.FREE.value,
        status=SubscriptionStatus.ACTIVE,
        start_date=now,
        clear_end_date=True,
        clear_grace_period=True,
        expiry_notification_sent=False,
        notification_sent=False,
    )


def _candidates() -> Select:
    return select(Subscription.id, Subscription.plan_id, Plan.name).join(
        Plan, Subscription.plan_id == Plan.id
    )


class SubscriptionLifecycleService:
    """
    Advances subscriptions through their lifecycle.

    Usage:
        async with get_session() as session:
            report = await SubscriptionLifecycleService(session).run_all_checks()
    """

    # Key: user_id, Value: monotonic time of the last self-healing check
    _recent_checks: ClassVar[dict[int, float]] = {}

    def __init__(
        self,
        session: AsyncSession,
        notifications: NotificationService | None = None,
        downgrade: DowngradeService | None = None,
    ) -> None:
        """Initialize with database session and collaborators."""
        self.session = session
        self.notifications = notifications or NotificationService(session)
        self.downgrade = downgrade or DowngradeService(session)
        self.plans = PlanService(session)

    # ------------------------------------------------------------------
    # Scheduler passes
    # ------------------------------------------------------------------

    async def send_expiry_warnings(self, now: datetime | None = None) -> PassReport:
        """Pass 1: warn once about subscriptions ending within the warning window."""
        now = now or _utc_now()
        stmt = _candidates().where(
            Subscription.status == SubscriptionStatus.ACTIVE.value,
            Subscription.expiry_notification_sent.is_(False),
            Subscription.end_date.isnot(None),
            Subscription.end_date > now,
            Subscription.end_date <= now + EXPIRY_WARNING_WINDOW,
            Plan.price_monthly > 0,
        )

        async def warn(
            subscription: Subscription, phase: SubscriptionPhase, plan_name: str, now: datetime
        ) -> None:
            await self.notifications.notify_subscription_expiring(
                subscription.user_id, plan_name, subscription.end_date
            )
            SubscriptionUpdate(expiry_notification_sent=True).apply(subscription)

        return await self._run_pass(EXPIRY_WARNING_PASS, stmt, ExpiringSoon, warn, now)

    async def start_grace_periods(self, now: datetime | None = None) -> PassReport:
        """Pass 2: move lapsed subscriptions into the grace window. Runs once per row."""
        now = now or _utc_now()
        stmt = _candidates().where(
            Subscription.status == SubscriptionStatus.ACTIVE.value,
            Subscription.end_date.isnot(None),
            Subscription.end_date <= now,
            Subscription.grace_period_start_date.is_(None),
            Plan.price_monthly > 0,
        )

        async def start_grace(
            subscription: Subscription, phase: SubscriptionPhase, plan_name: str, now: datetime
        ) -> None:
            grace_end = now + GRACE_PERIOD
            SubscriptionUpdate(
                status=SubscriptionStatus.EXPIRED,
                grace_period_start_date=now,
                grace_period_end_date=grace_end,
            ).apply(subscription)
            await self.notifications.notify_subscription_expired(
                subscription.user_id, plan_name, grace_end
            )
            logger.info(
                "subscription_grace_started",
                subscription_id=subscription.id,
                user_id=subscription.user_id,
                grace_period_end=grace_end.isoformat(),
            )

        return await self._run_pass(EXPIRATION_PASS, stmt, Lapsed, start_grace, now)

    async def downgrade_expired_grace(self, now: datetime | None = None) -> PassReport:
        """
        Pass 3: re-point subscriptions whose grace window has passed at the
        free plan and enforce its limits.
        """
        now = now or _utc_now()
        stmt = _candidates().where(
            Subscription.status == SubscriptionStatus.EXPIRED.value,
            Subscription.grace_period_end_date.isnot(None),
            Subscription.grace_period_end_date <= now,
            Plan.price_monthly > 0,
        )

        try:
            free_plan = await self.plans.get_free_plan()
        except PlanNotFoundError:
            rows = (await self.session.execute(stmt)).all()
            logger.error("grace_expiry_pass_aborted", reason="free_plan_missing", pending=len(rows))
            report = PassReport(name=GRACE_EXPIRY_PASS, failed=len(rows))
            metrics.record_pass(GRACE_EXPIRY_PASS, 0, 0, report.failed)
            return report
        free_plan_id = free_plan.id

        async def downgrade(
            subscription: Subscription, phase: SubscriptionPhase, plan_name: str, now: datetime
        ) -> None:
            free_plan_update(free_plan_id, now).apply(subscription)
            await self.notifications.notify_downgraded_to_free(subscription.user_id, plan_name)
            await self.downgrade.handle_downgrade_to_free(subscription.user_id, commit=False)
            logger.info(
                "subscription_downgraded_to_free",
                subscription_id=subscription.id,
                user_id=subscription.user_id,
                old_plan=plan_name,
            )

        return await self._run_pass(GRACE_EXPIRY_PASS, stmt, GraceElapsed, downgrade, now)

    async def run_all_checks(self, now: datetime | None = None) -> LifecycleRunReport:
        """Run the three passes in order."""
        started_at = now or _utc_now()
        expiry_warnings = await self.send_expiry_warnings(now)
        grace_started = await self.start_grace_periods(now)
        downgraded = await self.downgrade_expired_grace(now)
        report = LifecycleRunReport(
            expiry_warnings=expiry_warnings,
            grace_started=grace_started,
            downgraded=downgraded,
            started_at=started_at,
            finished_at=_utc_now(),
        )
        logger.info(
            "subscription_checks_completed",
            warnings_sent=expiry_warnings.processed,
            grace_started=grace_started.processed,
            downgraded=downgraded.processed,
            failed=expiry_warnings.failed + grace_started.failed + downgraded.failed,
        )
        return report

    async def _run_pass(
        self,
        name: str,
        stmt: Select,
        expected_phase: type,
        action: RowAction,
        now: datetime,
    ) -> PassReport:
        processed = skipped = failed = 0

        with tracer.start_as_current_span(f"subscription.{name}") as span:
            rows = (await self.session.execute(stmt)).all()
            span.set_attribute("candidates", len(rows))

            for subscription_id, plan_id, plan_name in rows:
                try:
                    result = await self.session.execute(
                        select(Subscription)
                        .where(Subscription.id == subscription_id)
                        .with_for_update()
                        .execution_options(populate_existing=True)
                    )
                    subscription = result.scalar_one_or_none()

                    if subscription is None or subscription.plan_id != plan_id:
                        await self.session.rollback()
                        skipped += 1
                        continue

                    phase = phase_of(subscription, now)
                    if not isinstance(phase, expected_phase):
                        await self.session.rollback()
                        logger.debug(
                            "subscription_phase_mismatch",
                            pass_name=name,
                            subscription_id=subscription_id,
                            phase=type(phase).__name__,
                        )
                        skipped += 1
                        continue

                    await action(subscription, phase, plan_name, now)
                    await self.session.commit()
                    processed += 1
                except Exception as e:
                    await self.session.rollback()
                    failed += 1
                    set_span_error(span, e)
                    logger.error(
                        "subscription_pass_row_failed",
                        pass_name=name,
                        subscription_id=subscription_id,
                        error=str(e),
                        exc_info=True,
                    )

            span.set_attribute("processed", processed)
            span.set_attribute("failed", failed)

        metrics.record_pass(name, processed, skipped, failed)
        if rows:
            logger.info(
                "subscription_pass_completed",
                pass_name=name,
                candidates=len(rows),
                processed=processed,
                skipped=skipped,
                failed=failed,
            )
        return PassReport(name=name, processed=processed, skipped=skipped, failed=failed)

    # ------------------------------------------------------------------
    # Request-time check
    # ------------------------------------------------------------------

    async def check_user_subscription(self, user_id: int) -> DowngradeReport | None:
        """
        Lightweight per-user check run on authenticated requests.

        An overdue paid subscription is moved straight to the free plan in
        one transaction: re-pointed, notified and enforced. Otherwise
        self-healing enforcement runs when the user has not been checked
        recently. Never raises.
        """
        try:
            report = await self._expire_overdue(user_id, _utc_now())

            now = time.monotonic()
            if report is None and self._checked_recently(user_id, now):
                return None
            self._remember_check(user_id, now)

            if report is not None:
                return report
            return await self.downgrade.check_and_apply_downgrade(user_id)
        except Exception as e:
            await self.session.rollback()
            logger.error("request_subscription_check_failed", user_id=user_id, error=str(e))
            return None

    async def _expire_overdue(self, user_id: int, now: datetime) -> DowngradeReport | None:
        result = await self.session.execute(
            select(Subscription, Plan.name)
            .join(Plan, Subscription.plan_id == Plan.id)
            .where(
                Subscription.user_id == user_id,
                Subscription.status == SubscriptionStatus.ACTIVE.value,
                Subscription.end_date.isnot(None),
                Subscription.end_date <= now,
                Plan.price_monthly > 0,
            )
            .with_for_update(of=Subscription)
        )
        overdue = result.all()
        if not overdue:
            return None

        free_plan = await self.plans.get_free_plan()
        for subscription, plan_name in overdue:
            free_plan_update(free_plan.id, now).apply(subscription)
            await self.notifications.notify_downgraded_to_free(user_id, plan_name)
            logger.info(
                "subscription_expired_on_request",
                subscription_id=subscription.id,
                user_id=user_id,
                old_plan=plan_name,
            )

        report = await self.downgrade.handle_downgrade_to_free(user_id, commit=False)
        await self.session.commit()
        return report

    @staticmethod
    def _checked_recently(user_id: int, now: float) -> bool:
        last = SubscriptionLifecycleService._recent_checks.get(user_id)
        return last is not None and now - last < SELF_HEAL_INTERVAL_SECONDS

    @staticmethod
    def _remember_check(user_id: int, now: float) -> None:
        # Insertion order is check order, so the front holds the oldest entries
        checks = SubscriptionLifecycleService._recent_checks
        checks.pop(user_id, None)
        checks[user_id] = now
        while checks:
            oldest_user, oldest_at = next(iter(checks.items()))
            if now - oldest_at < SELF_HEAL_INTERVAL_SECONDS and len(checks) <= RECENT_CHECKS_MAX:
                break
            del checks[oldest_user]
