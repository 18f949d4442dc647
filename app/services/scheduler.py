"""
Background schedulers.

RecurringJob owns one asyncio task with an explicit start/stop lifecycle.
SubscriptionScheduler runs the lifecycle passes hourly (and once at start);
CleanupScheduler runs the retention purge daily at CLEANUP_HOUR_UTC.

With several instances, every pass is guarded by a DistributedLock so no two
instances run the same pass at once. The lease is released as soon as the pass
finishes, so a staggered instance may repeat it within the same interval and
find nothing left to do. The lease TTL only bounds how long a crashed holder
blocks the others. LocalLock is enough for a single instance; DatabaseLock
coordinates through the scheduler_locks table.
"""

import asyncio
import os
import socket
import time
import uuid
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import Protocol

from sqlalchemy import delete, or_
from sqlalchemy.dialects.postgresql import insert as pg_insert
from structlog import get_logger

from app.config import settings
from app.db.models import SchedulerLock
from app.db.session import SessionContextFactory, get_session
from app.models.domain import CleanupReport, LifecycleRunReport, PassReport
from app.observability.metrics import metrics
from app.services.cleanup import CleanupService
from app.services.subscription_lifecycle import (
    EXPIRATION_PASS,
    EXPIRY_WARNING_PASS,
    GRACE_EXPIRY_PASS,
    SubscriptionLifecycleService,
)

logger = get_logger(__name__)

MAX_BACKOFF_SECONDS = 6 * 3600


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


# ============================================================================
# Distributed locks
# ============================================================================


class DistributedLock(Protocol):
    async def try_acquire(self, lock_name: str, ttl: timedelta) -> bool:
        """Acquire lock_name for ttl unless someone else holds it. Never blocks."""
        ...

    async def release(self, lock_name: str) -> None: ...


class LocalLock:
    """In-process lock; correct only when a single instance runs the scheduler."""

    def __init__(self) -> None:
        self._held: dict[str, float] = {}

    async def try_acquire(self, lock_name: str, ttl: timedelta) -> bool:
        now = time.monotonic()
        expires = self._held.get(lock_name)
        if expires is not None and now < expires:
            return False
        self._held[lock_name] = now + ttl.total_seconds()
        return True

    async def release(self, lock_name: str) -> None:
        self._held.pop(lock_name, None)


class DatabaseLock:
    """
    Lease lock stored in scheduler_locks.

    Acquisition is a single upsert that only overwrites a row whose lease has
    expired (or that this holder already owns), so two instances can never
    both hold the same lock.
    """

    def __init__(
        self,
        session_factory: SessionContextFactory = get_session,
        holder: str | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.holder = holder or f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"

    async def try_acquire(self, lock_name: str, ttl: timedelta) -> bool:
        now = _utc_now()
        table = SchedulerLock.__table__
        stmt = pg_insert(SchedulerLock).values(
            name=lock_name, holder=self.holder, acquired_at=now, expires_at=now + ttl
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.name],
            set_={
                "holder": stmt.excluded.holder,
                "acquired_at": stmt.excluded.acquired_at,
                "expires_at": stmt.excluded.expires_at,
            },
            where=or_(table.c.expires_at <= now, table.c.holder == self.holder),
        ).returning(table.c.holder)

        async with self.session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
            acquired = result.scalar_one_or_none() == self.holder

        logger.debug("scheduler_lock_attempt", lock=lock_name, holder=self.holder, acquired=acquired)
        return acquired

    async def release(self, lock_name: str) -> None:
        async with self.session_factory() as session:
            await session.execute(
                delete(SchedulerLock).where(
                    SchedulerLock.name == lock_name, SchedulerLock.holder == self.holder
                )
            )
            await session.commit()


def create_lock(backend: str | None = None) -> DistributedLock:
    """Build the lock configured by SCHEDULER_LOCK_BACKEND."""
    backend = backend or settings.scheduler_lock_backend
    if backend == "local":
        return LocalLock()
    return DatabaseLock()


# ============================================================================
# Recurring job base
# ============================================================================


class RecurringJob:
    """
    Owned background task running run_once() on a schedule.

    Failures are logged and retried on the next tick; after more than three
    consecutive failures the delay grows exponentially.
    """

    name = "recurring_job"

    def __init__(self, run_at_start: bool = True) -> None:
        self.run_at_start = run_at_start
        self._running = False
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._running

    def seconds_until_next_run(self) -> float:
        raise NotImplementedError

    async def run_once(self) -> None:
        raise NotImplementedError

    async def start(self) -> None:
        """Start the background task."""
        if self._running:
            logger.warning("scheduler_already_running", job=self.name)
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop(), name=self.name)
        logger.info("scheduler_started", job=self.name, run_at_start=self.run_at_start)

    async def stop(self) -> None:
        """Stop the background task, cancelling a run in progress."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("scheduler_stopped", job=self.name)

    async def _run_loop(self) -> None:
        consecutive_errors = 0
        if not self.run_at_start:
            await asyncio.sleep(self.seconds_until_next_run())

        while self._running:
            started = time.monotonic()
            try:
                await self.run_once()
                consecutive_errors = 0
            except Exception as exc:
                consecutive_errors += 1
                logger.error(
                    "scheduler_run_failed",
                    job=self.name,
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_errors=consecutive_errors,
                )
                if consecutive_errors > 3:
                    backoff = min(
                        MAX_BACKOFF_SECONDS,
                        self.seconds_until_next_run() * (2 ** (consecutive_errors - 3)),
                    )
                    logger.warning(
                        "scheduler_backoff",
                        job=self.name,
                        backoff_seconds=backoff,
                        consecutive_errors=consecutive_errors,
                    )
                    await asyncio.sleep(backoff)
                    continue
            finally:
                metrics.scheduler_run_duration_seconds.labels(job=self.name).observe(
                    time.monotonic() - started
                )

            await asyncio.sleep(self.seconds_until_next_run())


# ============================================================================
# Concrete schedulers
# ============================================================================


class SubscriptionScheduler(RecurringJob):
    """Runs the three lifecycle passes, each under its own distributed lock."""

    name = "subscription_lifecycle"

    def __init__(
        self,
        session_factory: SessionContextFactory = get_session,
        lock: DistributedLock | None = None,
        interval_seconds: int | None = None,
        run_at_start: bool = True,
    ) -> None:
        super().__init__(run_at_start=run_at_start)
        self.session_factory = session_factory
        self.lock = lock or create_lock()
        self.interval_seconds = interval_seconds or settings.subscription_check_interval_seconds
        self.last_report: LifecycleRunReport | None = None

    def seconds_until_next_run(self) -> float:
        return float(self.interval_seconds)

    async def _guarded_pass(
        self,
        pass_name: str,
        run: Callable[[SubscriptionLifecycleService], Awaitable[PassReport]],
    ) -> PassReport:
        lock_name = f"subscription:{pass_name}"
        if not await self.lock.try_acquire(lock_name, timedelta(seconds=self.interval_seconds)):
            logger.info("subscription_pass_skipped_lock_held", pass_name=pass_name)
            return PassReport(name=pass_name)

        try:
            async with self.session_factory() as session:
                return await run(SubscriptionLifecycleService(session))
        finally:
            await self.lock.release(lock_name)

    async def run_once(self) -> None:
        """One full run: warnings, then grace starts, then downgrades."""
        started_at = _utc_now()
        warnings = await self._guarded_pass(
            EXPIRY_WARNING_PASS, lambda svc: svc.send_expiry_warnings()
        )
        grace = await self._guarded_pass(EXPIRATION_PASS, lambda svc: svc.start_grace_periods())
        downgraded = await self._guarded_pass(
            GRACE_EXPIRY_PASS, lambda svc: svc.downgrade_expired_grace()
        )
        self.last_report = LifecycleRunReport(
            expiry_warnings=warnings,
            grace_started=grace,
            downgraded=downgraded,
            started_at=started_at,
            finished_at=_utc_now(),
        )


class CleanupScheduler(RecurringJob):
    """Daily retention purge at a fixed UTC hour."""

    name = "cleanup"

    def __init__(
        self,
        session_factory: SessionContextFactory = get_session,
        lock: DistributedLock | None = None,
        hour_utc: int | None = None,
    ) -> None:
        super().__init__(run_at_start=False)
        self.session_factory = session_factory
        self.lock = lock or create_lock()
        self.hour_utc = settings.cleanup_hour_utc if hour_utc is None else hour_utc
        self.last_report: CleanupReport | None = None

    def next_run_at(self, now: datetime | None = None) -> datetime:
        """Next occurrence of hour_utc:00, strictly after now."""
        now = now or _utc_now()
        candidate = now.replace(hour=self.hour_utc, minute=0, second=0, microsecond=0)
        if candidate <= now:
            candidate += timedelta(days=1)
        return candidate

    def seconds_until_next_run(self) -> float:
        now = _utc_now()
        return (self.next_run_at(now) - now).total_seconds()

    async def run_once(self) -> None:
        lock_name = "cleanup:daily"
        if not await self.lock.try_acquire(lock_name, timedelta(hours=1)):
            logger.info("cleanup_skipped_lock_held")
            return

        try:
            async with self.session_factory() as session:
                self.last_report = await CleanupService(session).run()
        finally:
            await self.lock.release(lock_name)
