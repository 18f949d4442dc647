"""
Login Attempt Guard - attempt ledger and time-boxed account lockout.

Lockout is count-based over a sliding window of the login_attempts ledger,
not the counter on the user row. Only failures newer than the latest
successful login in the window count. Once locked, the lock lasts a fixed
duration and later attempts do not extend it. Expired locks are cleared
lazily by is_account_locked, so no unlock job exists.

Concurrent failures may each recompute the count and race to write the lock
fields; last writer wins and the outcome is equivalent.
"""

import math
from collections.abc import Iterable
from datetime import UTC, datetime, timedelta

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import settings
from app.db.models import LoginAttempt, User
from app.exceptions import StorageUnavailableError
from app.models.domain import LockCheckResult, LockStatus, LoginAttemptData
from app.observability.metrics import metrics

logger = get_logger(__name__)

MAX_FAILED_ATTEMPTS = 5
ATTEMPT_WINDOW = timedelta(minutes=15)
LOCKOUT_DURATION = timedelta(minutes=30)
ATTEMPT_RETENTION_DAYS = 30


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def minutes_until(moment: datetime, now: datetime) -> int:
    """Whole minutes until moment, rounded up (never below 1 while in the future)."""
    return max(1, math.ceil((moment - now).total_seconds() / 60))


def lock_messages(minutes_remaining: int) -> tuple[str, str]:
    """English and Arabic lockout messages."""
    return (
        f"Your account is locked for {minutes_remaining} minute(s) "
        "due to multiple failed login attempts.",
        f"حسابك مقفل لمدة {minutes_remaining} دقيقة بسبب محاولات تسجيل دخول فاشلة متعددة.",
    )


def failures_since_last_success(outcomes: Iterable[bool]) -> int:
    """Count consecutive failures in newest-first outcomes, stopping at a success."""
    count = 0
    for success in outcomes:
        if success:
            break
        count += 1
    return count


class LoginAttemptService:
    """
    Records login attempts and computes lockout state.

    Storage failures never block authentication unless the lock-check
    fail-open policy is turned off for the call.
    """

    def __init__(self, session: AsyncSession) -> None:
        """Initialize with database session."""
        self.session = session

    async def record_attempt(
        self,
        email: str,
        ip_address: str,
        success: bool,
        user_agent: str | None = None,
    ) -> None:
        """Append an attempt to the ledger. Best effort; never raises."""
        email = email.lower()
        try:
            self.session.add(
                LoginAttempt(
                    email=email,
                    ip_address=ip_address,
                    success=success,
                    user_agent=user_agent,
                    attempted_at=_utc_now(),
                )
            )
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error("login_attempt_record_failed", email=email, error=str(e))
            return

        logger.debug("login_attempt_recorded", email=email, success=success, ip=ip_address)

    async def is_account_locked(self, email: str, fail_open: bool | None = None) -> LockStatus:
        """
        Report whether the account is inside a lockout window.

        An expired lock is cleared as a side effect before reporting unlocked.

        Raises:
            StorageUnavailableError: on storage failure when failing closed
        """
        if fail_open is None:
            fail_open = settings.lock_check_fail_open
        email = email.lower()

        try:
            result = await self.session.execute(select(User).where(User.email == email))
            user = result.scalar_one_or_none()

            if user is None or not user.is_locked or user.locked_until is None:
                return LockStatus(is_locked=False)

            now = _utc_now()
            if now >= user.locked_until:
                await self.unlock_account(email)
                return LockStatus(is_locked=False)

            minutes_remaining = minutes_until(user.locked_until, now)
            message, message_ar = lock_messages(minutes_remaining)
            return LockStatus(
                is_locked=True,
                locked_until=user.locked_until,
                minutes_remaining=minutes_remaining,
                message=message,
                message_ar=message_ar,
            )
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error("lock_check_failed", email=email, error=str(e), fail_open=fail_open)
            if not fail_open:
                raise StorageUnavailableError("lock_check") from e
            metrics.fail_open_total.labels(check="lock_check").inc()
            return LockStatus(is_locked=False)

    async def check_and_lock_account(
        self, email: str, fail_open: bool | None = None
    ) -> LockCheckResult:
        """
        Count failures in the window and lock the account at the threshold.

        An account that is already locked keeps its original locked_until.

        Raises:
            StorageUnavailableError: on storage failure when failing closed
        """
        if fail_open is None:
            fail_open = settings.lock_check_fail_open
        email = email.lower()
        now = _utc_now()

        try:
            outcome_result = await self.session.execute(
                select(LoginAttempt.success)
                .where(
                    LoginAttempt.email == email,
                    LoginAttempt.attempted_at > now - ATTEMPT_WINDOW,
                )
                .order_by(LoginAttempt.attempted_at.desc(), LoginAttempt.id.desc())
                .limit(MAX_FAILED_ATTEMPTS)
            )
            failed_count = failures_since_last_success(outcome_result.scalars().all())
            remaining = max(0, MAX_FAILED_ATTEMPTS - failed_count)

            if failed_count < MAX_FAILED_ATTEMPTS:
                return LockCheckResult(should_lock=False, remaining_attempts=remaining)

            user_result = await self.session.execute(select(User).where(User.email == email))
            user = user_result.scalar_one_or_none()

            if user is not None and user.is_locked and user.locked_until and user.locked_until > now:
                return LockCheckResult(
                    should_lock=True, remaining_attempts=0, locked_until=user.locked_until
                )

            locked_until = now + LOCKOUT_DURATION
            if user is not None:
                user.is_locked = True
                user.locked_until = locked_until
                user.failed_login_attempts = failed_count
                user.last_failed_login_at = now
                await self.session.commit()

            metrics.account_lockouts_total.inc()
            logger.warning(
                "account_locked",
                email=email,
                failed_attempts=failed_count,
                locked_until=locked_until.isoformat(),
            )
            return LockCheckResult(should_lock=True, remaining_attempts=0, locked_until=locked_until)
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error("lock_evaluation_failed", email=email, error=str(e), fail_open=fail_open)
            if not fail_open:
                raise StorageUnavailableError("lock_check") from e
            metrics.fail_open_total.labels(check="lock_check").inc()
            return LockCheckResult(should_lock=False, remaining_attempts=MAX_FAILED_ATTEMPTS)

    async def unlock_account(self, email: str) -> None:
        """
        Clear lock state and counters.

        Storage errors propagate; callers decide the policy.
        """
        email = email.lower()
        await self.session.execute(
            update(User)
            .where(User.email == email)
            .values(
                is_locked=False,
                locked_until=None,
                failed_login_attempts=0,
                last_failed_login_at=None,
            )
        )
        await self.session.commit()
        logger.info("account_unlocked", email=email)

    async def reset_failed_attempts(self, email: str) -> None:
        """Clear lock state after a successful login. Idempotent; never raises."""
        try:
            await self.unlock_account(email)
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error("failed_attempts_reset_failed", email=email.lower(), error=str(e))

    async def cleanup_old_attempts(self, retention_days: int = ATTEMPT_RETENTION_DAYS) -> int:
        """Delete ledger rows older than the retention window."""
        cutoff = _utc_now() - timedelta(days=retention_days)
        result = await self.session.execute(
            delete(LoginAttempt).where(LoginAttempt.attempted_at < cutoff)
        )
        await self.session.commit()
        deleted = result.rowcount or 0  # type: ignore[attr-defined]
        if deleted:
            logger.info("login_attempts_cleaned", deleted=deleted, retention_days=retention_days)
        return deleted

    async def get_recent_failed_attempts(
        self, email: str | None = None, limit: int = 10
    ) -> list[LoginAttemptData]:
        """Most recent failed attempts, optionally for one email (monitoring)."""
        stmt = select(LoginAttempt).where(LoginAttempt.success.is_(False))
        if email:
            stmt = stmt.where(LoginAttempt.email == email.lower())
        stmt = stmt.order_by(LoginAttempt.attempted_at.desc()).limit(limit)

        result = await self.session.execute(stmt)
        return [
            LoginAttemptData(
                email=row.email,
                ip_address=row.ip_address,
                success=row.success,
                user_agent=row.user_agent,
                attempted_at=row.attempted_at,
            )
            for row in result.scalars().all()
        ]
