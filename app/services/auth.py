"""
Auth Service - login orchestration over the attempt guard and token manager.

Login order: lock check -> user lookup -> password -> suspension -> success
bookkeeping -> token issuance. Every failed credential check is recorded and
re-evaluated for lockout before the error is raised.
"""

from datetime import UTC, datetime

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.db.models import Subscription, User
from app.exceptions import (
    AccountLockedError,
    AccountSuspendedError,
    InvalidCredentialsError,
    StorageUnavailableError,
)
from app.models.api import BillingCycle, SubscriptionStatus, UserRole
from app.models.domain import TokenPair, TokenPayload
from app.observability.metrics import metrics
from app.services.google_identity import verify_google_id_token
from app.services.login_attempts import LoginAttemptService, minutes_until
from app.services.notifications import NotificationService
from app.services.plans import PlanService
from app.services.token_blacklist import token_blacklist_service
from app.services.token_service import TokenService

logger = get_logger(__name__)

password_hasher = PasswordHasher()


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def verify_password(password_hash: str | None, password: str) -> bool:
    """Constant-time argon2 check; a missing or malformed hash never matches."""
    if not password_hash:
        return False
    try:
        return password_hasher.verify(password_hash, password)
    except (VerificationError, InvalidHashError):
        return False


def _payload_for(user: User) -> TokenPayload:
    return TokenPayload(user_id=user.id, email=user.email, role=UserRole(user.role))


class AuthService:
    """
    Authentication flows.

    Usage:
        service = AuthService(db)
        tokens, user = await service.login(email, password, ip, user_agent)
    """

    def __init__(self, session: AsyncSession) -> None:
        """Initialize with database session."""
        self.session = session
        self.attempts = LoginAttemptService(session)
        self.tokens = TokenService(session)
        self.plans = PlanService(session)
        self.notifications = NotificationService(session)

    async def _find_user_by_email(self, email: str) -> User | None:
        result = await self.session.execute(select(User).where(User.email == email.lower()))
        return result.scalar_one_or_none()

    async def _ensure_not_locked(self, email: str) -> None:
        lock = await self.attempts.is_account_locked(email)
        if lock.is_locked:
            raise AccountLockedError(lock.minutes_remaining or 1, lock.locked_until)

    async def _record_failure(
        self, email: str, ip_address: str, user_agent: str | None
    ) -> InvalidCredentialsError | AccountLockedError:
        await self.attempts.record_attempt(email, ip_address, False, user_agent)
        result = await self.attempts.check_and_lock_account(email)
        if result.should_lock and result.locked_until is not None:
            metrics.record_login("password", "locked")
            return AccountLockedError(
                minutes_until(result.locked_until, _utc_now()), result.locked_until
            )
        metrics.record_login("password", "invalid")
        return InvalidCredentialsError(remaining_attempts=result.remaining_attempts)

    async def _complete_login(
        self, user: User, ip_address: str, user_agent: str | None
    ) -> TokenPair:
        user.last_login_at = _utc_now()
        try:
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error("last_login_update_failed", user_id=user.id, error=str(e))

        await self.attempts.record_attempt(user.email, ip_address, True, user_agent)
        await self.attempts.reset_failed_attempts(user.email)
        return await self.tokens.issue(_payload_for(user))

    async def login(
        self,
        email: str,
        password: str,
        ip_address: str,
        user_agent: str | None = None,
    ) -> tuple[TokenPair, User]:
        """
        Email/password login.

        Raises:
            AccountLockedError: inside a lockout window (before or after this attempt)
            InvalidCredentialsError: unknown email or wrong password
            AccountSuspendedError: credentials valid but account suspended
            StorageUnavailableError: refresh token could not be stored
        """
        email = email.lower()
        await self._ensure_not_locked(email)

        user = await self._find_user_by_email(email)
        if user is None or not verify_password(user.password_hash, password):
            logger.warning("login_failed", email=email, ip=ip_address, known_user=user is not None)
            raise await self._record_failure(email, ip_address, user_agent)

        if user.is_suspended:
            metrics.record_login("password", "suspended")
            logger.warning("login_suspended_account", user_id=user.id)
            raise AccountSuspendedError(user.id, user.suspended_reason)

        if password_hasher.check_needs_rehash(user.password_hash or ""):
            user.password_hash = password_hasher.hash(password)

        tokens = await self._complete_login(user, ip_address, user_agent)
        metrics.record_login("password", "success")
        logger.info("login_succeeded", user_id=user.id, ip=ip_address)
        return tokens, user

    async def google_login(
        self,
        google_id_token: str,
        ip_address: str,
        user_agent: str | None = None,
    ) -> tuple[TokenPair, User, bool]:
        """
        Sign in with a Google ID token, creating the account on first use.

        Returns (tokens, user, is_new).

        Raises:
            InvalidOrExpiredTokenError: the Google token is invalid
            AccountLockedError, AccountSuspendedError, StorageUnavailableError
        """
        identity = await verify_google_id_token(google_id_token)
        await self._ensure_not_locked(identity.email)

        result = await self.session.execute(select(User).where(User.google_id == identity.google_id))
        user = result.scalar_one_or_none()
        is_new = False

        try:
            if user is None:
                user = await self._find_user_by_email(identity.email)
                if user is not None:
                    user.google_id = identity.google_id
                    if not user.name and identity.name:
                        user.name = identity.name
                    logger.info("google_account_linked", user_id=user.id)
                else:
                    user = await self._create_google_user(
                        identity.email, identity.google_id, identity.name
                    )
                    is_new = True
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error("google_user_upsert_failed", email=identity.email, error=str(e))
            raise StorageUnavailableError("google_login") from e

        if user.is_suspended:
            metrics.record_login("google", "suspended")
            raise AccountSuspendedError(user.id, user.suspended_reason)

        tokens = await self._complete_login(user, ip_address, user_agent)
        metrics.record_login("google", "success")
        logger.info("google_login_succeeded", user_id=user.id, is_new=is_new)
        return tokens, user, is_new

    async def _create_google_user(self, email: str, google_id: str, name: str | None) -> User:
        """New social-only user on the free plan."""
        free_plan = await self.plans.get_free_plan()
        user = User(
            email=email,
            google_id=google_id,
            name=name,
            role=UserRole.USER.value,
            password_hash=None,
        )
        self.session.add(user)
        await self.session.flush()

        self.session.add(
            Subscription(
                user_id=user.id,
                plan_id=free_plan.id,
                billing_cycle=BillingCycle.FREE.value,
                status=SubscriptionStatus.ACTIVE.value,
                start_date=_utc_now(),
                end_date=None,
            )
        )
        await self.notifications.notify_subscription_created(user.id, free_plan.name)
        logger.info("google_user_created", user_id=user.id)
        return user

    async def refresh(self, refresh_token: str) -> tuple[TokenPair, User]:
        """Rotate a refresh token into a new pair (see TokenService.refresh)."""
        return await self.tokens.refresh(refresh_token)

    async def logout(
        self,
        user_id: int,
        access_token: str,
        access_expires_at: datetime,
        refresh_token: str | None = None,
    ) -> None:
        """Blacklist the presented access token and revoke the refresh token."""
        await token_blacklist_service.blacklist_token(
            token=access_token,
            user_id=user_id,
            expires_at=access_expires_at,
            db=self.session,
            reason="User logout",
        )
        if refresh_token:
            await self.tokens.revoke(refresh_token, "User logout")
        logger.info("logout_completed", user_id=user_id)

    async def change_password(
        self,
        user_id: int,
        current_password: str,
        new_password: str,
        access_token: str,
        access_expires_at: datetime,
    ) -> None:
        """
        Change the password and force a global logout.

        Every refresh token is revoked and the presented access token is
        blacklisted; other access tokens lapse within their short lifetime.

        Raises:
            InvalidCredentialsError: current password wrong (or no password set)
        """
        user = await self.session.get(User, user_id)
        if user is None or not verify_password(user.password_hash, current_password):
            logger.warning("change_password_rejected", user_id=user_id)
            raise InvalidCredentialsError()

        user.password_hash = password_hasher.hash(new_password)
        try:
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise StorageUnavailableError("change_password") from e

        revoked = await self.tokens.revoke_all_for_user(user_id, "Password changed")
        await token_blacklist_service.blacklist_token(
            token=access_token,
            user_id=user_id,
            expires_at=access_expires_at,
            db=self.session,
            reason="Password changed",
        )
        logger.info("password_changed", user_id=user_id, refresh_tokens_revoked=revoked)
