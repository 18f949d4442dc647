"""
FastAPI Dependencies - the authentication gate.

Every protected handler runs: bearer extraction -> blacklist -> access token
verification -> lightweight subscription expiry check for that user.

NO DICTIONARIES - All dependencies return typed objects.
"""

from dataclasses import dataclass
from datetime import datetime

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.db.session import get_db
from app.exceptions import InvalidOrExpiredTokenError, TokenRevokedError
from app.models.api import UserRole
from app.observability.logging import log_context
from app.services.subscription_lifecycle import SubscriptionLifecycleService
from app.services.token_blacklist import token_blacklist_service
from app.services.token_service import TokenService

logger = get_logger(__name__)

# Bearer token scheme; missing credentials are reported as invalid tokens
bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class AuthenticatedUser:
    """Identity of the caller, from a verified, non-blacklisted access token."""

    user_id: int
    email: str
    role: UserRole
    access_token: str
    access_expires_at: datetime


async def authenticate(
    credentials: HTTPAuthorizationCredentials | None,
    db: AsyncSession,
    fail_open: bool | None = None,
) -> AuthenticatedUser:
    """
    Run the authentication gate.

    Raises:
        InvalidOrExpiredTokenError: missing, malformed, expired or blacklisted token
        StorageUnavailableError: blacklist unreadable and failing closed
    """
    if credentials is None or not credentials.credentials:
        raise InvalidOrExpiredTokenError()

    token = credentials.credentials
    if await token_blacklist_service.is_blacklisted(token, db, fail_open=fail_open):
        raise TokenRevokedError()

    verified = TokenService(db).verify_access(token)
    payload = verified.payload

    with log_context(user_id=payload.user_id):
        await SubscriptionLifecycleService(db).check_user_subscription(payload.user_id)

    return AuthenticatedUser(
        user_id=payload.user_id,
        email=payload.email,
        role=payload.role,
        access_token=token,
        access_expires_at=verified.expires_at,
    )


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: AsyncSession = Depends(get_db),
) -> AuthenticatedUser:
    """
    FastAPI dependency for protected routes.

    Usage:
        @router.get("/protected")
        async def protected(user: AuthenticatedUser = Depends(get_current_user)):
            return {"user_id": user.user_id}
    """
    return await authenticate(credentials, db)


async def get_current_user_strict(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: AsyncSession = Depends(get_db),
) -> AuthenticatedUser:
    """Same gate, but the blacklist check fails closed (sensitive actions)."""
    return await authenticate(credentials, db, fail_open=False)


async def require_admin(user: AuthenticatedUser = Depends(get_current_user)) -> AuthenticatedUser:
    """Restrict a route to administrators."""
    if user.role != UserRole.ADMIN:
        logger.warning("admin_access_denied", user_id=user.user_id)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Administrator access required",
        )
    return user
