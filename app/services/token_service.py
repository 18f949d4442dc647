"""
Token Lifecycle Manager - access/refresh JWT issuance, rotation and revocation.

Access tokens are stateless: signature and expiry only (callers consult the
blacklist separately). Refresh tokens are stateful: a token is valid only
while its row exists, is not revoked and is not expired.

Refresh token states: issued -> rotated | revoked | expired, all terminal.
A rotated token links to its successor through replaced_by_token_hash and
presenting it again is treated as replay.
"""

import uuid
from datetime import UTC, datetime, timedelta
from typing import Any

import jwt
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import settings
from app.db.models import RefreshToken, User
from app.exceptions import (
    AccountSuspendedError,
    InvalidOrExpiredTokenError,
    StorageUnavailableError,
    TokenRevokedError,
)
from app.models.api import TokenType, UserRole
from app.models.domain import TokenPair, TokenPayload, VerifiedToken
from app.observability.metrics import metrics
from app.services.token_blacklist import hash_token

logger = get_logger(__name__)

REFRESH_TOKEN_RETENTION_DAYS = 30


def _utc_now() -> datetime:
    """Get current UTC timestamp, truncated to whole seconds (JWT resolution)."""
    return datetime.now(UTC).replace(microsecond=0)


def _encode(payload: TokenPayload, token_type: TokenType, expires_at: datetime, now: datetime) -> str:
    secret = (
        settings.jwt_access_secret if token_type == TokenType.ACCESS else settings.jwt_refresh_secret
    )
    claims: dict[str, Any] = {
        "sub": str(payload.user_id),
        "email": payload.email,
        "role": payload.role.value,
        "type": token_type.value,
        "jti": uuid.uuid4().hex,
        "iat": now,
        "exp": expires_at,
    }
    return jwt.encode(claims, secret, algorithm=settings.jwt_algorithm)


def _decode(token: str, token_type: TokenType) -> VerifiedToken:
    """
    Verify signature, expiry and token class.

    Raises:
        InvalidOrExpiredTokenError: for any failure, with the same message
    """
    secret = (
        settings.jwt_access_secret if token_type == TokenType.ACCESS else settings.jwt_refresh_secret
    )
    try:
        claims = jwt.decode(
            token,
            secret,
            algorithms=[settings.jwt_algorithm],
            options={"require": ["exp", "sub", "type"]},
        )
        if claims.get("type") != token_type.value:
            raise InvalidOrExpiredTokenError()
        payload = TokenPayload(
            user_id=int(claims["sub"]),
            email=claims["email"],
            role=UserRole(claims["role"]),
        )
    except (jwt.PyJWTError, KeyError, ValueError) as e:
        raise InvalidOrExpiredTokenError() from e

    return VerifiedToken(
        token=token,
        payload=payload,
        expires_at=datetime.fromtimestamp(claims["exp"], UTC),
    )


class TokenService:
    """
    Issues and validates credentials.

    Token strings are never persisted; refresh rows are keyed by SHA-256 hash.
    """

    def __init__(self, session: AsyncSession) -> None:
        """Initialize with database session."""
        self.session = session

    # ------------------------------------------------------------------
    # Minting
    # ------------------------------------------------------------------

    def create_access_token(
        self, payload: TokenPayload, now: datetime | None = None
    ) -> tuple[str, datetime]:
        """Sign a short-lived access token. Returns (token, expires_at)."""
        now = now or _utc_now()
        expires_at = now + timedelta(minutes=settings.access_token_expire_minutes)
        return _encode(payload, TokenType.ACCESS, expires_at, now), expires_at

    def create_refresh_token(
        self, payload: TokenPayload, now: datetime | None = None
    ) -> tuple[str, datetime]:
        """Sign a refresh token (not yet persisted). Returns (token, expires_at)."""
        now = now or _utc_now()
        expires_at = now + timedelta(days=settings.refresh_token_expire_days)
        return _encode(payload, TokenType.REFRESH, expires_at, now), expires_at

    async def issue(self, payload: TokenPayload) -> TokenPair:
        """
        Mint an access + refresh pair and persist the refresh row.

        Raises:
            StorageUnavailableError: if the refresh row cannot be stored; an
                unstored refresh token could never be revoked
        """
        now = _utc_now()
        access_token, access_expires_at = self.create_access_token(payload, now)
        refresh_token, refresh_expires_at = self.create_refresh_token(payload, now)

        try:
            self.session.add(
                RefreshToken(
                    user_id=payload.user_id,
                    token_hash=hash_token(refresh_token),
                    expires_at=refresh_expires_at,
                    is_revoked=False,
                    created_at=now,
                )
            )
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error("refresh_token_store_failed", user_id=payload.user_id, error=str(e))
            raise StorageUnavailableError("issue") from e

        metrics.tokens_issued_total.inc()
        logger.info("tokens_issued", user_id=payload.user_id)
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires_at=access_expires_at,
            refresh_expires_at=refresh_expires_at,
        )

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify_access(self, token: str) -> VerifiedToken:
        """
        Signature + expiry check only. Callers must consult the blacklist.

        Raises:
            InvalidOrExpiredTokenError
        """
        return _decode(token, TokenType.ACCESS)

    async def _load_valid_row(self, token_hash: str, lock: bool = False) -> RefreshToken:
        stmt = select(RefreshToken).where(RefreshToken.token_hash == token_hash)
        if lock:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        row = result.scalar_one_or_none()

        if row is None:
            raise InvalidOrExpiredTokenError()
        if row.is_revoked:
            if row.replaced_by_token_hash is not None:
                logger.warning(
                    "refresh_token_replay_detected",
                    token_hash=token_hash[:16],
                    user_id=row.user_id,
                )
            raise TokenRevokedError()
        if _utc_now() >= row.expires_at:
            raise InvalidOrExpiredTokenError()
        return row

    async def verify_refresh(self, token: str) -> VerifiedToken:
        """
        Store-backed refresh validation: signature, then row exists,
        is not revoked and is not expired.

        Raises:
            InvalidOrExpiredTokenError: for every failure (TokenRevokedError
                is a subclass)
            StorageUnavailableError: if the store cannot be read
        """
        verified = _decode(token, TokenType.REFRESH)
        try:
            row = await self._load_valid_row(hash_token(token))
        except SQLAlchemyError as e:
            logger.error("refresh_token_lookup_failed", error=str(e))
            raise StorageUnavailableError("verify_refresh") from e

        if row.user_id != verified.payload.user_id:
            raise InvalidOrExpiredTokenError()
        return verified

    # ------------------------------------------------------------------
    # Rotation
    # ------------------------------------------------------------------

    async def rotate(self, old_token: str, new_token: str, new_expires_at: datetime) -> None:
        """
        Atomically revoke old_token (linking it to new_token) and store new_token.

        Both writes commit together or not at all; the old row is locked for
        the duration so two concurrent rotations cannot both succeed.

        Raises:
            InvalidOrExpiredTokenError: if old_token is missing, revoked or expired
            StorageUnavailableError: on storage failure
        """
        old_hash = hash_token(old_token)
        new_hash = hash_token(new_token)
        now = _utc_now()

        try:
            row = await self._load_valid_row(old_hash, lock=True)

            row.is_revoked = True
            row.revoked_at = now
            row.revoked_reason = "rotated"
            row.replaced_by_token_hash = new_hash

            self.session.add(
                RefreshToken(
                    user_id=row.user_id,
                    token_hash=new_hash,
                    expires_at=new_expires_at,
                    is_revoked=False,
                    created_at=now,
                )
            )
            await self.session.commit()
        except InvalidOrExpiredTokenError:
            await self.session.rollback()
            metrics.token_rotations_total.labels(outcome="rejected").inc()
            raise
        except SQLAlchemyError as e:
            await self.session.rollback()
            metrics.token_rotations_total.labels(outcome="error").inc()
            logger.error("refresh_token_rotation_failed", token_hash=old_hash[:16], error=str(e))
            raise StorageUnavailableError("rotate") from e

        metrics.token_rotations_total.labels(outcome="success").inc()
        logger.info(
            "refresh_token_rotated",
            user_id=row.user_id,
            old_hash=old_hash[:16],
            new_hash=new_hash[:16],
        )

    async def refresh(self, refresh_token: str) -> tuple[TokenPair, User]:
        """
        Exchange a refresh token for a new pair.

        Claims are re-read from the user row so role changes take effect.

        Raises:
            InvalidOrExpiredTokenError: invalid, replayed or orphaned token
            AccountSuspendedError: the owner is suspended
            StorageUnavailableError: on storage failure
        """
        verified = await self.verify_refresh(refresh_token)

        result = await self.session.execute(
            select(User).where(User.id == verified.payload.user_id)
        )
        user = result.scalar_one_or_none()
        if user is None:
            raise InvalidOrExpiredTokenError()
        if user.is_suspended:
            raise AccountSuspendedError(user.id, user.suspended_reason)

        payload = TokenPayload(user_id=user.id, email=user.email, role=UserRole(user.role))
        now = _utc_now()
        access_token, access_expires_at = self.create_access_token(payload, now)
        new_refresh, refresh_expires_at = self.create_refresh_token(payload, now)

        await self.rotate(refresh_token, new_refresh, refresh_expires_at)

        return (
            TokenPair(
                access_token=access_token,
                refresh_token=new_refresh,
                access_expires_at=access_expires_at,
                refresh_expires_at=refresh_expires_at,
            ),
            user,
        )

    # ------------------------------------------------------------------
    # Revocation
    # ------------------------------------------------------------------

    async def revoke(self, token: str, reason: str = "User logout") -> bool:
        """
        Revoke one refresh token. Idempotent: re-revoking is a no-op.

        Returns True if this call revoked the token.

        Raises:
            StorageUnavailableError: on storage failure
        """
        token_hash = hash_token(token)
        try:
            result = await self.session.execute(
                update(RefreshToken)
                .where(RefreshToken.token_hash == token_hash, RefreshToken.is_revoked.is_(False))
                .values(is_revoked=True, revoked_at=_utc_now(), revoked_reason=reason)
            )
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error("refresh_token_revoke_failed", token_hash=token_hash[:16], error=str(e))
            raise StorageUnavailableError("revoke") from e

        revoked = bool(result.rowcount)  # type: ignore[attr-defined]
        if revoked:
            metrics.tokens_revoked_total.labels(reason=reason).inc()
            logger.info("refresh_token_revoked", token_hash=token_hash[:16], reason=reason)
        return revoked

    async def revoke_all_for_user(self, user_id: int, reason: str) -> int:
        """
        Revoke every live refresh token of a user (forced global logout).

        Raises:
            StorageUnavailableError: on storage failure
        """
        try:
            result = await self.session.execute(
                update(RefreshToken)
                .where(RefreshToken.user_id == user_id, RefreshToken.is_revoked.is_(False))
                .values(is_revoked=True, revoked_at=_utc_now(), revoked_reason=reason)
            )
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error("refresh_tokens_revoke_all_failed", user_id=user_id, error=str(e))
            raise StorageUnavailableError("revoke_all_for_user") from e

        count = result.rowcount or 0  # type: ignore[attr-defined]
        if count:
            metrics.tokens_revoked_total.labels(reason=reason).inc(count)
        logger.warning("refresh_tokens_revoked_for_user", user_id=user_id, count=count, reason=reason)
        return count

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def cleanup_expired(self, retention_days: int = REFRESH_TOKEN_RETENTION_DAYS) -> int:
        """Delete refresh rows that expired more than retention_days ago."""
        cutoff = _utc_now() - timedelta(days=retention_days)
        result = await self.session.execute(
            delete(RefreshToken).where(RefreshToken.expires_at < cutoff)
        )
        await self.session.commit()
        deleted = result.rowcount or 0  # type: ignore[attr-defined]
        if deleted:
            logger.info("refresh_tokens_cleaned", deleted=deleted, retention_days=retention_days)
        return deleted

    async def active_token_count(self, user_id: int) -> int:
        """Number of live (non-revoked, unexpired) refresh tokens for a user."""
        result = await self.session.execute(
            select(func.count())
            .select_from(RefreshToken)
            .where(
                RefreshToken.user_id == user_id,
                RefreshToken.is_revoked.is_(False),
                RefreshToken.expires_at > _utc_now(),
            )
        )
        return int(result.scalar_one())
