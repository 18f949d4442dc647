"""
Token Blacklist Service.

Invalidates access tokens before their natural expiry (logout, password
change). Uses SHA-256 hash of tokens; raw tokens are never stored.

- Process-local positive cache: a hit is authoritative until the token expires
- A miss always falls through to the database, so a logout on another
  instance is honoured immediately
- Each row mirrors the token's own expiry and is inert afterwards
"""

import hashlib
import time
from datetime import UTC, datetime
from typing import ClassVar

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import settings
from app.db.models import TokenBlacklist
from app.exceptions import StorageUnavailableError
from app.models.api import TokenType
from app.observability.metrics import metrics

logger = get_logger(__name__)


def hash_token(token: str) -> str:
    """SHA-256 hex digest of a token; the only form in which tokens are stored."""
    return hashlib.sha256(token.encode()).hexdigest()


class TokenBlacklistService:
    """
    Service for blacklisting tokens.

    Usage:
        # On every authenticated request, before trusting the payload
        if await token_blacklist_service.is_blacklisted(token, db):
            raise TokenRevokedError()

        # On logout
        await token_blacklist_service.blacklist_token(
            token=token, user_id=42, expires_at=exp, reason="User logout", db=db
        )
    """

    # Key: token_hash, Value: token expiry as a unix timestamp
    _cache: ClassVar[dict[str, float]] = {}

    @staticmethod
    def hash_token(token: str) -> str:
        """Hash a token using SHA-256."""
        return hash_token(token)

    async def is_blacklisted(
        self, token: str, db: AsyncSession, fail_open: bool | None = None
    ) -> bool:
        """
        Check whether a token is blacklisted and not yet expired.

        Raises:
            StorageUnavailableError: on storage failure when failing closed
        """
        if fail_open is None:
            fail_open = settings.blacklist_check_fail_open

        token_hash = self.hash_token(token)
        now = time.time()

        cached_exp = TokenBlacklistService._cache.get(token_hash)
        if cached_exp is not None:
            if now < cached_exp:
                metrics.blacklist_checks_total.labels(result="hit").inc()
                logger.warning("blacklisted_token_rejected", token_hash=token_hash[:16])
                return True
            del TokenBlacklistService._cache[token_hash]
            metrics.blacklist_checks_total.labels(result="miss").inc()
            return False

        try:
            result = await db.execute(
                select(TokenBlacklist.expires_at).where(
                    TokenBlacklist.token_hash == token_hash,
                    TokenBlacklist.expires_at > datetime.now(UTC),
                )
            )
            expires_at = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            await db.rollback()
            metrics.blacklist_checks_total.labels(result="error").inc()
            logger.error(
                "blacklist_check_failed",
                token_hash=token_hash[:16],
                error=str(e),
                fail_open=fail_open,
            )
            if not fail_open:
                raise StorageUnavailableError("blacklist_check") from e
            metrics.fail_open_total.labels(check="blacklist").inc()
            return False

        if expires_at is None:
            metrics.blacklist_checks_total.labels(result="miss").inc()
            return False

        TokenBlacklistService._cache[token_hash] = expires_at.timestamp()
        metrics.blacklist_checks_total.labels(result="hit").inc()
        logger.warning("blacklisted_token_rejected", token_hash=token_hash[:16])
        return True

    async def blacklist_token(
        self,
        token: str,
        user_id: int,
        expires_at: datetime,
        db: AsyncSession,
        reason: str = "User logout",
        token_type: TokenType = TokenType.ACCESS,
    ) -> None:
        """
        Blacklist a token until its own expiry. Idempotent.

        Raises:
            StorageUnavailableError: if the row cannot be written
        """
        token_hash = self.hash_token(token)

        try:
            await db.merge(
                TokenBlacklist(
                    token_hash=token_hash,
                    user_id=user_id,
                    token_type=token_type.value,
                    reason=reason,
                    expires_at=expires_at,
                    created_at=datetime.now(UTC),
                )
            )
            await db.commit()
        except SQLAlchemyError as e:
            await db.rollback()
            logger.error("token_blacklist_failed", token_hash=token_hash[:16], error=str(e))
            raise StorageUnavailableError("blacklist_token") from e

        TokenBlacklistService._cache[token_hash] = expires_at.timestamp()

        logger.info(
            "token_blacklisted",
            token_hash=token_hash[:16],
            user_id=user_id,
            token_type=token_type.value,
            reason=reason,
            expires_at=expires_at.isoformat(),
        )

    async def cleanup_expired(self, db: AsyncSession) -> int:
        """Delete blacklist rows (and cache entries) past their expiry."""
        now = time.time()
        expired_hashes = [h for h, exp in TokenBlacklistService._cache.items() if now >= exp]
        for h in expired_hashes:
            del TokenBlacklistService._cache[h]

        result = await db.execute(
            delete(TokenBlacklist).where(TokenBlacklist.expires_at <= datetime.now(UTC))
        )
        await db.commit()
        rows_deleted = result.rowcount or 0  # type: ignore[attr-defined]

        if expired_hashes or rows_deleted:
            logger.info(
                "blacklist_cleanup",
                cache_removed=len(expired_hashes),
                db_removed=rows_deleted,
            )
        return rows_deleted


# Global singleton
token_blacklist_service = TokenBlacklistService()
