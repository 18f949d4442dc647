"""
Retention cleanup: expired blacklist rows, refresh tokens past the retention
window and old login attempts.
"""

from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.models.domain import CleanupReport
from app.observability.metrics import metrics
from app.services.login_attempts import LoginAttemptService
from app.services.token_blacklist import token_blacklist_service
from app.services.token_service import TokenService

logger = get_logger(__name__)


class CleanupService:
    def __init__(self, session: AsyncSession) -> None:
        """Initialize with database session."""
        self.session = session

    async def run(self) -> CleanupReport:
        """
        Purge all expired security data.

        Storage errors propagate so the scheduler records the run as failed.
        """
        logger.info("cleanup_started")

        blacklist_deleted = await token_blacklist_service.cleanup_expired(self.session)
        refresh_tokens_deleted = await TokenService(self.session).cleanup_expired()
        login_attempts_deleted = await LoginAttemptService(self.session).cleanup_old_attempts()

        for table, count in (
            ("token_blacklist", blacklist_deleted),
            ("refresh_tokens", refresh_tokens_deleted),
            ("login_attempts", login_attempts_deleted),
        ):
            if count:
                metrics.cleanup_rows_total.labels(table=table).inc(count)

        logger.info(
            "cleanup_completed",
            blacklist_deleted=blacklist_deleted,
            refresh_tokens_deleted=refresh_tokens_deleted,
            login_attempts_deleted=login_attempts_deleted,
        )
        return CleanupReport(
            blacklist_deleted=blacklist_deleted,
            refresh_tokens_deleted=refresh_tokens_deleted,
            login_attempts_deleted=login_attempts_deleted,
        )
