#!/usr/bin/env python3
"""
Apply free plan limits to every user who should already be on the free plan.

One-off repair for accounts whose paid subscription expired while
enforcement was not running. Enforcement is idempotent; users already
within limits are left untouched.

Usage:
    python scripts/apply_free_plan_limits.py --dry-run
    python scripts/apply_free_plan_limits.py
"""

import argparse
import asyncio

import structlog
from sqlalchemy import select

from app.db.models import Plan, Subscription
from app.db.session import close_engine, get_session
from app.models.api import SubscriptionStatus
from app.observability import setup_logging
from app.services.downgrade import DowngradeService

logger = structlog.get_logger()


async def find_candidate_users() -> list[int]:
    """Users with at least one expired paid subscription."""
    async with get_session() as session:
        result = await session.execute(
            select(Subscription.user_id)
            .join(Plan, Subscription.plan_id == Plan.id)
            .where(
                Subscription.status == SubscriptionStatus.EXPIRED.value,
                Plan.price_monthly > 0,
            )
            .distinct()
            .order_by(Subscription.user_id)
        )
        return list(result.scalars().all())


async def run(dry_run: bool) -> None:
    try:
        candidates = await find_candidate_users()
        logger.info("free_plan_candidates_found", count=len(candidates), dry_run=dry_run)

        enforced = 0
        for user_id in candidates:
            async with get_session() as session:
                service = DowngradeService(session)
                if not await service.should_be_on_free_plan(user_id):
                    continue
                if dry_run:
                    logger.info("free_plan_limits_would_apply", user_id=user_id)
                    continue
                try:
                    await service.handle_downgrade_to_free(user_id)
                    enforced += 1
                except Exception as e:
                    logger.error("free_plan_limits_failed", user_id=user_id, error=str(e))

        logger.info("free_plan_limits_applied", users=enforced, dry_run=dry_run)
    finally:
        await close_engine()


def main() -> None:
    parser = argparse.ArgumentParser(description="Apply free plan limits to expired accounts")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="List affected users without changing anything",
    )
    args = parser.parse_args()

    setup_logging()
    asyncio.run(run(args.dry_run))


if __name__ == "__main__":
    main()
