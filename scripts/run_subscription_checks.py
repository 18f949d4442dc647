#!/usr/bin/env python3
"""
Run subscription lifecycle passes once, outside the API process.

Useful when the in-process scheduler is disabled (SUBSCRIPTION_SCHEDULER_ENABLED=false)
and the passes are driven by cron instead. Every pass is idempotent, so
overlapping with a running scheduler is harmless.

Usage:
    python scripts/run_subscription_checks.py
    python scripts/run_subscription_checks.py --pass grace_expiry
    python scripts/run_subscription_checks.py --cleanup
"""

import argparse
import asyncio
import sys

import structlog

from app.db.session import close_engine, get_session
from app.observability import setup_logging
from app.services.cleanup import CleanupService
from app.services.subscription_lifecycle import (
    EXPIRATION_PASS,
    EXPIRY_WARNING_PASS,
    GRACE_EXPIRY_PASS,
    SubscriptionLifecycleService,
)

logger = structlog.get_logger()

ALL_PASSES = "all"


async def run(pass_name: str, cleanup: bool) -> int:
    failed = 0
    try:
        async with get_session() as session:
            service = SubscriptionLifecycleService(session)
            if pass_name == ALL_PASSES:
                report = await service.run_all_checks()
                failed = (
                    report.expiry_warnings.failed
                    + report.grace_started.failed
                    + report.downgraded.failed
                )
            else:
                runners = {
                    EXPIRY_WARNING_PASS: service.send_expiry_warnings,
                    EXPIRATION_PASS: service.start_grace_periods,
                    GRACE_EXPIRY_PASS: service.downgrade_expired_grace,
                }
                pass_report = await runners[pass_name]()
                failed = pass_report.failed
                logger.info(
                    "subscription_pass_finished",
                    pass_name=pass_name,
                    processed=pass_report.processed,
                    skipped=pass_report.skipped,
                    failed=pass_report.failed,
                )

        if cleanup:
            async with get_session() as session:
                cleanup_report = await CleanupService(session).run()
            logger.info(
                "cleanup_finished",
                blacklist_deleted=cleanup_report.blacklist_deleted,
                refresh_tokens_deleted=cleanup_report.refresh_tokens_deleted,
                login_attempts_deleted=cleanup_report.login_attempts_deleted,
            )
    finally:
        await close_engine()

    return 1 if failed else 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Run subscription lifecycle passes once")
    parser.add_argument(
        "--pass",
        dest="pass_name",
        choices=[ALL_PASSES, EXPIRY_WARNING_PASS, EXPIRATION_PASS, GRACE_EXPIRY_PASS],
        default=ALL_PASSES,
        help="Which pass to run (default: all three, in order)",
    )
    parser.add_argument(
        "--cleanup",
        action="store_true",
        help="Also purge expired blacklist entries, refresh tokens and old login attempts",
    )
    args = parser.parse_args()

    setup_logging()
    sys.exit(asyncio.run(run(args.pass_name, args.cleanup)))


if __name__ == "__main__":
    main()
