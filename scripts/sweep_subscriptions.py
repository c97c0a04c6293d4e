#!/usr/bin/env python3
"""
Subscription Sweep Script

Rolls every active subscription forward to today: expires finished
subscriptions and resets daily/monthly allowances for users who have not
touched their wallet. Run once a day from cron, or with --interval to loop.

Usage:
    python scripts/sweep_subscriptions.py
    python scripts/sweep_subscriptions.py --interval 3600
"""

import argparse
import asyncio
import os
import sys

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from studio_billing.db.session import close_engines, get_write_session
from studio_billing.observability.logging import get_logger, setup_logging
from studio_billing.services.subscriptions import SubscriptionService

logger = get_logger(__name__)


async def sweep_once() -> None:
    """Run one sweep in its own session."""
    async with get_write_session() as session:
        await SubscriptionService(session).sweep()


async def run(interval_seconds: int | None) -> None:
    if interval_seconds is None:
        await sweep_once()
        return

    logger.info("subscription_sweep_loop_started", interval_seconds=interval_seconds)
    while True:
        try:
            await sweep_once()
        except Exception as e:
            logger.error("subscription_sweep_error", error=str(e), exc_info=True)
        await asyncio.sleep(interval_seconds)


async def main_async(interval_seconds: int | None) -> None:
    try:
        await run(interval_seconds)
    finally:
        await close_engines()


def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Roll subscriptions forward to today")
    parser.add_argument(
        "--interval",
        type=int,
        default=None,
        help="Repeat every N seconds instead of running once",
    )
    args = parser.parse_args()

    setup_logging()
    try:
        asyncio.run(main_async(args.interval))
    except KeyboardInterrupt:
        logger.info("subscription_sweep_stopped")
        sys.exit(0)


if __name__ == "__main__":
    main()
