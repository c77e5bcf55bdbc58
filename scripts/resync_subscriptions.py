#!/usr/bin/env python3
"""
Subscription Re-sync

Re-checks recently active subscriptions against the store's renewal status so
renewals, lapses and refunds show up without the client calling /iap/sync.

Usage:
    # One pass (for cron)
    python3 scripts/resync_subscriptions.py

    # Larger batch, longer lookback
    python3 scripts/resync_subscriptions.py --limit 1000 --lookback-days 7

    # Keep running, one pass every 15 minutes
    python3 scripts/resync_subscriptions.py --interval 900
"""

import argparse
import asyncio
import sys

import structlog

from app.api.dependencies import get_verifier_registry
from app.config import settings
from app.db.repository import SqlAlchemyIAPRepository
from app.db.session import close_engines, get_write_session
from app.models.domain import ResyncReport
from app.observability import setup_logging
from app.services.iap import IAPService

logger = structlog.get_logger()


async def run_once(limit: int, lookback_days: int) -> ResyncReport:
    """Run one re-sync pass in its own session."""
    async with get_write_session() as session:
        service = IAPService(SqlAlchemyIAPRepository(session), get_verifier_registry())
        return await service.resync_due(limit=limit, lookback_days=lookback_days)


async def run_loop(limit: int, lookback_days: int, interval: int) -> None:
    logger.info("subscription_resync_loop_started", interval_seconds=interval)

    while True:
        try:
            await run_once(limit, lookback_days)
        except Exception as e:
            logger.error("subscription_resync_error", error=str(e), exc_info=True)

        await asyncio.sleep(interval)


async def _main(args: argparse.Namespace) -> int:
    try:
        if args.interval:
            await run_loop(args.limit, args.lookback_days, args.interval)
            return 0
        report = await run_once(args.limit, args.lookback_days)
        return 1 if report.failed else 0
    finally:
        await close_engines()


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Re-sync recently active subscriptions with the store",
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=settings.sync_batch_size,
        help=f"Maximum users per pass (default: {settings.sync_batch_size})",
    )
    parser.add_argument(
        "--lookback-days",
        type=int,
        default=settings.sync_lookback_days,
        help=f"Include subscriptions ended within N days (default: {settings.sync_lookback_days})",
    )
    parser.add_argument(
        "--interval",
        type=int,
        default=0,
        help="Repeat every N seconds instead of running a single pass",
    )

    args = parser.parse_args()
    setup_logging()

    try:
        sys.exit(asyncio.run(_main(args)))
    except KeyboardInterrupt:
        logger.info("subscription_resync_stopped")
        sys.exit(0)


if __name__ == "__main__":
    main()
