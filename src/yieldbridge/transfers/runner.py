"""Standalone resumption sweeper.

Runs the resumption scheduler without the API, e.g. as a cron job or a
separate worker process.

Usage:
    python -m yieldbridge.transfers.runner --once
    python -m yieldbridge.transfers.runner --interval 120
    python -m yieldbridge.transfers.runner --transfer <id>

Environment variables:
    DATABASE_URL: Transfer database (must be shared with the API)
    SCHEDULER_INTERVAL: Seconds between sweeps (default: 120)
"""

import argparse
import asyncio
import logging

from yieldbridge.config import get_settings
from yieldbridge.errors import TransferError
from yieldbridge.services import build_services

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


async def main():
    """Main entry point."""
    settings = get_settings()

    parser = argparse.ArgumentParser(description="Resume pending cross-chain transfers")
    parser.add_argument(
        "--interval",
        type=float,
        default=settings.scheduler_interval,
        help=f"Seconds between sweeps (default: {settings.scheduler_interval:g})",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run one sweep and exit",
    )
    parser.add_argument(
        "--transfer",
        help="Resume a single transfer by id and exit",
    )
    args = parser.parse_args()

    services = await build_services(settings)
    if not services.store.durable:
        logger.error("Database unreachable; a sweeper without durable storage has nothing to do")
        await services.close()
        return 1

    services.scheduler.interval = args.interval

    try:
        if args.transfer:
            try:
                record = await services.orchestrator.resume(args.transfer)
            except TransferError as e:
                print(f"Transfer {args.transfer}: {type(e).__name__}: {e}")
                return 1
            print(f"Transfer {record.id}: {record.status.value}")
        elif args.once:
            result = await services.scheduler.run_once()
            print(f"Sweep result: {result.to_dict() if result else 'skipped'}")
        else:
            await services.scheduler.run()
    finally:
        await services.close()

    return 0


if __name__ == "__main__":
    raise SystemExit(asyncio.run(main()))
