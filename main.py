"""Klio: conversation summaries and parent digests, driven by cron or a long-lived process."""

import argparse
import asyncio
import json
import logging
import sys
from datetime import date

from config import ConfigError, config
from jobs.maintenance import Services, create_services
from jobs.scheduler import DailyJob, IntervalJob, SchedulerManager, parse_time

logging.basicConfig(
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    level=getattr(logging, config.log_level.upper(), logging.INFO),
)
logger = logging.getLogger(__name__)


def _print(result: dict) -> None:
    print(json.dumps(result, indent=2, default=str, ensure_ascii=False))


async def _serve(services: Services) -> None:
    """Keep the session cache swept and run daily maintenance at MAINTENANCE_TIME (UTC)."""
    manager = SchedulerManager([
        IntervalJob("session_sweep", services.jobs.sweep_sessions, config.session_sweep_minutes * 60),
        DailyJob("daily_maintenance", services.jobs.run_daily_maintenance, parse_time(config.maintenance_time)),
    ])
    manager.start()
    try:
        await manager.wait()
    finally:
        await manager.stop()


async def _run(args: argparse.Namespace) -> None:
    services = await create_services(config)
    try:
        if args.command == "cleanup":
            _print(await services.jobs.run_batch_cleanup(args.batch_size))
        elif args.command == "digest":
            _print(await services.jobs.generate_daily_summaries(args.date))
        elif args.command == "maintenance":
            _print(await services.jobs.run_daily_maintenance())
        elif args.command == "serve":
            await _serve(services)
    finally:
        await services.db.close()
        logger.info("Klio shut down.")


def _positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1, got {number}")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="klio", description=__doc__)
    sub = parser.add_subparsers(dest="command", required=True)

    cleanup = sub.add_parser("cleanup", help="Summarize and clean up old chat messages for active learners")
    cleanup.add_argument("--batch-size", type=_positive_int, default=None,
                         help=f"Learners processed in parallel (default: {config.batch_size})")

    digest = sub.add_parser("digest", help="Generate parent digests for one day")
    digest.add_argument("--date", type=date.fromisoformat, default=None,
                        help="YYYY-MM-DD (default: yesterday, UTC)")

    sub.add_parser("maintenance", help="Run the full daily maintenance once")
    sub.add_parser("serve", help="Run the session sweep and daily maintenance on timers")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        asyncio.run(_run(args))
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted")
    return 0


if __name__ == "__main__":
    sys.exit(main())
