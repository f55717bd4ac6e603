"""Command line entrypoint.

Usage:
    python -m futures_gap_monitor run
    python -m futures_gap_monitor cycle
    python -m futures_gap_monitor backfill --start 2024-01-01 --end 2024-01-19
    python -m futures_gap_monitor refresh-baselines
    python -m futures_gap_monitor purge
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import sys
from datetime import date

from futures_gap_monitor.config import Settings, get_settings
from futures_gap_monitor.pipeline import GapMonitorPipeline

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(settings: Settings) -> None:
    """Configure root logging from LOG_LEVEL and quiet chatty libraries."""
    logging.basicConfig(level=settings.get_logging_level(), format=LOG_FORMAT)
    for noisy in ("httpx", "httpcore", "sqlalchemy.engine", "asyncio"):
        logging.getLogger(noisy).setLevel(max(logging.WARNING, settings.get_logging_level()))


def _parse_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"invalid date {value!r}, expected YYYY-MM-DD") from e


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="futures-gap-monitor", description=__doc__.splitlines()[0])
    parser.add_argument("--dry-run", action="store_true", help="Log alerts instead of publishing them")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("run", help="Run the scheduled monitor until interrupted")
    sub.add_parser("cycle", help="Run a single live evaluation cycle")

    backfill = sub.add_parser("backfill", help="Reconstruct gap history for past trading days")
    backfill.add_argument("--start", type=_parse_date, required=True)
    backfill.add_argument("--end", type=_parse_date, default=None)

    sub.add_parser("refresh-baselines", help="Rebuild the baseline cache and report its size")
    sub.add_parser("purge", help="Delete gap observations past the retention period")
    return parser


async def _run_command(pipeline: GapMonitorPipeline, args: argparse.Namespace) -> int:
    if args.command == "run":
        await pipeline.run()
        return 0

    await pipeline.initialize()
    try:
        if args.command == "cycle":
            await pipeline.refresh_baselines()
            result = await pipeline.evaluate_cycle()
            return 0 if result.ok else 1
        if args.command == "backfill":
            results = await pipeline.backfill_range(args.start, args.end or args.start)
            return 0 if all(r.ok for r in results) else 1
        if args.command == "refresh-baselines":
            count = await pipeline.refresh_baselines()
            logger.info("Baseline cache holds %d slots", count)
            return 0
        if args.command == "purge":
            await pipeline.purge_history()
            return 0
        raise ValueError(f"Unknown command: {args.command}")
    finally:
        await pipeline.close()


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    configure_logging(settings)
    logger.info("Starting with settings: %s", settings.redacted_summary())

    pipeline = GapMonitorPipeline(settings, dry_run=True if args.dry_run else None)
    with contextlib.suppress(KeyboardInterrupt):
        return asyncio.run(_run_command(pipeline, args))
    return 130


if __name__ == "__main__":
    sys.exit(main())
