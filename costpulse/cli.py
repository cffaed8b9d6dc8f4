"""
Command-line entry points for external schedulers (Azure Automation, cron,
Kubernetes CronJob) and for the built-in APScheduler mode.

Exit codes: 0 success (skips included), 1 collection completed with
dataset failures, 2 failed run, 3 configuration error.
"""

import argparse
import asyncio
import sys
from datetime import date
from typing import List, Optional

import structlog

from costpulse.core.config import get_settings
from costpulse.core.exceptions import ConfigurationError, CostPulseException
from costpulse.core.logging import setup_logging
from costpulse.db.session import create_engine, create_schema
from costpulse.schemas.analysis import AnalysisStatus, RunStatus
from costpulse import runtime

logger = structlog.get_logger()

EXIT_OK = 0
EXIT_PARTIAL = 1
EXIT_FAILED = 2
EXIT_CONFIG = 3

COLLECTION_EXIT_CODES = {
    RunStatus.COMPLETED: EXIT_OK,
    RunStatus.COMPLETED_WITH_SKIPS: EXIT_OK,
    RunStatus.COMPLETED_WITH_FAILURES: EXIT_PARTIAL,
    RunStatus.FAILED: EXIT_FAILED,
}


def _date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected YYYY-MM-DD, got '{value}'")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="costpulse", description="Cloud cost collection and weekly reporting")
    commands = parser.add_subparsers(dest="command", required=True)

    collect = commands.add_parser("collect", help="Collect billing data for the lookback window")
    collect.add_argument("--date", type=_date, default=None, help="Run date (collects the days before it)")
    collect.add_argument(
        "--subscriptions", default=None,
        help="Comma separated subscription ids (defaults to the configured targets)",
    )

    analyze = commands.add_parser("analyze", help="Run the weekly analysis and send the report")
    analyze.add_argument("--start", type=_date, default=None, help="Period start (inclusive)")
    analyze.add_argument("--end", type=_date, default=None, help="Period end (inclusive)")

    commands.add_parser("serve", help="Run the built-in scheduler")
    commands.add_parser("init-db", help="Create the sink tables")
    return parser


async def _collect(args) -> int:
    subscriptions = None
    if args.subscriptions:
        subscriptions = [s.strip() for s in args.subscriptions.split(",") if s.strip()]
    summary = await runtime.run_collection(subscriptions, args.date)
    return COLLECTION_EXIT_CODES[summary.status]


async def _analyze(args) -> int:
    if (args.start is None) != (args.end is None):
        raise ConfigurationError("--start and --end must be given together", code="invalid_period")
    if args.start and args.end < args.start:
        raise ConfigurationError("--end must not precede --start", code="invalid_period")
    result = await runtime.run_weekly_analysis(args.start, args.end)
    return EXIT_FAILED if result.status == AnalysisStatus.FAILED else EXIT_OK


async def _serve(args) -> int:
    from costpulse.services.scheduler.orchestrator import SchedulerOrchestrator

    await SchedulerOrchestrator(get_settings()).serve_forever()
    return EXIT_OK


async def _init_db(args) -> int:
    engine = create_engine(get_settings())
    try:
        await create_schema(engine)
    finally:
        await engine.dispose()
    return EXIT_OK


COMMANDS = {
    "collect": _collect,
    "analyze": _analyze,
    "serve": _serve,
    "init-db": _init_db,
}


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(get_settings())
    try:
        return asyncio.run(COMMANDS[args.command](args))
    except ConfigurationError as e:
        logger.error("configuration_error", code=e.code, error=e.message)
        return EXIT_CONFIG
    except CostPulseException as e:
        logger.error("run_failed", error_type=type(e).__name__, code=e.code, error=e.message)
        return EXIT_FAILED
    except KeyboardInterrupt:
        return EXIT_FAILED


if __name__ == "__main__":
    sys.exit(main())
