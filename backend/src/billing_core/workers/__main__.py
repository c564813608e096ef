"""Command line entry point for the billing scheduler.

Usage:
    python -m billing_core.workers run
    python -m billing_core.workers run-job daily-renewals
    python -m billing_core.workers list
"""
import argparse
import asyncio
import sys
from typing import Optional, Sequence

import structlog

from billing_core.database import engine
from billing_core.exceptions import UnknownJobError
from billing_core.logging_config import setup_logging
from billing_core.workers.jobs import JobName, cron_expression
from billing_core.workers.scheduler import BillingScheduler

logger = structlog.get_logger(__name__)


async def _run_forever(scheduler: BillingScheduler) -> None:
    await scheduler.start()
    try:
        await asyncio.Event().wait()
    finally:
        await scheduler.stop()
        await engine.dispose()


async def _run_once(scheduler: BillingScheduler, name: str) -> int:
    try:
        result = await scheduler.run_job(name)
    finally:
        await engine.dispose()
    print(result.model_dump_json(indent=2))
    return 1 if result.failed else 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="billing-scheduler", description="Billing job scheduler")
    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("run", help="Run all jobs on their cron schedules until interrupted")
    run_job = subparsers.add_parser("run-job", help="Run one job now and print its result")
    run_job.add_argument("name", help="Job name, e.g. daily-renewals")
    subparsers.add_parser("list", help="List jobs and their schedules")
    args = parser.parse_args(argv)

    setup_logging()
    scheduler = BillingScheduler()

    if args.command == "list":
        for job in JobName:
            print(f"{job.value:<28} {cron_expression(job, scheduler.settings)}")
        return 0

    if args.command == "run-job":
        try:
            return asyncio.run(_run_once(scheduler, args.name))
        except UnknownJobError as e:
            print(e.message, file=sys.stderr)
            return 2

    try:
        asyncio.run(_run_forever(scheduler))
    except KeyboardInterrupt:
        logger.info("scheduler_interrupted")
    return 0


if __name__ == "__main__":
    sys.exit(main())
