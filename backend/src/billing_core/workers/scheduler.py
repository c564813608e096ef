"""Cron-driven scheduler for the billing jobs.

One asyncio task per job computes the next fire time from the job's cron
expression in the billing timezone, sleeps until then and runs the job.
Manual runs go through the same path and share a per-job lock, so a job
never overlaps itself.
"""
import asyncio
import time
from datetime import datetime
from typing import Optional, Union
from uuid import uuid4
from zoneinfo import ZoneInfo

import structlog
from croniter import croniter
from pydantic import BaseModel, Field

from billing_core.config import Settings, settings
from billing_core.exceptions import UnknownJobError
from billing_core.metrics import job_duration_seconds, job_runs_total
from billing_core.schemas.results import JobResult
from billing_core.services.billing_service import BillingService
from billing_core.utils.dates import utcnow
from billing_core.workers.jobs import JOBS, JobFunc, JobName, cron_expression

logger = structlog.get_logger(__name__)


class SchedulerState(BaseModel):
    """What the scheduler is doing right now."""

    is_running: bool
    active_jobs: list[str] = Field(default_factory=list)
    running_now: list[str] = Field(default_factory=list)
    next_runs: dict[str, datetime] = Field(default_factory=dict)
    last_results: dict[str, JobResult] = Field(default_factory=dict)
    timezone: str


class BillingScheduler:
    """
    Runs the billing jobs on their cron schedules.

    Usage:
        scheduler = BillingScheduler()
        await scheduler.start()
        ...
        await scheduler.stop()
    """

    def __init__(
        self,
        billing: Optional[BillingService] = None,
        config: Optional[Settings] = None,
        jobs: Optional[dict[JobName, JobFunc]] = None,
    ):
        self.settings = config or settings
        self.billing = billing or BillingService(config=self.settings)
        self.timezone = ZoneInfo(self.settings.billing_timezone)
        self._jobs: dict[JobName, JobFunc] = dict(jobs or JOBS)
        self._locks: dict[JobName, asyncio.Lock] = {name: asyncio.Lock() for name in self._jobs}
        self._tasks: dict[JobName, asyncio.Task] = {}
        self._next_runs: dict[JobName, datetime] = {}
        self._last_results: dict[JobName, JobResult] = {}

    @property
    def is_running(self) -> bool:
        return bool(self._tasks)

    def resolve(self, name: Union[str, JobName]) -> JobName:
        """
        Map a job name to a registered job.

        Raises:
            UnknownJobError: If the name is not a registered job
        """
        known = [job.value for job in self._jobs]
        try:
            job = JobName(name)
        except ValueError:
            raise UnknownJobError(str(name), known) from None
        if job not in self._jobs:
            raise UnknownJobError(job.value, known)
        return job

    def compute_next_run(self, job: JobName, now: Optional[datetime] = None) -> datetime:
        """Next fire time of a job, timezone-aware in the billing timezone."""
        now = now or datetime.now(self.timezone)
        return croniter(cron_expression(job, self.settings), now).get_next(datetime)

    async def start(self) -> None:
        """Start one timer task per job. Calling start twice is a no-op."""
        if self.is_running:
            logger.warning("scheduler_already_running")
            return

        for job in self._jobs:
            self._tasks[job] = asyncio.create_task(self._loop(job), name=f"billing-job:{job.value}")

        logger.info(
            "scheduler_started",
            jobs=[job.value for job in self._jobs],
            timezone=self.settings.billing_timezone,
        )

    async def stop(self) -> None:
        """Cancel the timer tasks and wait for them to finish."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._next_runs.clear()
        logger.info("scheduler_stopped")

    def get_status(self) -> SchedulerState:
        """Snapshot of the scheduler state."""
        return SchedulerState(
            is_running=self.is_running,
            active_jobs=[job.value for job in self._tasks],
            running_now=[job.value for job, lock in self._locks.items() if lock.locked()],
            next_runs={job.value: at for job, at in self._next_runs.items()},
            last_results={job.value: result for job, result in self._last_results.items()},
            timezone=self.settings.billing_timezone,
        )

    async def run_job(self, name: Union[str, JobName]) -> JobResult:
        """
        Run a job now, outside its schedule.

        Waits for a run of the same job that is already in progress.

        Raises:
            UnknownJobError: If the name is not a registered job
        """
        return await self._execute(self.resolve(name), trigger="manual")

    async def _execute(self, job: JobName, trigger: str) -> JobResult:
        async with self._locks[job]:
            with structlog.contextvars.bound_contextvars(job=job.value, job_run_id=uuid4().hex):
                logger.info("job_started", trigger=trigger)
                started = time.monotonic()
                started_at = utcnow()

                try:
                    result = await self._jobs[job](self.billing)
                    status = "partial" if result.failed else "success"
                except Exception as exc:
                    logger.exception("job_failed", exc_info=exc)
                    result = JobResult(job=job.value, started_at=started_at, failed=1)
                    result.record_error("job", exc)
                    status = "error"

                result.finished_at = result.finished_at or utcnow()
                duration = time.monotonic() - started
                job_runs_total.labels(job=job.value, status=status).inc()
                job_duration_seconds.labels(job=job.value).observe(duration)
                self._last_results[job] = result

                logger.info(
                    "job_completed",
                    status=status,
                    processed=result.processed,
                    successful=result.successful,
                    failed=result.failed,
                    errors=len(result.errors),
                    duration_seconds=round(duration, 3),
                )
                return result

    async def _loop(self, job: JobName) -> None:
        while True:
            now = datetime.now(self.timezone)
            next_run = self.compute_next_run(job, now)
            self._next_runs[job] = next_run
            delay = max(0.0, (next_run - now).total_seconds())
            logger.info("job_scheduled", job=job.value, next_run=next_run.isoformat(), sleep_seconds=round(delay))

            try:
                await asyncio.sleep(delay)
            except asyncio.CancelledError:
                logger.info("job_timer_cancelled", job=job.value)
                raise

            await self._execute(job, trigger="cron")
