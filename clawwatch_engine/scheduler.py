"""
Collector Scheduler — APScheduler 4.x driving the periodic collector jobs.

Jobs registered by the entrypoint:
- alert_evaluation   every ALERT_EVAL_INTERVAL seconds
- transcript_scan    every TRANSCRIPT_SCAN_INTERVAL seconds
- retention_sweep    cron RETENTION_CRON (default 03:00 UTC daily)

A job never overlaps itself: a tick that arrives while the previous run of
the same job is still going is skipped. Job failures are logged and counted;
they never stop the schedule.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from apscheduler import AsyncScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from clawwatch_engine.exceptions import SchedulerError
from clawwatch_engine.metrics import METRICS, CollectorMetrics, track_job

logger = logging.getLogger("clawwatch.engine.scheduler")

# Module-level reference to the active CollectorScheduler instance.
# Required because APScheduler 4.x serializes task references and cannot
# handle bound methods, only module-level callables.
_active_scheduler: "CollectorScheduler | None" = None


async def _scheduler_dispatch(job_id: str) -> None:
    """Module-level trampoline that APScheduler can serialize."""
    if _active_scheduler is None:
        logger.error("Scheduler dispatch called but no active scheduler")
        return
    await _active_scheduler._execute_job(job_id)


def parse_schedule(schedule_str: str) -> CronTrigger | IntervalTrigger:
    """
    Parse a schedule string into an APScheduler trigger.

    Supports:
    - Cron expressions (6-field with seconds or 5-field standard), in UTC:
      "0 3 * * *" → min hour dom month dow
    - Interval shorthand: "15m", "1h", "30s"

    Raises:
        SchedulerError: If the schedule string cannot be parsed.
    """
    schedule_str = schedule_str.strip()

    for suffix, unit in (("s", "seconds"), ("m", "minutes"), ("h", "hours")):
        if schedule_str.endswith(suffix) and schedule_str[:-1].isdigit():
            value = int(schedule_str[:-1])
            if value < 1:
                raise SchedulerError(f"Interval must be positive: {schedule_str!r}")
            return IntervalTrigger(**{unit: value})

    parts = schedule_str.split()
    try:
        if len(parts) == 6:
            second, minute, hour, day, month, day_of_week = parts
            return CronTrigger(
                second=second, minute=minute, hour=hour,
                day=day, month=month, day_of_week=day_of_week,
                timezone="UTC",
            )
        if len(parts) == 5:
            minute, hour, day, month, day_of_week = parts
            return CronTrigger(
                minute=minute, hour=hour,
                day=day, month=month, day_of_week=day_of_week,
                timezone="UTC",
            )
    except ValueError as e:
        raise SchedulerError(f"Cannot parse schedule: {schedule_str!r} ({e})") from e
    raise SchedulerError(f"Cannot parse schedule: {schedule_str!r}")


@dataclass
class ScheduledJob:
    job_id: str
    func: Callable[[], Awaitable[Any]]
    trigger: CronTrigger | IntervalTrigger
    lock: asyncio.Lock


class CollectorScheduler:
    """
    In-process async scheduler for the collector's periodic jobs.

    Lifecycle:
        scheduler = CollectorScheduler()
        scheduler.add_job("alert_evaluation", evaluator.evaluate, "60s")
        await scheduler.start()
        ...
        await scheduler.stop()
    """

    def __init__(self, metrics: CollectorMetrics | None = None):
        self.metrics = metrics or METRICS
        self._jobs: dict[str, ScheduledJob] = {}
        self._scheduler: AsyncScheduler | None = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def job_ids(self) -> list[str]:
        return list(self._jobs)

    def add_job(
        self,
        job_id: str,
        func: Callable[[], Awaitable[Any]],
        schedule: str | CronTrigger | IntervalTrigger,
    ) -> None:
        """Register a job before ``start()``; schedule strings go through parse_schedule."""
        if self._running:
            raise SchedulerError("Jobs must be registered before the scheduler starts")
        if job_id in self._jobs:
            raise SchedulerError(f"Job {job_id!r} already registered")
        trigger = parse_schedule(schedule) if isinstance(schedule, str) else schedule
        self._jobs[job_id] = ScheduledJob(
            job_id=job_id,
            func=track_job(job_id, self.metrics)(func),
            trigger=trigger,
            lock=asyncio.Lock(),
        )

    async def start(self) -> None:
        if self._running:
            logger.warning("Scheduler already running")
            return

        logger.info("Starting CollectorScheduler...")
        global _active_scheduler

        self._scheduler = AsyncScheduler()
        await self._scheduler.__aenter__()
        self._running = True
        _active_scheduler = self

        for job in self._jobs.values():
            await self._scheduler.add_schedule(
                _scheduler_dispatch,
                job.trigger,
                id=job.job_id,
                kwargs={"job_id": job.job_id},
            )
            logger.debug("Registered job: %s (%s)", job.job_id, job.trigger)

        await self._scheduler.start_in_background()
        logger.info("CollectorScheduler started — %d jobs scheduled", len(self._jobs))

    async def stop(self) -> None:
        """Gracefully stop the scheduler."""
        if not self._running:
            return

        global _active_scheduler
        logger.info("Stopping CollectorScheduler...")
        self._running = False
        _active_scheduler = None

        if self._scheduler is not None:
            await self._scheduler.__aexit__(None, None, None)
            self._scheduler = None

        logger.info("CollectorScheduler stopped")

    async def trigger_job(self, job_id: str) -> bool:
        """Run a job immediately, outside its schedule. False if it was busy."""
        if job_id not in self._jobs:
            raise SchedulerError(f"Unknown job {job_id!r}")
        return await self._execute_job(job_id)

    async def _execute_job(self, job_id: str) -> bool:
        job = self._jobs.get(job_id)
        if job is None:
            logger.error("Dispatch for unknown job %s", job_id)
            return False
        if job.lock.locked():
            logger.warning("Job %s still running; skipping this tick", job_id)
            self.metrics.job_executions_total.labels(job_id=job_id, status="skipped").inc()
            return False

        async with job.lock:
            start = time.monotonic()
            try:
                await job.func()
            except Exception as e:
                logger.error("Job %s failed: %s", job_id, e, exc_info=True)
                return True
            logger.debug("Job %s completed in %dms", job_id, int((time.monotonic() - start) * 1000))
            return True
