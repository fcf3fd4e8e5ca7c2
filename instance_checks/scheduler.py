"""Timer-driven sweeps using APScheduler."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from instance_checks.config import ScheduleConfig
from instance_checks.sweep import SweepAlreadyRunning, SweepFatalError, SweepRunner


logger = structlog.get_logger(__name__)

SWEEP_JOB_ID = "instance-sweep"


def build_trigger(schedule: ScheduleConfig) -> CronTrigger | IntervalTrigger:
    """Cron trigger when a cron expression is set, interval trigger otherwise."""
    if schedule.cron:
        cron_parts = schedule.cron.split()
        if len(cron_parts) != 5:
            raise ValueError(f"Invalid cron expression: {schedule.cron}")
        return CronTrigger(
            minute=cron_parts[0],
            hour=cron_parts[1],
            day=cron_parts[2],
            month=cron_parts[3],
            day_of_week=cron_parts[4],
        )
    return IntervalTrigger(seconds=schedule.interval_seconds)


class SweepScheduler:
    """Runs the instance sweep on a schedule inside the running event loop."""

    def __init__(self, runner: SweepRunner, schedule: ScheduleConfig):
        self.runner = runner
        self.schedule = schedule
        self.scheduler = AsyncIOScheduler()
        self.running = False

    async def _run_sweep(self) -> None:
        try:
            report = await self.runner.run()
        except SweepAlreadyRunning:
            logger.warning("Skipping scheduled sweep, previous sweep still running")
            return
        except SweepFatalError as e:
            logger.error("Scheduled sweep failed", error=str(e))
            return
        logger.info("Scheduled sweep completed", **report.to_dict())

    def start(self, *, run_now: bool = False) -> None:
        if self.running:
            logger.warning("Scheduler already running")
            return

        job_kwargs: dict[str, Any] = {}
        if run_now:
            job_kwargs["next_run_time"] = datetime.now(timezone.utc)

        self.scheduler.add_job(
            func=self._run_sweep,
            trigger=build_trigger(self.schedule),
            id=SWEEP_JOB_ID,
            name="Instance health sweep",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
            **job_kwargs,
        )
        self.scheduler.start()
        self.running = True
        logger.info(
            "Sweep scheduler started",
            cron=self.schedule.cron,
            interval_seconds=None if self.schedule.cron else self.schedule.interval_seconds,
        )

    def stop(self) -> None:
        if not self.running:
            return
        self.scheduler.shutdown(wait=False)
        self.running = False
        logger.info("Sweep scheduler stopped")

    def next_run_time(self) -> datetime | None:
        job = self.scheduler.get_job(SWEEP_JOB_ID)
        return job.next_run_time if job else None
