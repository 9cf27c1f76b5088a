"""
Scheduler infrastructure for running sweeps periodically.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from croniter import croniter

from core.models import SweepReport


logger = logging.getLogger(__name__)

JOB_ID = "sweep"


class SweepScheduler:
    """Runs sweeps on an APScheduler trigger, at most one at a time.

    Every tick tries to claim the single sweep slot without blocking. If the
    previous sweep is still running the tick is dropped, not queued.
    """

    def __init__(
        self,
        run_sweep: Callable[[], Awaitable[SweepReport]],
        timezone: str = "UTC",
    ):
        """Initialize scheduler around the coroutine that performs one sweep."""
        self._run_sweep = run_sweep

        # Configure job defaults
        job_defaults = {
            'coalesce': True,
            'max_instances': 1,
            'misfire_grace_time': 60  # seconds
        }

        self._scheduler = AsyncIOScheduler(
            job_defaults=job_defaults,
            timezone=timezone
        )
        self._started = False
        self._current: Optional[asyncio.Task] = None
        self.last_report: Optional[SweepReport] = None
        self.dropped_triggers = 0

    @property
    def sweep_in_progress(self) -> bool:
        return self._current is not None and not self._current.done()

    async def start(
        self,
        seconds: Optional[int] = None,
        minutes: Optional[int] = None,
        hours: Optional[int] = None,
        cron_expression: Optional[str] = None,
        run_immediately: bool = True,
    ) -> None:
        """Start the scheduler with an interval or a cron trigger."""
        if self._started:
            return

        if cron_expression is not None:
            trigger = self._cron_trigger(cron_expression)
        else:
            trigger = self._interval_trigger(seconds, minutes, hours)

        self._scheduler.add_job(
            self._tick,
            trigger=trigger,
            id=JOB_ID,
            name=JOB_ID,
            replace_existing=True,
        )
        self._scheduler.start()
        self._started = True
        logger.info(f"Scheduler started: {trigger}")

        # Kick off a sweep immediately on startup
        if run_immediately:
            self.trigger()

    async def stop(self, grace: float = 10.0) -> None:
        """Stop the scheduler and abandon the in-flight sweep."""
        if self._started:
            self._scheduler.shutdown(wait=False)
            self._started = False
            logger.info("Scheduler stopped")

        task = self._current
        if task is not None and not task.done():
            logger.info("Cancelling in-flight sweep...")
            task.cancel()
            done, _ = await asyncio.wait({task}, timeout=grace)
            if not done:
                logger.warning(f"Sweep did not unwind within {grace:.1f}s")

    def trigger(self) -> Optional[asyncio.Task]:
        """Start a sweep unless one is already running; returns its task."""
        if self.sweep_in_progress:
            self.dropped_triggers += 1
            logger.warning("Previous sweep still running – dropping this trigger")
            return None
        self._current = asyncio.create_task(self._guarded_sweep(), name="sweep")
        return self._current

    async def run_once(self) -> SweepReport:
        """Run a single sweep to completion (bounded read mode)."""
        task = self.trigger()
        if task is None:
            raise RuntimeError("A sweep is already in progress")
        return await task

    async def wait_idle(self) -> None:
        """Wait for the in-flight sweep, if any, to finish."""
        if self._current is not None:
            await asyncio.gather(self._current, return_exceptions=True)

    async def _tick(self) -> None:
        self.trigger()

    async def _guarded_sweep(self) -> SweepReport:
        report = await self._run_sweep()
        self.last_report = report
        return report

    def _interval_trigger(
        self,
        seconds: Optional[int],
        minutes: Optional[int],
        hours: Optional[int],
    ) -> IntervalTrigger:
        # Build trigger kwargs, excluding None values
        trigger_kwargs = {}
        if seconds is not None:
            trigger_kwargs['seconds'] = seconds
        if minutes is not None:
            trigger_kwargs['minutes'] = minutes
        if hours is not None:
            trigger_kwargs['hours'] = hours

        if not trigger_kwargs:
            raise ValueError("At least one of seconds, minutes, or hours must be specified")

        return IntervalTrigger(**trigger_kwargs)

    def _cron_trigger(self, cron_expression: str) -> CronTrigger:
        if not validate_cron_expression(cron_expression):
            raise ValueError(f"Invalid cron expression: {cron_expression}")
        return CronTrigger.from_crontab(cron_expression, timezone=self._scheduler.timezone)


def validate_cron_expression(cron_expression: str) -> bool:
    """Validate a five-field cron expression using croniter."""
    if len(cron_expression.split()) != 5:
        logger.error(f"Cron expression must have 5 parts: '{cron_expression}'")
        return False
    try:
        croniter(cron_expression)
        return True
    except (ValueError, KeyError) as e:
        logger.error(f"Invalid cron expression '{cron_expression}': {e}")
        return False
