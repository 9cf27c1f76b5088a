"""
Tests for the single-flight sweep scheduler.
"""

import asyncio

import pytest

from conftest import ts
from core.infra.scheduler import JOB_ID, SweepScheduler, validate_cron_expression
from core.models import SweepReport, SweepStatus


class GatedSweep:
    """A sweep that runs until released."""

    def __init__(self):
        self.release = asyncio.Event()
        self.started = 0
        self.cancelled = 0

    async def __call__(self) -> SweepReport:
        self.started += 1
        try:
            await self.release.wait()
        except asyncio.CancelledError:
            self.cancelled += 1
            raise
        return SweepReport(status=SweepStatus.SUCCESS, started_at=ts(0))


def test_overlapping_trigger_is_dropped_not_queued():
    async def run():
        sweep = GatedSweep()
        scheduler = SweepScheduler(sweep)

        first = scheduler.trigger()
        await asyncio.sleep(0)
        assert scheduler.sweep_in_progress
        assert scheduler.trigger() is None
        assert scheduler.trigger() is None

        sweep.release.set()
        report = await first
        await asyncio.sleep(0)
        return sweep, scheduler, report

    sweep, scheduler, report = asyncio.run(run())

    assert sweep.started == 1
    assert scheduler.dropped_triggers == 2
    assert scheduler.last_report is report
    assert not scheduler.sweep_in_progress


def test_trigger_after_completion_starts_a_new_sweep():
    async def run():
        sweep = GatedSweep()
        sweep.release.set()
        scheduler = SweepScheduler(sweep)
        await scheduler.run_once()
        await scheduler.run_once()
        return sweep.started, scheduler.dropped_triggers

    assert asyncio.run(run()) == (2, 0)


def test_run_once_rejects_while_busy():
    async def run():
        sweep = GatedSweep()
        scheduler = SweepScheduler(sweep)
        scheduler.trigger()
        with pytest.raises(RuntimeError):
            await scheduler.run_once()
        sweep.release.set()
        await scheduler.wait_idle()

    asyncio.run(run())


def test_stop_cancels_the_in_flight_sweep():
    async def run():
        sweep = GatedSweep()
        scheduler = SweepScheduler(sweep)
        await scheduler.start(hours=1)
        await asyncio.sleep(0)
        assert scheduler.sweep_in_progress
        await scheduler.stop(grace=1.0)
        return sweep, scheduler

    sweep, scheduler = asyncio.run(run())

    assert sweep.started == 1
    assert sweep.cancelled == 1
    assert not scheduler.sweep_in_progress


def test_start_registers_a_single_job():
    async def run():
        sweep = GatedSweep()
        sweep.release.set()
        scheduler = SweepScheduler(sweep)
        await scheduler.start(minutes=30, run_immediately=False)
        job = scheduler._scheduler.get_job(JOB_ID)
        await scheduler.start(minutes=5)
        jobs = scheduler._scheduler.get_jobs()
        await scheduler.stop()
        return job, jobs, sweep.started

    job, jobs, started = asyncio.run(run())

    assert job is not None
    assert job.max_instances == 1
    assert len(jobs) == 1
    assert started == 0


def test_tick_while_running_is_counted():
    async def run():
        sweep = GatedSweep()
        scheduler = SweepScheduler(sweep)
        scheduler.trigger()
        await scheduler._tick()
        sweep.release.set()
        await scheduler.wait_idle()
        return scheduler.dropped_triggers

    assert asyncio.run(run()) == 1


def test_start_rejects_invalid_cron():
    async def run():
        scheduler = SweepScheduler(GatedSweep())
        await scheduler.start(cron_expression="every tuesday")

    with pytest.raises(ValueError):
        asyncio.run(run())


def test_start_requires_an_interval():
    async def run():
        scheduler = SweepScheduler(GatedSweep())
        await scheduler.start()

    with pytest.raises(ValueError):
        asyncio.run(run())


@pytest.mark.parametrize(
    "expression, valid",
    [
        ("*/30 * * * *", True),
        ("0 6 * * mon-fri", True),
        ("* * * *", False),
        ("61 * * * *", False),
    ],
)
def test_validate_cron_expression(expression, valid):
    assert validate_cron_expression(expression) is valid
