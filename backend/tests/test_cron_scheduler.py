import asyncio
from datetime import datetime, timezone

import pytest

from community_pass.celery_app import parse_cron
from community_pass.core.config import settings
from community_pass.services.cron_job_service import (
    ALL_JOB_NAMES,
    DAILY_JOB_ORDER,
    JOB_AUTO_RENEW,
    JOB_CHECK_EXPIRED,
    JOB_RUN_ALL_DAILY,
)
from community_pass.services import cron_scheduler
from community_pass.services.cron_scheduler import CronScheduler


class StubJobService:
    """记录调用顺序；gates 中的任务会阻塞到对应 Event 被 set"""

    def __init__(self):
        self.calls = []
        self.gates = {}
        self.started = {}

    def gate(self, job_name):
        self.gates[job_name] = asyncio.Event()
        self.started[job_name] = asyncio.Event()
        return self.gates[job_name]

    async def run_job(self, job_name, now=None):
        self.calls.append(job_name)
        if job_name in self.started:
            self.started[job_name].set()
        if job_name in self.gates:
            await self.gates[job_name].wait()
        return job_name

    async def get_job_history(self, job_name=None, limit=50):
        return [c for c in self.calls if job_name in (None, c)][:limit]

    async def get_job_statistics(self, days=30):
        return []


@pytest.fixture
async def scheduler():
    sched = CronScheduler(StubJobService(), schedules=dict(settings.cron_schedules))
    yield sched
    await sched.shutdown()


def test_parse_cron_expressions():
    schedule = parse_cron("0 */6 * * *")
    assert schedule.minute == {0}
    assert schedule.hour == {0, 6, 12, 18}

    with pytest.raises(ValueError):
        parse_cron("every hour")


async def test_initialize_registers_every_job_once(scheduler):
    scheduler.initialize_cron_jobs()
    tasks = {name: job.task for name, job in scheduler._jobs.items()}

    scheduler.initialize_cron_jobs()

    assert set(tasks) == set(ALL_JOB_NAMES)
    assert {name: job.task for name, job in scheduler._jobs.items()} == tasks
    health = scheduler.health_check()
    assert health["status"] == "healthy"
    assert health["total_jobs"] == len(ALL_JOB_NAMES)
    assert health["running_jobs"] == len(ALL_JOB_NAMES)


async def test_stop_and_start_keep_job_registered(scheduler):
    scheduler.initialize_cron_jobs()

    assert scheduler.stop_job(JOB_CHECK_EXPIRED) is True
    health = scheduler.health_check()
    assert health["status"] == "degraded"
    assert health["stopped_jobs"] == 1
    assert health["jobs"][JOB_CHECK_EXPIRED] is False

    assert scheduler.start_job(JOB_CHECK_EXPIRED) is True
    assert scheduler.health_check()["status"] == "healthy"

    assert scheduler.start_job("no-such-job") is False
    assert scheduler.stop_job("no-such-job") is False


async def test_health_is_unhealthy_before_initialization(scheduler):
    assert scheduler.health_check()["status"] == "unhealthy"


async def test_trigger_runs_job_and_rejects_unknown_names(scheduler):
    assert await scheduler.trigger_job(JOB_CHECK_EXPIRED) is True
    assert scheduler.job_service.calls == [JOB_CHECK_EXPIRED]
    assert await scheduler.trigger_job("no-such-job") is False


async def test_trigger_is_skipped_while_same_job_runs(scheduler):
    service = scheduler.job_service
    gate = service.gate(JOB_AUTO_RENEW)

    first = asyncio.create_task(scheduler.trigger_job(JOB_AUTO_RENEW))
    await service.started[JOB_AUTO_RENEW].wait()

    assert scheduler.is_job_executing(JOB_AUTO_RENEW) is True
    assert await scheduler.trigger_job(JOB_AUTO_RENEW) is False
    # 不同任务可以并发执行
    assert await scheduler.trigger_job(JOB_CHECK_EXPIRED) is True

    gate.set()
    assert await first is True
    assert service.calls == [JOB_AUTO_RENEW, JOB_CHECK_EXPIRED]


async def test_run_all_daily_jobs_takes_component_locks_in_order(scheduler):
    service = scheduler.job_service
    gate = service.gate(JOB_AUTO_RENEW)

    run_all = asyncio.create_task(scheduler.trigger_job(JOB_RUN_ALL_DAILY))
    await service.started[JOB_AUTO_RENEW].wait()

    # run-all 持有自动续费的锁期间，单独触发会被跳过
    assert await scheduler.trigger_job(JOB_AUTO_RENEW) is False
    assert await scheduler.trigger_job(JOB_RUN_ALL_DAILY) is False

    gate.set()
    assert await run_all is True
    assert service.calls == list(DAILY_JOB_ORDER)


async def test_history_delegates_to_job_service(scheduler):
    await scheduler.trigger_job(JOB_CHECK_EXPIRED)
    assert await scheduler.get_job_history(JOB_CHECK_EXPIRED) == [JOB_CHECK_EXPIRED]
    assert await scheduler.get_job_statistics(7) == []


class AlwaysDue:
    """每次检查都到期，下次检查间隔很短"""

    def __init__(self):
        self.checks = 0

    def is_due(self, last_run_at):
        self.checks += 1
        return True, 0.01

    def now(self):
        return datetime.now(timezone.utc)


async def _wait_until(predicate, timeout=2.0):
    async def _poll():
        while not predicate():
            await asyncio.sleep(0.01)
    await asyncio.wait_for(_poll(), timeout)


async def test_due_ticks_fire_runs_and_overlapping_ticks_are_skipped(monkeypatch):
    monkeypatch.setattr(cron_scheduler, "MIN_SLEEP_SECONDS", 0.01)
    service = StubJobService()
    sched = CronScheduler(service, schedules={JOB_CHECK_EXPIRED: "0 * * * *"})
    try:
        sched.initialize_cron_jobs()
        sched.stop_job(JOB_CHECK_EXPIRED)
        schedule = AlwaysDue()
        sched._jobs[JOB_CHECK_EXPIRED].schedule = schedule
        gate = service.gate(JOB_CHECK_EXPIRED)
        sched.start_job(JOB_CHECK_EXPIRED)

        await asyncio.wait_for(service.started[JOB_CHECK_EXPIRED].wait(), 2.0)
        checks_at_start = schedule.checks
        await _wait_until(lambda: schedule.checks >= checks_at_start + 3)

        # 上一次仍在执行，期间的到期触发全部跳过
        assert service.calls == [JOB_CHECK_EXPIRED]
        assert sched.is_job_executing(JOB_CHECK_EXPIRED) is True

        gate.set()
        await _wait_until(lambda: len(service.calls) >= 2)
        assert set(service.calls) == {JOB_CHECK_EXPIRED}
    finally:
        await sched.shutdown()
