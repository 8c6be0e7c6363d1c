import asyncio
from types import SimpleNamespace

import pytest

from community_pass.services.cron_job_service import (
    DAILY_JOB_ORDER,
    JOB_AUTO_RENEW,
    JOB_CHECK_EXPIRED,
    JOB_RUN_ALL_DAILY,
)
from community_pass.tasks import cron_tasks


class StubLock:
    def __init__(self, redis, name):
        self.redis = redis
        self.name = name

    def acquire(self, blocking=False):
        if self.name in self.redis.held:
            return False
        self.redis.held.add(self.name)
        self.redis.events.append(("acquire", self.name))
        return True

    def release(self):
        self.redis.held.discard(self.name)
        self.redis.events.append(("release", self.name))


class StubRedis:
    """内存版 Redis 锁：held 中的 key 视为被其他 worker 持有"""

    def __init__(self):
        self.held = set()
        self.events = []
        self.lock_kwargs = {}

    def lock(self, name, timeout=None, blocking_timeout=None):
        self.lock_kwargs[name] = {"timeout": timeout, "blocking_timeout": blocking_timeout}
        return StubLock(self, name)


class StubCronJobService:
    def __init__(self, events):
        self.events = events

    async def run_job(self, job_name, now=None):
        self.events.append(("run", job_name))
        return SimpleNamespace(
            job_name=job_name,
            status="success",
            processed_items=1,
            failed_items=0,
            duration_ms=5,
            error_message=None,
        )


@pytest.fixture
def stub_redis(monkeypatch):
    stub = StubRedis()
    service = StubCronJobService(stub.events)

    def fake_with_service(async_fn):
        async def _run():
            return await async_fn(service)
        return _run

    monkeypatch.setattr(cron_tasks, "_get_redis", lambda: stub)
    monkeypatch.setattr(cron_tasks, "_with_celery_job_service", fake_with_service)
    yield stub
    asyncio.set_event_loop(None)


def test_single_job_runs_under_its_lock(stub_redis):
    result = cron_tasks.check_expired_memberships_task()

    assert result["job_name"] == JOB_CHECK_EXPIRED
    assert result["status"] == "success"
    assert result["processed_items"] == 1
    lock_name = f"cron-lock:{JOB_CHECK_EXPIRED}"
    assert stub_redis.events == [("acquire", lock_name), ("run", JOB_CHECK_EXPIRED), ("release", lock_name)]
    assert stub_redis.lock_kwargs[lock_name]["blocking_timeout"] is None
    assert stub_redis.held == set()


def test_single_job_is_skipped_while_lock_is_held(stub_redis):
    stub_redis.held.add(f"cron-lock:{JOB_AUTO_RENEW}")

    result = cron_tasks.auto_renew_memberships_task()

    assert result == {"job_name": JOB_AUTO_RENEW, "status": "skipped"}
    assert stub_redis.events == []


def test_run_all_takes_each_component_lock_in_order(stub_redis):
    result = cron_tasks.run_all_daily_jobs_task()

    assert result["status"] == "success"
    assert [job["job_name"] for job in result["jobs"]] == list(DAILY_JOB_ORDER)

    expected = [("acquire", f"cron-lock:{JOB_RUN_ALL_DAILY}")]
    for job_name in DAILY_JOB_ORDER:
        lock_name = f"cron-lock:{job_name}"
        expected += [("acquire", lock_name), ("run", job_name), ("release", lock_name)]
    expected.append(("release", f"cron-lock:{JOB_RUN_ALL_DAILY}"))
    assert stub_redis.events == expected
    assert stub_redis.lock_kwargs[f"cron-lock:{JOB_AUTO_RENEW}"]["blocking_timeout"] is not None


def test_run_all_skips_a_component_whose_lock_stays_held(stub_redis):
    stub_redis.held.add(f"cron-lock:{JOB_AUTO_RENEW}")

    result = cron_tasks.run_all_daily_jobs_task()

    statuses = {job["job_name"]: job["status"] for job in result["jobs"]}
    assert statuses[JOB_AUTO_RENEW] == "skipped"
    assert [e[1] for e in stub_redis.events if e[0] == "run"] == [
        name for name in DAILY_JOB_ORDER if name != JOB_AUTO_RENEW
    ]


def test_run_all_is_skipped_while_its_own_lock_is_held(stub_redis):
    stub_redis.held.add(f"cron-lock:{JOB_RUN_ALL_DAILY}")

    result = cron_tasks.run_all_daily_jobs_task()

    assert result == {"job_name": JOB_RUN_ALL_DAILY, "status": "skipped"}
    assert stub_redis.events == []
