"""
定时任务的 Celery 版本（CRON_BACKEND=celery）：由 celery beat 按 beat_schedule 投递，worker 执行。
同名任务跨 worker 互斥：执行前获取 Redis 锁（cron-lock:<job-name>），拿不到锁说明上一次仍在执行，本次跳过。
注意：必须使用任务内创建的 engine/session（create_async_engine_and_session_for_celery），
不能使用全局 AsyncSessionLocal，否则会报 "Future attached to a different loop"。
"""
import asyncio
import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

import redis

from community_pass.celery_app import celery_app
from community_pass.core.config import settings
from community_pass.core.database import create_async_engine_and_session_for_celery
from community_pass.models.cron_job_run import CronJobRun
from community_pass.services.cron_job_service import (
    CronJobService,
    DAILY_JOB_ORDER,
    JOB_AUTO_RENEW,
    JOB_CHECK_EXPIRED,
    JOB_DAILY_ANALYTICS,
    JOB_RENEWAL_REMINDERS,
    JOB_RUN_ALL_DAILY,
)
from community_pass.services.ledger_client import HttpLedgerClient
from community_pass.services.notifier import RedisNotifier

logger = logging.getLogger(__name__)

_redis_client = None


def _get_redis():
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.Redis.from_url(settings.REDIS_URL)
    return _redis_client


def _run_async(coro):
    """在同步上下文中运行异步协程（Celery 任务内使用）"""
    try:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def _with_celery_job_service(async_fn):
    """在任务内创建当前 loop 的 engine/session 工厂，执行 async_fn(job_service)，用完后 dispose engine。"""
    async def _run():
        await asyncio.sleep(0)  # 确保已在当前 loop 的 async 上下文中
        engine, session_factory = create_async_engine_and_session_for_celery()
        try:
            service = CronJobService(session_factory, HttpLedgerClient(), RedisNotifier())
            return await async_fn(service)
        finally:
            await engine.dispose()
    return _run


@contextmanager
def _job_lock(job_name: str, blocking: bool = False) -> Iterator[bool]:
    """同名任务互斥锁；yield 是否拿到锁"""
    lock = _get_redis().lock(
        f"cron-lock:{job_name}",
        timeout=settings.CRON_LOCK_TIMEOUT_SECONDS,
        blocking_timeout=settings.CRON_LOCK_TIMEOUT_SECONDS if blocking else None,
    )
    acquired = lock.acquire(blocking=blocking)
    try:
        yield acquired
    finally:
        if acquired:
            try:
                lock.release()
            except redis.exceptions.LockError as e:
                logger.warning("释放任务锁失败 %s（可能已超时）: %s", job_name, e)


def _summarize(run: CronJobRun) -> Dict[str, Any]:
    return {
        "job_name": run.job_name,
        "status": run.status,
        "processed_items": run.processed_items,
        "failed_items": run.failed_items,
        "duration_ms": run.duration_ms,
        "error_message": run.error_message,
    }


def _run_single(job_name: str) -> Optional[Dict[str, Any]]:
    with _job_lock(job_name) as acquired:
        if not acquired:
            logger.warning("任务 %s 仍在其他 worker 执行，跳过本次", job_name)
            return {"job_name": job_name, "status": "skipped"}

        async def _run(service: CronJobService):
            return _summarize(await service.run_job(job_name))

        try:
            return _run_async(_with_celery_job_service(_run)())
        except Exception as e:
            logger.exception("cron task %s failed: %s", job_name, e)
            raise


@celery_app.task(bind=True, name=f"cron.{JOB_CHECK_EXPIRED}")
def check_expired_memberships_task(self) -> Dict[str, Any]:
    """异步：过期扫描"""
    return _run_single(JOB_CHECK_EXPIRED)


@celery_app.task(bind=True, name=f"cron.{JOB_RENEWAL_REMINDERS}")
def send_renewal_reminders_task(self) -> Dict[str, Any]:
    """异步：续费提醒"""
    return _run_single(JOB_RENEWAL_REMINDERS)


@celery_app.task(bind=True, name=f"cron.{JOB_AUTO_RENEW}")
def auto_renew_memberships_task(self) -> Dict[str, Any]:
    """异步：自动续费"""
    return _run_single(JOB_AUTO_RENEW)


@celery_app.task(bind=True, name=f"cron.{JOB_DAILY_ANALYTICS}")
def update_daily_analytics_task(self) -> Dict[str, Any]:
    """异步：日汇总"""
    return _run_single(JOB_DAILY_ANALYTICS)


@celery_app.task(bind=True, name=f"cron.{JOB_RUN_ALL_DAILY}")
def run_all_daily_jobs_task(self) -> Dict[str, Any]:
    """异步：按固定顺序执行全部日常任务，依次持有每个子任务的锁"""
    with _job_lock(JOB_RUN_ALL_DAILY) as acquired:
        if not acquired:
            logger.warning("任务 %s 仍在执行，跳过本次", JOB_RUN_ALL_DAILY)
            return {"job_name": JOB_RUN_ALL_DAILY, "status": "skipped"}
        results = []
        for job_name in DAILY_JOB_ORDER:
            with _job_lock(job_name, blocking=True) as component_acquired:
                if not component_acquired:
                    logger.warning("等待任务锁超时，跳过 %s", job_name)
                    results.append({"job_name": job_name, "status": "skipped"})
                    continue

                async def _run(service: CronJobService, name: str = job_name):
                    return _summarize(await service.run_job(name))

                try:
                    results.append(_run_async(_with_celery_job_service(_run)()))
                except Exception as e:
                    logger.exception("cron task %s failed: %s", job_name, e)
                    raise
        return {"job_name": JOB_RUN_ALL_DAILY, "status": "success", "jobs": results}
