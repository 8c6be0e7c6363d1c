"""
进程内定时任务调度器（CRON_BACKEND=inprocess）
- 在 FastAPI lifespan 中创建并挂到 app.state，生命周期：initialize_cron_jobs -> 运行 -> shutdown
- 每个任务一个 asyncio task，用 celery crontab 计算下次触发时间
- 同一任务不重叠执行（每个任务一把 asyncio.Lock），重叠的触发直接跳过；不同任务可并发
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from celery.schedules import crontab

from community_pass.celery_app import celery_app, parse_cron
from community_pass.core.config import settings
from community_pass.models.cron_job_run import CronJobRun
from community_pass.services.cron_job_service import (
    ALL_JOB_NAMES,
    DAILY_JOB_ORDER,
    JOB_RUN_ALL_DAILY,
    CronJobService,
)

logger = logging.getLogger(__name__)

MIN_SLEEP_SECONDS = 1.0
MAX_SLEEP_SECONDS = 300.0  # 单次等待上限，时钟调整后也能较快对齐


@dataclass
class ScheduledJob:
    name: str
    expression: str
    schedule: crontab
    task: Optional[asyncio.Task] = None
    last_run_at: Optional[datetime] = None

    @property
    def is_running(self) -> bool:
        return self.task is not None and not self.task.done()


class CronScheduler:
    """定时任务注册表"""

    def __init__(self, job_service: CronJobService, schedules: Optional[Dict[str, str]] = None):
        self.job_service = job_service
        self.schedules = schedules if schedules is not None else settings.cron_schedules
        self._jobs: Dict[str, ScheduledJob] = {}
        self._locks: Dict[str, asyncio.Lock] = {name: asyncio.Lock() for name in ALL_JOB_NAMES}
        self._inflight: Set[asyncio.Task] = set()
        self._initialized = False

    # ---------- 注册与启停 ---------- #
    def initialize_cron_jobs(self) -> None:
        """注册并启动全部任务；重复调用不会重复调度"""
        if self._initialized:
            logger.info("定时任务已初始化，跳过")
            return
        for name, expression in self.schedules.items():
            if name not in self._locks:
                logger.warning("忽略未知任务配置: %s", name)
                continue
            self._jobs[name] = ScheduledJob(
                name=name,
                expression=expression,
                schedule=parse_cron(expression, app=celery_app),
            )
            self.start_job(name)
        self._initialized = True
        logger.info("定时任务初始化完成: %s", ", ".join(sorted(self._jobs)))

    def start_job(self, job_name: str) -> bool:
        job = self._jobs.get(job_name)
        if job is None:
            return False
        if not job.is_running:
            job.last_run_at = job.schedule.now()
            job.task = asyncio.create_task(self._loop(job), name=f"cron:{job_name}")
            logger.info("定时任务已启动 %s (%s)", job_name, job.expression)
        return True

    def stop_job(self, job_name: str) -> bool:
        """停止调度；任务仍保留在注册表中，可再次 start"""
        job = self._jobs.get(job_name)
        if job is None:
            return False
        if job.task is not None:
            job.task.cancel()
            job.task = None
            logger.info("定时任务已停止 %s", job_name)
        return True

    async def shutdown(self) -> None:
        tasks = [job.task for job in self._jobs.values() if job.task is not None]
        tasks.extend(self._inflight)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        for job in self._jobs.values():
            job.task = None
        self._inflight.clear()
        self._initialized = False
        logger.info("定时任务调度器已关闭")

    # ---------- 执行 ---------- #
    async def _run_locked(self, job_name: str, now: Optional[datetime] = None) -> bool:
        """同一任务正在执行时返回 False（跳过），否则执行并返回 True"""
        lock = self._locks[job_name]
        if lock.locked():
            logger.warning("任务 %s 仍在执行，跳过本次触发", job_name)
            return False
        async with lock:
            if job_name == JOB_RUN_ALL_DAILY:
                for component in DAILY_JOB_ORDER:
                    async with self._locks[component]:
                        await self.job_service.run_job(component, now)
            else:
                await self.job_service.run_job(job_name, now)
        return True

    async def _run_detached(self, job_name: str) -> None:
        try:
            await self._run_locked(job_name)
        except Exception as e:
            # 任务体异常已在 CronJobService 内记录，这里只会是记录执行结果本身失败
            logger.exception("任务 %s 调度执行异常: %s", job_name, e)

    async def _loop(self, job: ScheduledJob) -> None:
        while True:
            due, next_seconds = job.schedule.is_due(job.last_run_at)
            if due:
                job.last_run_at = job.schedule.now()
                if self._locks[job.name].locked():
                    logger.warning("任务 %s 仍在执行，跳过 %s 的触发", job.name, job.last_run_at.isoformat())
                else:
                    task = asyncio.create_task(self._run_detached(job.name), name=f"cron-run:{job.name}")
                    self._inflight.add(task)
                    task.add_done_callback(self._inflight.discard)
            await asyncio.sleep(min(max(float(next_seconds), MIN_SLEEP_SECONDS), MAX_SLEEP_SECONDS))

    async def trigger_job(self, job_name: str, now: Optional[datetime] = None) -> bool:
        """手动立即执行（不影响调度）。未知任务或同一任务正在执行时返回 False"""
        if job_name not in self._locks:
            return False
        logger.info("手动触发任务 %s", job_name)
        return await self._run_locked(job_name, now)

    # ---------- 查询 ---------- #
    def is_job_executing(self, job_name: str) -> bool:
        lock = self._locks.get(job_name)
        return bool(lock and lock.locked())

    def health_check(self) -> Dict[str, Any]:
        """全部在运行=healthy，部分=degraded，没有任务在运行=unhealthy"""
        jobs = {name: job.is_running for name, job in self._jobs.items()}
        total = len(jobs)
        running = sum(1 for is_running in jobs.values() if is_running)
        if total and running == total:
            status = "healthy"
        elif running > 0:
            status = "degraded"
        else:
            status = "unhealthy"
        return {
            "status": status,
            "total_jobs": total,
            "running_jobs": running,
            "stopped_jobs": total - running,
            "jobs": jobs,
        }

    async def get_job_history(self, job_name: Optional[str] = None, limit: int = 50) -> List[CronJobRun]:
        return await self.job_service.get_job_history(job_name, limit)

    async def get_job_statistics(self, days: int = 30) -> List[Dict[str, Any]]:
        return await self.job_service.get_job_statistics(days)
