"""
定时任务：过期扫描、续费提醒、自动续费、日汇总
每个任务使用独立 session，每次执行恰好追加一条 cron_job_runs 记录；
任务体抛出的异常在这里被捕获并记录为 failed，不会影响调度器和其他任务。
"""
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from community_pass.core.config import settings
from community_pass.core.database import utc_now
from community_pass.core.exceptions import JobExecutionError
from community_pass.models.community import Community
from community_pass.models.cron_job_run import CronJobRun
from community_pass.models.membership import NFTMembership
from community_pass.models.user import User
from community_pass.services.analytics_service import AnalyticsService
from community_pass.services.ledger_client import LedgerClient
from community_pass.services.notifier import Notifier
from community_pass.services.subscription_service import SubscriptionService

logger = logging.getLogger(__name__)

JOB_CHECK_EXPIRED = "check-expired-memberships"
JOB_RENEWAL_REMINDERS = "send-renewal-reminders"
JOB_AUTO_RENEW = "auto-renew-memberships"
JOB_DAILY_ANALYTICS = "update-daily-analytics"
JOB_RUN_ALL_DAILY = "run-all-daily-jobs"

# run-all-daily-jobs 的固定执行顺序
DAILY_JOB_ORDER = (JOB_CHECK_EXPIRED, JOB_RENEWAL_REMINDERS, JOB_AUTO_RENEW, JOB_DAILY_ANALYTICS)
ALL_JOB_NAMES = DAILY_JOB_ORDER + (JOB_RUN_ALL_DAILY,)

RUN_SUCCESS = "success"
RUN_FAILED = "failed"


@dataclass
class JobOutcome:
    """任务体的执行结果"""
    processed_items: int = 0
    failed_items: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)


JobBody = Callable[[AsyncSession, datetime], Awaitable[JobOutcome]]


class CronJobService:
    """定时任务服务类"""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        ledger: LedgerClient,
        notifier: Notifier,
        now_fn: Callable[[], datetime] = utc_now,
    ):
        self.session_factory = session_factory
        self.ledger = ledger
        self.notifier = notifier
        self.now_fn = now_fn

    # ---------- 执行框架 ---------- #
    async def _record_run(
        self,
        job_name: str,
        started_at: datetime,
        duration_ms: int,
        status: str,
        outcome: JobOutcome,
        error_message: Optional[str] = None,
    ) -> CronJobRun:
        async with self.session_factory() as db:
            run = CronJobRun(
                job_name=job_name,
                status=status,
                started_at=started_at,
                completed_at=started_at + timedelta(milliseconds=duration_ms),
                duration_ms=duration_ms,
                processed_items=outcome.processed_items,
                failed_items=outcome.failed_items,
                error_message=error_message,
                extra=outcome.metadata or None,
            )
            db.add(run)
            await db.commit()
            return run

    async def _execute(self, job_name: str, body: JobBody, now: Optional[datetime]) -> CronJobRun:
        now = now or self.now_fn()
        started = time.perf_counter()
        logger.info("任务开始 %s now=%s", job_name, now.isoformat())
        async with self.session_factory() as db:
            try:
                outcome = await body(db, now)
            except Exception as e:
                await db.rollback()
                err = JobExecutionError(job_name, str(e) or e.__class__.__name__)
                logger.exception("任务失败 %s: %s", job_name, err.reason)
                duration_ms = int((time.perf_counter() - started) * 1000)
                return await self._record_run(job_name, now, duration_ms, RUN_FAILED, JobOutcome(), str(err))

        duration_ms = int((time.perf_counter() - started) * 1000)
        logger.info(
            "任务完成 %s processed=%s failed=%s duration_ms=%s",
            job_name, outcome.processed_items, outcome.failed_items, duration_ms,
        )
        return await self._record_run(job_name, now, duration_ms, RUN_SUCCESS, outcome)

    # ---------- 任务体 ---------- #
    async def _expire_body(self, db: AsyncSession, now: datetime) -> JobOutcome:
        # 条件更新：只改仍处于 active 且已到期的行；version 自增让并发续费检测到冲突
        result = await db.execute(
            update(NFTMembership)
            .where(NFTMembership.is_active.is_(True), NFTMembership.expires_at <= now)
            .values(is_active=False, version=NFTMembership.version + 1, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        return JobOutcome(processed_items=result.rowcount or 0)

    async def _reminder_body(self, db: AsyncSession, now: datetime) -> JobOutcome:
        window_end = now + timedelta(days=settings.RENEWAL_REMINDER_DAYS)
        result = await db.execute(
            select(NFTMembership, User.email, Community.name)
            .join(User, User.id == NFTMembership.user_id)
            .join(Community, Community.id == NFTMembership.community_id)
            .where(
                NFTMembership.is_active.is_(True),
                NFTMembership.auto_renew.is_(False),
                NFTMembership.reminder_sent.is_(False),
                NFTMembership.expires_at > now,
                NFTMembership.expires_at <= window_end,
            )
            .order_by(NFTMembership.expires_at.asc())
        )
        sent_ids: List[int] = []
        failed_ids: List[int] = []
        for membership, email, community_name in result.all():
            payload = {
                "membership_id": membership.id,
                "user_id": membership.user_id,
                "user_email": email,
                "community_id": membership.community_id,
                "community_name": community_name,
                "expires_at": membership.expires_at.isoformat(),
                "days_remaining": membership.days_remaining(now),
            }
            if await self.notifier.send_renewal_reminder(payload):
                sent_ids.append(membership.id)
            else:
                failed_ids.append(membership.id)

        if sent_ids:
            await db.execute(
                update(NFTMembership)
                .where(NFTMembership.id.in_(sent_ids), NFTMembership.reminder_sent.is_(False))
                .values(reminder_sent=True, version=NFTMembership.version + 1, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        return JobOutcome(
            processed_items=len(sent_ids),
            failed_items=len(failed_ids),
            metadata={"sent": sent_ids, "failed": failed_ids} if failed_ids else {"sent": sent_ids},
        )

    async def _disable_auto_renew(self, db: AsyncSession, membership_id: int, now: datetime) -> None:
        await db.execute(
            update(NFTMembership)
            .where(NFTMembership.id == membership_id)
            .values(auto_renew=False, version=NFTMembership.version + 1, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await db.commit()

    async def _auto_renew_body(self, db: AsyncSession, now: datetime) -> JobOutcome:
        window_end = now + timedelta(hours=settings.AUTO_RENEW_LOOKAHEAD_HOURS)
        result = await db.execute(
            select(NFTMembership.id, User.email)
            .join(User, User.id == NFTMembership.user_id)
            .where(
                NFTMembership.is_active.is_(True),
                NFTMembership.auto_renew.is_(True),
                NFTMembership.expires_at > now,
                NFTMembership.expires_at <= window_end,
            )
            .order_by(NFTMembership.expires_at.asc(), NFTMembership.id.asc())
        )
        eligible = list(result.all())
        service = SubscriptionService(db, self.ledger, now_fn=lambda: now)

        succeeded = 0
        failures: List[Dict[str, Any]] = []
        for membership_id, email in eligible:
            try:
                await service.renew_membership(email, membership_id)
                succeeded += 1
            except Exception as e:
                # 单个失败不影响整批：记录、关闭自动续费，会员按期自然过期
                await db.rollback()
                logger.warning("自动续费失败 membership_id=%s: %s", membership_id, e)
                failures.append({"membership_id": membership_id, "reason": str(e)})
                if settings.AUTO_RENEW_DISABLE_ON_FAILURE:
                    await self._disable_auto_renew(db, membership_id, now)

        return JobOutcome(
            processed_items=succeeded,
            failed_items=len(failures),
            metadata={
                "eligible": len(eligible),
                "succeeded": succeeded,
                "failed": len(failures),
                "failures": failures,
            },
        )

    async def _analytics_body(self, db: AsyncSession, now: datetime) -> JobOutcome:
        written = await AnalyticsService(db, now_fn=lambda: now).materialize_daily_rollup(now.date())
        return JobOutcome(processed_items=written, metadata={"date": now.date().isoformat()})

    # ---------- 对外任务 ---------- #
    async def check_expired_memberships(self, now: Optional[datetime] = None) -> CronJobRun:
        """把已到期的 active 会员标记为过期"""
        return await self._execute(JOB_CHECK_EXPIRED, self._expire_body, now)

    async def send_renewal_reminders(self, now: Optional[datetime] = None) -> CronJobRun:
        """对未开启自动续费、即将到期的会员投递续费提醒（每个到期周期只提醒一次）"""
        return await self._execute(JOB_RENEWAL_REMINDERS, self._reminder_body, now)

    async def auto_renew_memberships(self, now: Optional[datetime] = None) -> CronJobRun:
        """对开启自动续费、即将到期的会员逐个续费"""
        return await self._execute(JOB_AUTO_RENEW, self._auto_renew_body, now)

    async def update_daily_analytics(self, now: Optional[datetime] = None) -> CronJobRun:
        return await self._execute(JOB_DAILY_ANALYTICS, self._analytics_body, now)

    async def run_all_daily_jobs(self, now: Optional[datetime] = None) -> List[CronJobRun]:
        """按固定顺序执行全部日常任务"""
        runs = []
        for job_name in DAILY_JOB_ORDER:
            runs.append(await self.run_job(job_name, now))
        return runs

    def get_runner(self, job_name: str) -> Optional[Callable[..., Awaitable[Any]]]:
        """任务名 -> 执行方法；未知任务返回 None"""
        return {
            JOB_CHECK_EXPIRED: self.check_expired_memberships,
            JOB_RENEWAL_REMINDERS: self.send_renewal_reminders,
            JOB_AUTO_RENEW: self.auto_renew_memberships,
            JOB_DAILY_ANALYTICS: self.update_daily_analytics,
            JOB_RUN_ALL_DAILY: self.run_all_daily_jobs,
        }.get(job_name)

    async def run_job(self, job_name: str, now: Optional[datetime] = None):
        runner = self.get_runner(job_name)
        if runner is None:
            raise ValueError(f"未知任务: {job_name}")
        return await runner(now)

    # ---------- 执行记录查询 ---------- #
    async def get_job_history(self, job_name: Optional[str] = None, limit: int = 50) -> List[CronJobRun]:
        """执行记录，新的在前"""
        async with self.session_factory() as db:
            stmt = select(CronJobRun)
            if job_name:
                stmt = stmt.where(CronJobRun.job_name == job_name)
            stmt = stmt.order_by(CronJobRun.started_at.desc(), CronJobRun.id.desc()).limit(limit)
            result = await db.execute(stmt)
            return list(result.scalars().all())

    async def get_job_statistics(self, days: int = 30) -> List[Dict[str, Any]]:
        """近 N 天按 (任务, 状态) 分组：次数、平均耗时、平均处理条数"""
        since = self.now_fn() - timedelta(days=days)
        async with self.session_factory() as db:
            result = await db.execute(
                select(
                    CronJobRun.job_name,
                    CronJobRun.status,
                    func.count(CronJobRun.id),
                    func.avg(CronJobRun.duration_ms),
                    func.avg(CronJobRun.processed_items),
                )
                .where(CronJobRun.started_at >= since)
                .group_by(CronJobRun.job_name, CronJobRun.status)
                .order_by(CronJobRun.job_name.asc(), CronJobRun.status.asc())
            )
            return [
                {
                    "job_name": job_name,
                    "status": status,
                    "count": count,
                    "avg_duration_ms": float(avg_duration) if avg_duration is not None else None,
                    "avg_processed_items": float(avg_processed) if avg_processed is not None else None,
                }
                for job_name, status, count, avg_duration, avg_processed in result.all()
            ]
