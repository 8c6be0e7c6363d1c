"""
Celery 任务模块：会员定时任务（过期扫描、续费提醒、自动续费、日汇总）
"""
from community_pass.tasks.cron_tasks import (
    check_expired_memberships_task,
    send_renewal_reminders_task,
    auto_renew_memberships_task,
    update_daily_analytics_task,
    run_all_daily_jobs_task,
)

__all__ = [
    "check_expired_memberships_task",
    "send_renewal_reminders_task",
    "auto_renew_memberships_task",
    "update_daily_analytics_task",
    "run_all_daily_jobs_task",
]
