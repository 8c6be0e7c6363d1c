"""
Celery应用配置
CRON_BACKEND=celery 时定时任务由 celery beat 按 beat_schedule 调度；
进程内调度器（services/cron_scheduler.py）也复用这里的 crontab 解析计算下次触发时间。
"""
from urllib.parse import urlparse, urlunparse, parse_qs, urlencode
from celery import Celery
from celery.schedules import crontab
from community_pass.core.config import settings


def _ensure_rediss_ssl_cert_reqs(url: str, default: str = "CERT_NONE") -> str:
    """rediss:// URL 必须带 ssl_cert_reqs 参数，否则 Celery Redis 后端会报错。"""
    if not url or not url.strip().lower().startswith("rediss://"):
        return url
    parsed = urlparse(url)
    qs = parse_qs(parsed.query)
    if "ssl_cert_reqs" not in qs:
        qs["ssl_cert_reqs"] = [default]
    new_query = urlencode(qs, doseq=True)
    return urlunparse(parsed._replace(query=new_query))


def parse_cron(expression: str, app=None) -> crontab:
    """把 5 段 crontab 表达式（分 时 日 月 周）转为 celery crontab"""
    fields = expression.split()
    if len(fields) != 5:
        raise ValueError(f"无效的 crontab 表达式: {expression!r}")
    minute, hour, day_of_month, month_of_year, day_of_week = fields
    return crontab(
        minute=minute,
        hour=hour,
        day_of_month=day_of_month,
        month_of_year=month_of_year,
        day_of_week=day_of_week,
        app=app,
    )


# 未单独配置时与 REDIS_URL 一致，.env 里只填 REDIS_URL 即可
_broker_url = _ensure_rediss_ssl_cert_reqs(settings.CELERY_BROKER_URL or settings.REDIS_URL)
_backend_url = _ensure_rediss_ssl_cert_reqs(settings.CELERY_RESULT_BACKEND or settings.REDIS_URL)

celery_app = Celery(
    "community_pass",
    broker=_broker_url,
    backend=_backend_url,
    include=["community_pass.tasks"]
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone=settings.CRON_TIMEZONE,
    enable_utc=True,
    worker_concurrency=2,
    # 任务名与 tasks/cron_tasks.py 中的 name 一致：cron.<job-name>
    beat_schedule={
        job_name: {"task": f"cron.{job_name}", "schedule": parse_cron(expression)}
        for job_name, expression in settings.cron_schedules.items()
    },
)
