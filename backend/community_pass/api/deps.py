"""
通用依赖：链上客户端、调度器（均在 lifespan 中创建并挂在 app.state 上）与管理接口校验
"""
import secrets

from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from community_pass.core.config import settings
from community_pass.core.database import get_db
from community_pass.services.analytics_service import AnalyticsService
from community_pass.services.collection_service import CollectionService
from community_pass.services.cron_scheduler import CronScheduler
from community_pass.services.ledger_client import LedgerClient
from community_pass.services.subscription_service import SubscriptionService


def get_ledger_client(request: Request) -> LedgerClient:
    return request.app.state.ledger


def get_cron_scheduler(request: Request) -> CronScheduler:
    """调度器未启动（CRON_ENABLED=false 或 celery 模式）时返回 503"""
    scheduler = getattr(request.app.state, "cron_scheduler", None)
    if scheduler is None:
        raise HTTPException(status_code=503, detail="进程内定时任务调度器未启用")
    return scheduler


def get_subscription_service(
    db: AsyncSession = Depends(get_db),
    ledger: LedgerClient = Depends(get_ledger_client),
) -> SubscriptionService:
    return SubscriptionService(db, ledger)


def get_collection_service(
    db: AsyncSession = Depends(get_db),
    ledger: LedgerClient = Depends(get_ledger_client),
) -> CollectionService:
    return CollectionService(db, ledger)


def get_analytics_service(db: AsyncSession = Depends(get_db)) -> AnalyticsService:
    return AnalyticsService(db)


async def require_admin(x_admin_token: str = Header(None, alias="X-Admin-Token")) -> None:
    """管理接口：配置了 ADMIN_API_TOKEN 时要求请求头 X-Admin-Token 一致，否则 403。"""
    expected = settings.ADMIN_API_TOKEN
    if not expected:
        return
    if not x_admin_token or not secrets.compare_digest(x_admin_token, expected):
        raise HTTPException(status_code=403, detail="管理令牌无效")
