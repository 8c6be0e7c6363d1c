"""
健康检查：数据库、Redis、链上服务连通性
"""
import logging
from typing import Tuple

from community_pass.core.config import settings

logger = logging.getLogger(__name__)


async def check_db() -> Tuple[bool, str]:
    """检查数据库连通性"""
    if not getattr(settings, "DATABASE_URL", None) or not settings.DATABASE_URL.strip():
        return False, "DATABASE_URL 未配置"
    try:
        from community_pass.core.database import engine
        from sqlalchemy import text
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True, "ok"
    except Exception as e:
        logger.warning("健康检查 DB 失败: %s", e)
        return False, str(e)


def check_redis() -> Tuple[bool, str]:
    """检查 Redis 连通性"""
    if not getattr(settings, "REDIS_URL", None) or not settings.REDIS_URL.strip():
        return False, "REDIS_URL 未配置"
    try:
        from community_pass.services.cache_service import _get_redis
        r = _get_redis()
        if not r:
            return False, "Redis 客户端未初始化"
        r.ping()
        return True, "ok"
    except Exception as e:
        logger.warning("健康检查 Redis 失败: %s", e)
        return False, str(e)


async def check_ledger(ledger) -> Tuple[bool, str]:
    """检查链上服务连通性（客户端不支持 ping 时视为未知）"""
    ping = getattr(ledger, "ping", None)
    if ping is None:
        return True, "skipped"
    try:
        if await ping():
            return True, "ok"
        return False, "链上服务返回 5xx"
    except Exception as e:
        logger.warning("健康检查链上服务失败: %s", e)
        return False, str(e)
