"""
通知投递：续费提醒等事件发布到 Redis 频道，由通知服务消费（模板与发送不在本服务）
fire-and-forget：投递失败只记日志，返回 False
"""
import asyncio
import json
import logging
from typing import Any, Dict, Optional, Protocol

from community_pass.core.config import settings

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    async def send_renewal_reminder(self, payload: Dict[str, Any]) -> bool: ...


class RedisNotifier:
    """通过 Redis PUBLISH 投递通知事件"""

    def __init__(self, redis_url: Optional[str] = None, channel: Optional[str] = None):
        self.redis_url = redis_url or settings.REDIS_URL
        self.channel = channel or settings.NOTIFY_CHANNEL
        self._client = None

    def _get_redis(self):
        """懒加载 Redis 客户端"""
        if self._client is None:
            try:
                import redis
                self._client = redis.Redis.from_url(self.redis_url, decode_responses=True)
            except Exception as e:
                logger.warning("通知 Redis 连接失败，提醒将不会投递: %s", e)
        return self._client

    def _publish(self, message: str) -> int:
        r = self._get_redis()
        if not r:
            raise RuntimeError("Redis 客户端未初始化")
        return r.publish(self.channel, message)

    async def send_renewal_reminder(self, payload: Dict[str, Any]) -> bool:
        event = {"event": "membership.renewal_reminder", "data": payload}
        try:
            message = json.dumps(event, ensure_ascii=False, default=str)
            await asyncio.to_thread(self._publish, message)
            return True
        except Exception as e:
            logger.warning("续费提醒投递失败 membership_id=%s: %s", payload.get("membership_id"), e)
            return False
