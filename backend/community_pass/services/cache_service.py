"""
Redis 缓存服务：分析类只读接口的结果缓存（收入概览、趋势、社区统计等）
与通知共用同一 Redis 实例，使用 key 前缀区分；CACHE_ENABLED=false 时全部直通
"""
import json
import logging
from typing import Any, Optional

from community_pass.core.config import settings

logger = logging.getLogger(__name__)

_redis_client = None


def _get_redis():
    """获取 Redis 客户端（懒加载）"""
    global _redis_client
    if _redis_client is None:
        try:
            import redis
            _redis_client = redis.Redis.from_url(
                settings.REDIS_URL,
                decode_responses=True,
            )
        except Exception as e:
            logger.warning("缓存 Redis 连接失败，缓存将不生效: %s", e)
    return _redis_client


def _key(name: str) -> str:
    return f"{settings.CACHE_KEY_PREFIX}{name}"


def get(key: str) -> Optional[Any]:
    """从缓存读取，反序列化 JSON。不存在或异常返回 None。"""
    if not settings.CACHE_ENABLED:
        return None
    r = _get_redis()
    if not r:
        return None
    try:
        raw = r.get(_key(key))
        if raw is None:
            return None
        return json.loads(raw)
    except Exception as e:
        logger.debug("缓存 get 失败 %s: %s", key, e)
        return None


def set(key: str, value: Any, ttl: Optional[int] = None) -> bool:
    """写入缓存，value 会 JSON 序列化。ttl 秒，默认用 CACHE_TTL_STATS。"""
    if not settings.CACHE_ENABLED:
        return False
    r = _get_redis()
    if not r:
        return False
    if ttl is None:
        ttl = settings.CACHE_TTL_STATS
    try:
        r.setex(
            _key(key),
            ttl,
            json.dumps(value, ensure_ascii=False, default=str),
        )
        return True
    except Exception as e:
        logger.debug("缓存 set 失败 %s: %s", key, e)
        return False


def delete_by_prefix(prefix: str) -> int:
    """按前缀删除（如 analytics:artist:1: 删除该艺人所有分析缓存）。返回删除的 key 数量。"""
    if not settings.CACHE_ENABLED:
        return 0
    r = _get_redis()
    if not r:
        return 0
    full_prefix = _key(prefix)
    try:
        count = 0
        for k in r.scan_iter(match=f"{full_prefix}*"):
            r.delete(k)
            count += 1
        return count
    except Exception as e:
        logger.debug("缓存 delete_by_prefix 失败 %s: %s", prefix, e)
        return 0


# ---------- 业务 key 约定，便于统一失效 ---------- #
def key_earnings_overview(artist_id: int, period: int) -> str:
    return f"analytics:artist:{artist_id}:earnings:{period}"


def key_earnings_history(artist_id: int, period: int) -> str:
    return f"analytics:artist:{artist_id}:history:{period}"


def key_top_communities(artist_id: int, limit: int) -> str:
    return f"analytics:artist:{artist_id}:top:{limit}"


def key_subscription_trends(artist_id: int, period: int) -> str:
    return f"analytics:artist:{artist_id}:trends:{period}"


def key_community_analytics(community_id: int, period: int) -> str:
    return f"analytics:community:{community_id}:{period}"


def prefix_artist_analytics(artist_id: int) -> str:
    return f"analytics:artist:{artist_id}:"


def prefix_community_analytics(community_id: int) -> str:
    return f"analytics:community:{community_id}:"


def invalidate_analytics_cache(artist_id: Optional[int], community_id: Optional[int]) -> None:
    """mint / 续费 / 新合集之后调用：使该艺人与该社区的分析缓存失效。"""
    if artist_id is not None:
        delete_by_prefix(prefix_artist_analytics(artist_id))
    if community_id is not None:
        delete_by_prefix(prefix_community_analytics(community_id))
