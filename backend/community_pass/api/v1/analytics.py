"""
订阅分析API（带 Redis 缓存）
"""
import asyncio
from typing import List

from fastapi import APIRouter, Depends, Query

from community_pass.api.deps import get_analytics_service
from community_pass.schemas.analytics import (
    CommunityAnalytics,
    DailyEarnings,
    EarningsOverview,
    TopCommunity,
    TrendPoint,
)
from community_pass.services import cache_service
from community_pass.services.analytics_service import AnalyticsService

router = APIRouter()


async def _cached(cache_key: str, loader, dump):
    """先查缓存，未命中时执行 loader 并写入缓存；返回可 JSON 序列化的数据"""
    cached = await asyncio.to_thread(cache_service.get, cache_key)
    if cached is not None:
        return cached
    data = dump(await loader())
    await asyncio.to_thread(cache_service.set, cache_key, data)
    return data


def _dump_one(model):
    return model.model_dump(mode="json")


def _dump_many(models):
    return [m.model_dump(mode="json") for m in models]


@router.get("/earnings/{artist_id}", response_model=EarningsOverview)
async def get_earnings_overview(
    artist_id: int,
    period: int = Query(30, ge=1, le=365, description="统计天数"),
    service: AnalyticsService = Depends(get_analytics_service),
):
    """艺人收入概览"""
    return await _cached(
        cache_service.key_earnings_overview(artist_id, period),
        lambda: service.get_earnings_overview(artist_id, period),
        _dump_one,
    )


@router.get("/history/{artist_id}", response_model=List[DailyEarnings])
async def get_earnings_history(
    artist_id: int,
    period: int = Query(30, ge=1, le=365),
    service: AnalyticsService = Depends(get_analytics_service),
):
    """按天收入历史"""
    return await _cached(
        cache_service.key_earnings_history(artist_id, period),
        lambda: service.get_earnings_history(artist_id, period),
        _dump_many,
    )


@router.get("/community/{community_id}", response_model=CommunityAnalytics)
async def get_community_analytics(
    community_id: int,
    period: int = Query(30, ge=1, le=365),
    service: AnalyticsService = Depends(get_analytics_service),
):
    """单个社区分析"""
    return await _cached(
        cache_service.key_community_analytics(community_id, period),
        lambda: service.get_community_analytics(community_id, period),
        _dump_one,
    )


@router.get("/top-communities/{artist_id}", response_model=List[TopCommunity])
async def get_top_communities(
    artist_id: int,
    limit: int = Query(5, ge=1, le=50),
    service: AnalyticsService = Depends(get_analytics_service),
):
    """近 30 天收入最高的社区"""
    return await _cached(
        cache_service.key_top_communities(artist_id, limit),
        lambda: service.get_top_communities(artist_id, limit),
        _dump_many,
    )


@router.get("/trends/{artist_id}", response_model=List[TrendPoint])
async def get_subscription_trends(
    artist_id: int,
    period: int = Query(30, ge=1, le=365),
    service: AnalyticsService = Depends(get_analytics_service),
):
    """订阅趋势"""
    return await _cached(
        cache_service.key_subscription_trends(artist_id, period),
        lambda: service.get_subscription_trends(artist_id, period),
        _dump_many,
    )
