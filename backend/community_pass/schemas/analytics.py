"""
订阅分析相关Schema
"""
from pydantic import BaseModel
from datetime import date
from typing import Optional, List


class EarningsOverview(BaseModel):
    """艺人收入概览"""
    artist_id: int
    period_days: int
    total_earnings: float
    active_subscriptions: int
    new_subscribers: int
    renewed_subscriptions: int
    renewal_rate: float  # 百分比
    earnings_growth: float  # 相对上一周期，百分比
    total_subscribers: int
    next_payout_date: date
    currency: str


class DailyEarnings(BaseModel):
    date: date
    revenue: float
    new_subscribers: int
    renewed_subscriptions: int


class DailyCommunityStats(BaseModel):
    date: date
    new_subscribers: int
    renewed_subscriptions: int
    expired_subscriptions: int
    total_active_subscriptions: int
    revenue: float


class CommunityAnalytics(BaseModel):
    """单个社区分析"""
    community_id: int
    period_days: int
    total_revenue: float
    new_subscribers: int
    renewed_subscriptions: int
    expired_subscriptions: int
    active_subscriptions: int
    daily: List[DailyCommunityStats]


class TopCommunity(BaseModel):
    community_id: int
    name: Optional[str] = None
    revenue: float
    active_subscriptions: int
    new_subscribers: int


class TrendPoint(BaseModel):
    """订阅趋势（按天）"""
    date: date
    new_subscribers: int
    renewals: int
    expirations: int
    cancellations: int
    net_growth: int
    revenue: float
