"""
订阅分析服务：
- 日汇总由交易流水与会员表重算写入 subscription_analytics（重复执行结果一致）
- 收入概览 / 历史 / 社区统计 / 排行 / 趋势只读汇总表
"""
import logging
from collections import OrderedDict
from datetime import date, datetime, time, timedelta, timezone
from typing import Callable, Dict, List, Optional

from sqlalchemy import select, func, and_
from sqlalchemy.ext.asyncio import AsyncSession

from community_pass.core.config import settings
from community_pass.core.database import utc_now
from community_pass.core.exceptions import CommunityNotFound
from community_pass.models.analytics import SubscriptionAnalytics
from community_pass.models.community import Community, NFTCollection
from community_pass.models.membership import NFTMembership
from community_pass.models.transaction import TransactionRecord, TransactionType, TransactionStatus
from community_pass.schemas.analytics import (
    CommunityAnalytics,
    DailyCommunityStats,
    DailyEarnings,
    EarningsOverview,
    TopCommunity,
    TrendPoint,
)

logger = logging.getLogger(__name__)

PAYOUT_DAY = 15  # 每月 15 日结算上月收入


def day_bounds(day: date):
    """某天的 [00:00, 次日 00:00) UTC 区间"""
    start = datetime.combine(day, time.min, tzinfo=timezone.utc)
    return start, start + timedelta(days=1)


def next_payout_date(today: date) -> date:
    if today.month == 12:
        return date(today.year + 1, 1, PAYOUT_DAY)
    return date(today.year, today.month + 1, PAYOUT_DAY)


def _percent(numerator: float, denominator: float) -> float:
    if not denominator:
        return 0.0
    return round(numerator / denominator * 100, 2)


class AnalyticsService:
    """订阅分析服务类"""

    def __init__(self, db: AsyncSession, now_fn: Callable[[], datetime] = utc_now):
        self.db = db
        self.now_fn = now_fn

    # ---------- 日汇总 ---------- #
    async def _collections_by_community(self) -> Dict[int, NFTCollection]:
        """每个社区取一个合集作为汇总归属：优先活跃合集，其次最新创建的"""
        result = await self.db.execute(
            select(NFTCollection).order_by(
                NFTCollection.is_active.desc(),
                NFTCollection.created_at.desc(),
                NFTCollection.id.desc(),
            )
        )
        by_community: Dict[int, NFTCollection] = {}
        for collection in result.scalars().all():
            by_community.setdefault(collection.community_id, collection)
        return by_community

    async def materialize_daily_rollup(self, day: Optional[date] = None) -> int:
        """
        重算某天（默认今天）每个社区的汇总行。
        计数全部从流水和会员表重新统计，不做增量累加，同一天重复执行结果相同。
        返回写入的行数。
        """
        now = self.now_fn()
        day = day or now.date()
        start, end = day_bounds(day)
        as_of = min(now, end)

        collections = await self._collections_by_community()
        if not collections:
            return 0

        tx_rows = await self.db.execute(
            select(
                TransactionRecord.community_id,
                TransactionRecord.type,
                func.count(TransactionRecord.id),
                func.coalesce(func.sum(TransactionRecord.amount), 0),
            )
            .where(
                TransactionRecord.status == TransactionStatus.SUCCESS.value,
                TransactionRecord.type.in_([TransactionType.MINT.value, TransactionType.RENEWAL.value]),
                TransactionRecord.created_at >= start,
                TransactionRecord.created_at < end,
            )
            .group_by(TransactionRecord.community_id, TransactionRecord.type)
        )
        counts: Dict[int, Dict[str, int]] = {}
        revenue: Dict[int, float] = {}
        for community_id, tx_type, count, amount in tx_rows.all():
            counts.setdefault(community_id, {})[tx_type] = count
            revenue[community_id] = revenue.get(community_id, 0.0) + float(amount or 0)

        expired_rows = await self.db.execute(
            select(NFTMembership.community_id, func.count(NFTMembership.id))
            .where(
                NFTMembership.is_active.is_(False),
                NFTMembership.expires_at >= start,
                NFTMembership.expires_at < end,
            )
            .group_by(NFTMembership.community_id)
        )
        expired = dict(expired_rows.all())

        active_rows = await self.db.execute(
            select(NFTMembership.community_id, func.count(NFTMembership.id))
            .where(NFTMembership.is_active.is_(True), NFTMembership.expires_at > as_of)
            .group_by(NFTMembership.community_id)
        )
        active = dict(active_rows.all())

        existing_rows = await self.db.execute(
            select(SubscriptionAnalytics).where(SubscriptionAnalytics.date == day)
        )
        existing = {(row.artist_id, row.community_id): row for row in existing_rows.scalars().all()}

        written = 0
        for community_id, collection in collections.items():
            key = (collection.artist_id, community_id)
            row = existing.get(key)
            if row is None:
                row = SubscriptionAnalytics(
                    artist_id=collection.artist_id,
                    community_id=community_id,
                    date=day,
                )
                self.db.add(row)
            row.collection_id = collection.id
            row.new_subscribers = counts.get(community_id, {}).get(TransactionType.MINT.value, 0)
            row.renewed_subscriptions = counts.get(community_id, {}).get(TransactionType.RENEWAL.value, 0)
            row.expired_subscriptions = expired.get(community_id, 0)
            row.cancelled_subscriptions = 0
            row.total_active_subscriptions = active.get(community_id, 0)
            row.revenue = revenue.get(community_id, 0.0)
            row.currency = collection.currency or settings.MEMBERSHIP_DEFAULT_CURRENCY
            written += 1

        await self.db.commit()
        logger.info("日汇总完成 date=%s rows=%s", day.isoformat(), written)
        return written

    # ---------- 只读查询 ---------- #
    def _window(self, period: int):
        today = self.now_fn().date()
        return today - timedelta(days=period), today

    async def _artist_rows(self, artist_id: int, start: date, end: date, inclusive_end: bool = True):
        end_clause = SubscriptionAnalytics.date <= end if inclusive_end else SubscriptionAnalytics.date < end
        result = await self.db.execute(
            select(SubscriptionAnalytics)
            .where(
                SubscriptionAnalytics.artist_id == artist_id,
                SubscriptionAnalytics.date >= start,
                end_clause,
            )
            .order_by(SubscriptionAnalytics.date.asc(), SubscriptionAnalytics.community_id.asc())
        )
        return list(result.scalars().all())

    async def get_earnings_overview(self, artist_id: int, period: int = 30) -> EarningsOverview:
        """艺人收入概览：本周期收入、新增、续费率、环比增长、下次结算日"""
        now = self.now_fn()
        start, today = self._window(period)
        current = await self._artist_rows(artist_id, start, today)
        previous = await self._artist_rows(artist_id, start - timedelta(days=period), start, inclusive_end=False)

        total_earnings = sum(float(r.revenue or 0) for r in current)
        previous_earnings = sum(float(r.revenue or 0) for r in previous)
        new_subscribers = sum(r.new_subscribers for r in current)
        renewed = sum(r.renewed_subscriptions for r in current)
        expired = sum(r.expired_subscriptions for r in current)

        active_subscriptions = await self.db.scalar(
            select(func.count(NFTMembership.id))
            .join(Community, Community.id == NFTMembership.community_id)
            .where(
                Community.artist_id == artist_id,
                NFTMembership.is_active.is_(True),
                NFTMembership.expires_at > now,
            )
        )
        total_subscribers = await self.db.scalar(
            select(func.count(func.distinct(NFTMembership.user_id)))
            .join(Community, Community.id == NFTMembership.community_id)
            .where(Community.artist_id == artist_id, NFTMembership.is_active.is_(True))
        )

        return EarningsOverview(
            artist_id=artist_id,
            period_days=period,
            total_earnings=round(total_earnings, 6),
            active_subscriptions=active_subscriptions or 0,
            new_subscribers=new_subscribers,
            renewed_subscriptions=renewed,
            renewal_rate=_percent(renewed, expired),
            earnings_growth=_percent(total_earnings - previous_earnings, previous_earnings),
            total_subscribers=total_subscribers or 0,
            next_payout_date=next_payout_date(today),
            currency=current[0].currency if current else settings.MEMBERSHIP_DEFAULT_CURRENCY,
        )

    async def get_earnings_history(self, artist_id: int, period: int = 30) -> List[DailyEarnings]:
        """按天汇总的收入历史（多个社区同一天合并）"""
        start, today = self._window(period)
        buckets: "OrderedDict[date, DailyEarnings]" = OrderedDict()
        for row in await self._artist_rows(artist_id, start, today):
            bucket = buckets.get(row.date)
            if bucket is None:
                bucket = buckets[row.date] = DailyEarnings(
                    date=row.date, revenue=0.0, new_subscribers=0, renewed_subscriptions=0
                )
            bucket.revenue += float(row.revenue or 0)
            bucket.new_subscribers += row.new_subscribers
            bucket.renewed_subscriptions += row.renewed_subscriptions
        return list(buckets.values())

    async def get_community_analytics(self, community_id: int, period: int = 30) -> CommunityAnalytics:
        community = await self.db.get(Community, community_id)
        if not community:
            raise CommunityNotFound(f"社区不存在: {community_id}")
        start, today = self._window(period)
        result = await self.db.execute(
            select(SubscriptionAnalytics)
            .where(
                SubscriptionAnalytics.community_id == community_id,
                SubscriptionAnalytics.date >= start,
                SubscriptionAnalytics.date <= today,
            )
            .order_by(SubscriptionAnalytics.date.desc())
        )
        rows = list(result.scalars().all())
        active = await self.db.scalar(
            select(func.count(NFTMembership.id)).where(
                NFTMembership.community_id == community_id,
                NFTMembership.is_active.is_(True),
                NFTMembership.expires_at > self.now_fn(),
            )
        )
        return CommunityAnalytics(
            community_id=community_id,
            period_days=period,
            total_revenue=sum(float(r.revenue or 0) for r in rows),
            new_subscribers=sum(r.new_subscribers for r in rows),
            renewed_subscriptions=sum(r.renewed_subscriptions for r in rows),
            expired_subscriptions=sum(r.expired_subscriptions for r in rows),
            active_subscriptions=active or 0,
            daily=[
                DailyCommunityStats(
                    date=r.date,
                    new_subscribers=r.new_subscribers,
                    renewed_subscriptions=r.renewed_subscriptions,
                    expired_subscriptions=r.expired_subscriptions,
                    total_active_subscriptions=r.total_active_subscriptions,
                    revenue=float(r.revenue or 0),
                )
                for r in rows
            ],
        )

    async def get_top_communities(self, artist_id: int, limit: int = 5) -> List[TopCommunity]:
        """近 30 天按收入排序的社区"""
        start, _ = self._window(30)
        revenue_sum = func.coalesce(func.sum(SubscriptionAnalytics.revenue), 0)
        result = await self.db.execute(
            select(
                SubscriptionAnalytics.community_id,
                Community.name,
                revenue_sum.label("revenue"),
                func.coalesce(func.sum(SubscriptionAnalytics.new_subscribers), 0),
                func.coalesce(func.max(SubscriptionAnalytics.total_active_subscriptions), 0),
            )
            .join(Community, Community.id == SubscriptionAnalytics.community_id)
            .where(and_(SubscriptionAnalytics.artist_id == artist_id, SubscriptionAnalytics.date >= start))
            .group_by(SubscriptionAnalytics.community_id, Community.name)
            .order_by(revenue_sum.desc(), SubscriptionAnalytics.community_id.asc())
            .limit(limit)
        )
        return [
            TopCommunity(
                community_id=community_id,
                name=name,
                revenue=float(revenue or 0),
                new_subscribers=int(new_subscribers or 0),
                active_subscriptions=int(active or 0),
            )
            for community_id, name, revenue, new_subscribers, active in result.all()
        ]

    async def get_subscription_trends(self, artist_id: int, period: int = 30) -> List[TrendPoint]:
        """按天的新增 / 续费 / 到期 / 取消 / 净增长"""
        start, today = self._window(period)
        buckets: "OrderedDict[date, TrendPoint]" = OrderedDict()
        for row in await self._artist_rows(artist_id, start, today):
            point = buckets.get(row.date)
            if point is None:
                point = buckets[row.date] = TrendPoint(
                    date=row.date,
                    new_subscribers=0,
                    renewals=0,
                    expirations=0,
                    cancellations=0,
                    net_growth=0,
                    revenue=0.0,
                )
            point.new_subscribers += row.new_subscribers
            point.renewals += row.renewed_subscriptions
            point.expirations += row.expired_subscriptions
            point.cancellations += row.cancelled_subscriptions
            point.net_growth += (row.new_subscribers + row.renewed_subscriptions) - (
                row.expired_subscriptions + row.cancelled_subscriptions
            )
            point.revenue += float(row.revenue or 0)
        return list(buckets.values())
