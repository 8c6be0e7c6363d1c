"""
订阅分析日汇总：按 (艺人, 社区, 日期) 一行，由分析服务重算写入
"""
from sqlalchemy import Column, Integer, String, Numeric, Date, ForeignKey, UniqueConstraint
from community_pass.core.database import Base, UTCDateTime, utc_now


class SubscriptionAnalytics(Base):
    """订阅日汇总表"""
    __tablename__ = "subscription_analytics"
    __table_args__ = (
        UniqueConstraint("artist_id", "community_id", "date", name="uq_subscription_analytics_artist_community_date"),
    )

    id = Column(Integer, primary_key=True, index=True)
    artist_id = Column(Integer, ForeignKey("artists.id"), nullable=False, index=True)
    community_id = Column(Integer, ForeignKey("communities.id"), nullable=False, index=True)
    collection_id = Column(Integer, ForeignKey("nft_collections.id"), nullable=False)
    date = Column(Date, nullable=False, index=True)
    new_subscribers = Column(Integer, nullable=False, default=0)
    renewed_subscriptions = Column(Integer, nullable=False, default=0)
    expired_subscriptions = Column(Integer, nullable=False, default=0)
    cancelled_subscriptions = Column(Integer, nullable=False, default=0)
    total_active_subscriptions = Column(Integer, nullable=False, default=0)
    revenue = Column(Numeric(18, 6), nullable=False, default=0)
    currency = Column(String(16), nullable=False, default="USDC")
    created_at = Column(UTCDateTime, default=utc_now)
    updated_at = Column(UTCDateTime, default=utc_now, onupdate=utc_now)
