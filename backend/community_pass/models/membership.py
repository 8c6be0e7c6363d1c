"""
NFT 会员模型：用户在某社区的限时付费访问权
"""
import enum
from datetime import datetime
from typing import Optional

from sqlalchemy import Column, Integer, String, Boolean, ForeignKey, UniqueConstraint, Index
from sqlalchemy.orm import relationship
from community_pass.core.database import Base, UTCDateTime, utc_now


class MembershipStatus(str, enum.Enum):
    """会员状态。pending 只存在于 mint 调用链上期间，不落库"""
    PENDING = "pending"
    ACTIVE = "active"
    EXPIRED = "expired"


class MembershipStatusFilter(str, enum.Enum):
    """查询会员列表的状态筛选"""
    ACTIVE = "active"
    EXPIRED = "expired"
    ALL = "all"


class NFTMembership(Base):
    """会员表：同一用户在同一社区只有一条记录，到期是状态变更而非删除"""
    __tablename__ = "nft_memberships"
    __table_args__ = (
        UniqueConstraint("user_id", "community_id", name="uq_nft_memberships_user_community"),
        Index("ix_nft_memberships_active_expires", "is_active", "expires_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    community_id = Column(Integer, ForeignKey("communities.id"), nullable=False, index=True)
    collection_id = Column(Integer, ForeignKey("nft_collections.id"), nullable=False, index=True)
    token_id = Column(String(128), nullable=False)
    contract_address = Column(String(128), nullable=True)
    transaction_hash = Column(String(128), nullable=False)
    minted_at = Column(UTCDateTime, default=utc_now)
    expires_at = Column(UTCDateTime, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    auto_renew = Column(Boolean, nullable=False, default=True)
    reminder_sent = Column(Boolean, nullable=False, default=False)
    # 乐观锁版本号：过期扫描与续费并发时，后提交的一方检测到冲突后重读再写
    version = Column(Integer, nullable=False)
    created_at = Column(UTCDateTime, default=utc_now)
    updated_at = Column(UTCDateTime, default=utc_now, onupdate=utc_now)

    __mapper_args__ = {"version_id_col": version}

    # 关系
    user = relationship("User", back_populates="memberships")
    community = relationship("Community")
    collection = relationship("NFTCollection")

    def has_access(self, now: datetime) -> bool:
        return bool(self.is_active) and self.expires_at > now

    def status_at(self, now: datetime) -> MembershipStatus:
        return MembershipStatus.ACTIVE if self.has_access(now) else MembershipStatus.EXPIRED

    @property
    def status(self) -> MembershipStatus:
        return self.status_at(utc_now())

    def days_remaining(self, now: datetime) -> Optional[int]:
        if not self.has_access(now):
            return 0
        seconds = (self.expires_at - now).total_seconds()
        return int(-(-seconds // 86400))  # 向上取整
