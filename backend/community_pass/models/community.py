"""
社区与 NFT 合集模型
"""
from sqlalchemy import Column, Integer, String, Text, Numeric, Boolean, ForeignKey, Index, text
from sqlalchemy.orm import relationship
from community_pass.core.database import Base, UTCDateTime, utc_now


class Community(Base):
    """社区表：每个社区属于一个艺人"""
    __tablename__ = "communities"

    id = Column(Integer, primary_key=True, index=True)
    artist_id = Column(Integer, ForeignKey("artists.id"), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    image_url = Column(String(255), nullable=True)
    created_at = Column(UTCDateTime, default=utc_now)

    # 关系
    artist = relationship("Artist", back_populates="communities")
    collections = relationship("NFTCollection", back_populates="community")


class NFTCollection(Base):
    """NFT 合集表：社区付费档位，同一社区同时最多一个 is_active 合集，被替换时停用而非删除"""
    __tablename__ = "nft_collections"
    __table_args__ = (
        Index(
            "uq_nft_collections_active_community",
            "community_id",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    community_id = Column(Integer, ForeignKey("communities.id"), nullable=False, index=True)
    artist_id = Column(Integer, ForeignKey("artists.id"), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    symbol = Column(String(16), nullable=False)
    description = Column(Text, nullable=True)
    contract_address = Column(String(128), unique=True, nullable=True)
    total_supply = Column(Integer, default=0)
    max_supply = Column(Integer, nullable=True)  # 为空表示不限量
    price_per_month = Column(Numeric(18, 6), nullable=False)
    currency = Column(String(16), nullable=False, default="USDC")
    billing_period_days = Column(Integer, nullable=False, default=30)
    image_url = Column(String(255), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(UTCDateTime, default=utc_now)
    updated_at = Column(UTCDateTime, default=utc_now, onupdate=utc_now)

    # 关系
    community = relationship("Community", back_populates="collections")

    @property
    def is_sold_out(self) -> bool:
        return self.max_supply is not None and (self.total_supply or 0) >= self.max_supply
