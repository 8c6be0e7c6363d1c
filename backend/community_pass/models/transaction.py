"""
链上交易流水：mint / 续费 / 创建合集，只追加
"""
import enum

from sqlalchemy import Column, Integer, String, Text, Numeric, ForeignKey, JSON, Index
from community_pass.core.database import Base, UTCDateTime, utc_now, append_only


class TransactionType(str, enum.Enum):
    MINT = "mint"
    RENEWAL = "renewal"
    CREATE_COLLECTION = "create_collection"


class TransactionStatus(str, enum.Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


@append_only
class TransactionRecord(Base):
    """交易流水表"""
    __tablename__ = "transaction_history"
    __table_args__ = (
        Index("ix_transaction_history_user_created", "user_id", "created_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    artist_id = Column(Integer, ForeignKey("artists.id"), nullable=True, index=True)
    community_id = Column(Integer, ForeignKey("communities.id"), nullable=True, index=True)
    membership_id = Column(Integer, ForeignKey("nft_memberships.id"), nullable=True, index=True)
    type = Column(String(32), nullable=False, index=True)  # mint, renewal, create_collection
    status = Column(String(16), nullable=False, index=True)  # pending, success, failed
    transaction_hash = Column(String(128), nullable=False, index=True)
    contract_address = Column(String(128), nullable=True)
    token_id = Column(String(128), nullable=True)
    amount = Column(Numeric(18, 6), nullable=True)
    currency = Column(String(16), nullable=True)
    block_number = Column(Integer, nullable=True)
    error_message = Column(Text, nullable=True)
    # 列名为 metadata，属性名避开 Base.metadata
    extra = Column("metadata", JSON, nullable=True)
    created_at = Column(UTCDateTime, default=utc_now, index=True)
