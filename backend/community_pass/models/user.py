"""
用户 / 艺人模型（目录数据，订阅核心只读）
"""
from sqlalchemy import Column, Integer, String, Boolean, ForeignKey
from sqlalchemy.orm import relationship
from community_pass.core.database import Base, UTCDateTime, utc_now


class User(Base):
    """用户表"""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(100), unique=True, nullable=False, index=True)
    name = Column(String(100), nullable=True)
    wallet_address = Column(String(128), nullable=True)  # 链上钱包地址，mint 时作为接收方
    is_active = Column(Boolean, default=True)
    created_at = Column(UTCDateTime, default=utc_now)

    # 关系
    artist = relationship("Artist", back_populates="user", uselist=False)
    memberships = relationship("NFTMembership", back_populates="user")


class Artist(Base):
    """艺人表"""
    __tablename__ = "artists"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, unique=True)
    name = Column(String(100), nullable=False)
    wallet_address = Column(String(128), nullable=True)
    created_at = Column(UTCDateTime, default=utc_now)

    # 关系
    user = relationship("User", back_populates="artist")
    communities = relationship("Community", back_populates="artist")
