"""
会员 / 交易相关Schema
"""
from pydantic import BaseModel, EmailStr, Field
from datetime import datetime
from typing import Optional, List, Dict, Any

from community_pass.models.membership import MembershipStatus
from community_pass.models.transaction import TransactionType, TransactionStatus


class MintRequest(BaseModel):
    """mint 会员请求"""
    user_email: EmailStr
    community_id: int


class RenewRequest(BaseModel):
    """续费请求"""
    user_email: EmailStr
    membership_id: int


class AutoRenewUpdate(BaseModel):
    """自动续费开关"""
    auto_renew: bool
    user_email: Optional[EmailStr] = None  # 传入时校验会员归属


class MembershipResponse(BaseModel):
    """会员响应"""
    id: int
    user_id: int
    community_id: int
    collection_id: int
    token_id: str
    contract_address: Optional[str] = None
    transaction_hash: str
    minted_at: Optional[datetime] = None
    expires_at: datetime
    is_active: bool
    auto_renew: bool
    reminder_sent: bool
    status: MembershipStatus
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class TransactionResponse(BaseModel):
    """交易流水响应"""
    id: int
    user_id: int
    artist_id: Optional[int] = None
    community_id: Optional[int] = None
    membership_id: Optional[int] = None
    type: str
    status: str
    transaction_hash: str
    contract_address: Optional[str] = None
    token_id: Optional[str] = None
    amount: Optional[float] = None
    currency: Optional[str] = None
    block_number: Optional[int] = None
    error_message: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = Field(None, validation_alias="extra")
    created_at: datetime

    class Config:
        from_attributes = True


class MembershipTransactionResponse(BaseModel):
    """mint / 续费结果：会员 + 本次交易"""
    membership: MembershipResponse
    transaction: TransactionResponse


class AccessInfo(BaseModel):
    """社区访问校验结果（只读本地快照，不访问链上）"""
    user_id: int
    community_id: int
    has_access: bool
    membership_id: Optional[int] = None
    expires_at: Optional[datetime] = None
    days_remaining: Optional[int] = None


class TransactionFilters(BaseModel):
    """交易流水筛选与分页"""
    type: Optional[TransactionType] = None
    status: Optional[TransactionStatus] = None
    limit: int = Field(50, ge=1, le=100)
    offset: int = Field(0, ge=0)


class MembershipListResponse(BaseModel):
    items: List[MembershipResponse]
    total: int
