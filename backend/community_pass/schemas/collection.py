"""
NFT 合集相关Schema
"""
from pydantic import BaseModel, EmailStr, Field
from datetime import datetime
from typing import Optional


class CollectionCreate(BaseModel):
    """创建社区合集"""
    artist_email: EmailStr
    community_id: int
    name: str = Field(..., min_length=1, max_length=100)
    symbol: str = Field(..., min_length=1, max_length=16)
    description: Optional[str] = None
    price_per_month: float = Field(..., gt=0)
    currency: str = "USDC"
    max_supply: Optional[int] = Field(None, gt=0)
    billing_period_days: Optional[int] = Field(None, ge=1, le=366)
    image_url: Optional[str] = None
    replace_existing: bool = False  # 为 True 时停用旧的活跃合集


class CollectionResponse(BaseModel):
    """合集响应"""
    id: int
    community_id: int
    artist_id: int
    name: str
    symbol: str
    description: Optional[str] = None
    contract_address: Optional[str] = None
    total_supply: int = 0
    max_supply: Optional[int] = None
    price_per_month: float
    currency: str
    billing_period_days: int
    image_url: Optional[str] = None
    is_active: bool
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True
