"""
会员相关API：mint、续费、访问校验、会员与交易查询
"""
import asyncio
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status

from community_pass.api.deps import get_subscription_service
from community_pass.models.membership import MembershipStatusFilter
from community_pass.models.transaction import TransactionType, TransactionStatus
from community_pass.schemas.membership import (
    AccessInfo,
    AutoRenewUpdate,
    MembershipResponse,
    MembershipTransactionResponse,
    MintRequest,
    RenewRequest,
    TransactionFilters,
    TransactionResponse,
)
from community_pass.services import cache_service
from community_pass.services.subscription_service import SubscriptionService

router = APIRouter()


def _transaction_filters(
    type: Optional[TransactionType] = Query(None, description="交易类型"),
    status: Optional[TransactionStatus] = Query(None, description="交易状态"),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
) -> TransactionFilters:
    return TransactionFilters(type=type, status=status, limit=limit, offset=offset)


@router.post("/mint", response_model=MembershipTransactionResponse, status_code=status.HTTP_201_CREATED)
async def mint_community_access(
    body: MintRequest,
    service: SubscriptionService = Depends(get_subscription_service),
):
    """mint 社区会员 NFT（链上成功后才创建会员）"""
    membership, transaction = await service.mint_community_access(body.user_email, body.community_id)
    await asyncio.to_thread(
        cache_service.invalidate_analytics_cache, transaction.artist_id, transaction.community_id
    )
    return MembershipTransactionResponse(
        membership=MembershipResponse.model_validate(membership),
        transaction=TransactionResponse.model_validate(transaction),
    )


@router.post("/renew", response_model=MembershipTransactionResponse)
async def renew_membership(
    body: RenewRequest,
    service: SubscriptionService = Depends(get_subscription_service),
):
    """续费：从 max(当前时间, 到期时间) 延长一个计费周期"""
    membership, transaction = await service.renew_membership(body.user_email, body.membership_id)
    await asyncio.to_thread(
        cache_service.invalidate_analytics_cache, transaction.artist_id, transaction.community_id
    )
    return MembershipTransactionResponse(
        membership=MembershipResponse.model_validate(membership),
        transaction=TransactionResponse.model_validate(transaction),
    )


@router.get("/access/{user_id}/{community_id}", response_model=AccessInfo)
async def check_community_access(
    user_id: int,
    community_id: int,
    service: SubscriptionService = Depends(get_subscription_service),
):
    """社区访问校验（只读本地记录）"""
    return await service.check_community_access(user_id, community_id)


@router.get("/memberships/{user_id}", response_model=List[MembershipResponse])
async def get_user_memberships(
    user_id: int,
    status: MembershipStatusFilter = Query(MembershipStatusFilter.ACTIVE, description="active / expired / all"),
    service: SubscriptionService = Depends(get_subscription_service),
):
    """用户会员列表"""
    return await service.get_user_memberships(user_id, status)


@router.patch("/memberships/{membership_id}/auto-renew", response_model=MembershipResponse)
async def update_auto_renew(
    membership_id: int,
    body: AutoRenewUpdate,
    service: SubscriptionService = Depends(get_subscription_service),
):
    """开关自动续费"""
    return await service.update_auto_renew(membership_id, body.auto_renew, body.user_email)


@router.get("/transactions/artist/{artist_id}", response_model=List[TransactionResponse])
async def get_artist_transaction_history(
    artist_id: int,
    filters: TransactionFilters = Depends(_transaction_filters),
    service: SubscriptionService = Depends(get_subscription_service),
):
    """艺人收款流水"""
    return await service.get_artist_transaction_history(artist_id, filters)


@router.get("/transactions/{user_id}", response_model=List[TransactionResponse])
async def get_user_transaction_history(
    user_id: int,
    filters: TransactionFilters = Depends(_transaction_filters),
    service: SubscriptionService = Depends(get_subscription_service),
):
    """用户交易流水"""
    return await service.get_user_transaction_history(user_id, filters)
