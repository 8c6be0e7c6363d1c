"""
API v1 路由
"""
from fastapi import APIRouter
from community_pass.api.v1 import memberships, collections, analytics, cron

api_router = APIRouter()

# 注册子路由（统一挂在 /nft-subscriptions 下）
api_router.include_router(memberships.router, prefix="/nft-subscriptions", tags=["会员"])
api_router.include_router(collections.router, prefix="/nft-subscriptions/collections", tags=["合集"])
api_router.include_router(analytics.router, prefix="/nft-subscriptions/analytics", tags=["订阅分析"])
api_router.include_router(cron.router, prefix="/nft-subscriptions/cron", tags=["定时任务"])
