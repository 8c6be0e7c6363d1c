"""
NFT 合集相关API
"""
import asyncio
from typing import List

from fastapi import APIRouter, Depends, status

from community_pass.api.deps import get_collection_service
from community_pass.schemas.collection import CollectionCreate, CollectionResponse
from community_pass.services import cache_service
from community_pass.services.collection_service import CollectionService

router = APIRouter()


@router.post("", response_model=CollectionResponse, status_code=status.HTTP_201_CREATED)
async def create_community_collection(
    body: CollectionCreate,
    service: CollectionService = Depends(get_collection_service),
):
    """为社区创建 NFT 合集（链上部署成功后落库）"""
    collection = await service.create_community_collection(body)
    await asyncio.to_thread(
        cache_service.invalidate_analytics_cache, collection.artist_id, collection.community_id
    )
    return collection


@router.get("/artist/{artist_id}", response_model=List[CollectionResponse])
async def get_artist_collections(
    artist_id: int,
    service: CollectionService = Depends(get_collection_service),
):
    """艺人的全部合集（含已停用）"""
    return await service.get_artist_collections(artist_id)


@router.get("/{community_id}", response_model=CollectionResponse)
async def get_active_collection(
    community_id: int,
    service: CollectionService = Depends(get_collection_service),
):
    """社区当前活跃合集"""
    return await service.get_active_collection(community_id)
