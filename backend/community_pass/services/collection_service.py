"""
社区 NFT 合集管理：创建（链上部署合约后落库）、查询
"""
import asyncio
import logging
from datetime import datetime
from typing import Callable, List

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from community_pass.core.config import settings
from community_pass.core.database import utc_now
from community_pass.core.exceptions import (
    ArtistNotFound,
    CollectionNotFound,
    CommunityNotFound,
    DuplicateActiveCollection,
    LedgerCollectionFailed,
    UserNotFound,
)
from community_pass.models.community import Community, NFTCollection
from community_pass.models.transaction import TransactionRecord, TransactionType, TransactionStatus
from community_pass.models.user import User, Artist
from community_pass.schemas.collection import CollectionCreate
from community_pass.services.ledger_client import LedgerClient, LedgerError, new_idempotency_key

logger = logging.getLogger(__name__)


class CollectionService:
    """合集服务类"""

    def __init__(
        self,
        db: AsyncSession,
        ledger: LedgerClient,
        now_fn: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.ledger = ledger
        self.now_fn = now_fn

    async def _get_artist_by_email(self, email: str) -> Artist:
        result = await self.db.execute(select(User).where(User.email == email))
        user = result.scalar_one_or_none()
        if not user:
            raise UserNotFound(f"用户不存在: {email}")
        result = await self.db.execute(select(Artist).where(Artist.user_id == user.id))
        artist = result.scalar_one_or_none()
        if not artist:
            raise ArtistNotFound(f"用户 {user.id} 不是艺人")
        return artist

    async def get_active_collection(self, community_id: int) -> NFTCollection:
        result = await self.db.execute(
            select(NFTCollection).where(
                NFTCollection.community_id == community_id,
                NFTCollection.is_active.is_(True),
            )
        )
        collection = result.scalars().first()
        if not collection:
            raise CollectionNotFound(f"社区 {community_id} 没有活跃合集")
        return collection

    async def get_artist_collections(self, artist_id: int) -> List[NFTCollection]:
        """艺人的全部合集（含已停用），新的在前"""
        result = await self.db.execute(
            select(NFTCollection)
            .where(NFTCollection.artist_id == artist_id)
            .order_by(NFTCollection.created_at.desc(), NFTCollection.id.desc())
        )
        return list(result.scalars().all())

    async def create_community_collection(self, data: CollectionCreate) -> NFTCollection:
        """
        为社区创建 NFT 合集：
        1. 校验艺人与社区归属
        2. 已有活跃合集时，除非 replace_existing，否则拒绝
        3. 链上创建合约，成功后落库并追加一条 create_collection 流水
        """
        artist = await self._get_artist_by_email(data.artist_email)
        community = await self.db.get(Community, data.community_id)
        if not community or community.artist_id != artist.id:
            raise CommunityNotFound(f"艺人 {artist.id} 名下没有社区 {data.community_id}")

        result = await self.db.execute(
            select(NFTCollection).where(
                NFTCollection.community_id == community.id,
                NFTCollection.is_active.is_(True),
            )
        )
        current = result.scalars().first()
        if current and not data.replace_existing:
            raise DuplicateActiveCollection(f"社区 {community.id} 已有活跃合集 {current.id}")

        # rollback 后已加载对象会过期，冲突分支只用快照值
        community_id = community.id
        owner_wallet = artist.wallet_address or ""
        timeout = settings.LEDGER_TIMEOUT_SECONDS
        try:
            receipt = await asyncio.wait_for(
                self.ledger.create_collection(
                    owner_wallet, data.name, data.symbol, idempotency_key=new_idempotency_key()
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            logger.error("链上创建合集超时 community_id=%s", community_id)
            raise LedgerCollectionFailed("链上创建合集失败", reason=f"ledger timeout after {timeout}s")
        except LedgerError as e:
            logger.error("链上创建合集失败 community_id=%s: %s", community_id, e.reason)
            raise LedgerCollectionFailed("链上创建合集失败", reason=e.reason)

        now = self.now_fn()
        if current:
            current.is_active = False
            current.updated_at = now
            # 先让停用写入，再插入新的活跃合集，避免部分唯一索引冲突
            await self.db.flush()

        collection = NFTCollection(
            community_id=community.id,
            artist_id=artist.id,
            name=data.name,
            symbol=data.symbol,
            description=data.description,
            contract_address=receipt.contract_address,
            total_supply=0,
            max_supply=data.max_supply,
            price_per_month=data.price_per_month,
            currency=data.currency or settings.MEMBERSHIP_DEFAULT_CURRENCY,
            billing_period_days=data.billing_period_days or settings.MEMBERSHIP_BILLING_PERIOD_DAYS,
            image_url=data.image_url,
            is_active=True,
            created_at=now,
        )
        self.db.add(collection)
        try:
            await self.db.flush()
            self.db.add(
                TransactionRecord(
                    user_id=artist.user_id,
                    artist_id=artist.id,
                    community_id=community.id,
                    type=TransactionType.CREATE_COLLECTION.value,
                    status=TransactionStatus.SUCCESS.value,
                    transaction_hash=receipt.transaction_hash,
                    contract_address=receipt.contract_address,
                    block_number=receipt.block_number,
                    extra={
                        "collection_id": collection.id,
                        "replaced_collection_id": current.id if current else None,
                    },
                    created_at=now,
                )
            )
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            logger.warning(
                "并发创建合集冲突，链上合约需人工对账 community_id=%s contract=%s",
                community_id, receipt.contract_address,
            )
            raise DuplicateActiveCollection(f"社区 {community_id} 已有活跃合集")

        logger.info(
            "合集创建完成 collection_id=%s community_id=%s contract=%s",
            collection.id, community.id, receipt.contract_address,
        )
        return collection
