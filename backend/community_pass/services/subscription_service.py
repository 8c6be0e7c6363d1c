"""
社区订阅服务：mint / 续费 / 访问校验 / 会员与交易查询

一致性约定：
- 链上确认之后才写库，链上失败或超时不落任何状态（fail-closed）
- 续费从 max(now, 当前到期时间) 往后延长，永不缩短已付费时长
- 访问校验只读本地快照，不访问链上，也不在读路径上改状态（到期由定时任务负责）
"""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, List, Optional, Tuple, Type

from sqlalchemy import select, update, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from community_pass.core.config import settings
from community_pass.core.database import utc_now
from community_pass.core.exceptions import (
    AlreadyMember,
    CollectionSoldOut,
    CommunityNotFound,
    LedgerFailure,
    LedgerMintFailed,
    LedgerRenewalFailed,
    MembershipConflict,
    MembershipNotFound,
    NoActiveCollection,
    UserNotFound,
    WalletNotFound,
)
from community_pass.models.community import Community, NFTCollection
from community_pass.models.membership import NFTMembership, MembershipStatusFilter
from community_pass.models.transaction import TransactionRecord, TransactionType, TransactionStatus
from community_pass.models.user import User
from community_pass.schemas.membership import AccessInfo, TransactionFilters
from community_pass.services.ledger_client import LedgerClient, LedgerError, new_idempotency_key

logger = logging.getLogger(__name__)


def membership_status_criteria(status: MembershipStatusFilter, now: datetime) -> list:
    """状态筛选 -> 查询条件"""
    if status == MembershipStatusFilter.ACTIVE:
        return [NFTMembership.is_active.is_(True), NFTMembership.expires_at > now]
    if status == MembershipStatusFilter.EXPIRED:
        return [or_(NFTMembership.is_active.is_(False), NFTMembership.expires_at <= now)]
    return []


def billing_period(collection: Optional[NFTCollection]) -> timedelta:
    days = getattr(collection, "billing_period_days", None) or settings.MEMBERSHIP_BILLING_PERIOD_DAYS
    return timedelta(days=days)


class SubscriptionService:
    """订阅服务类"""

    def __init__(
        self,
        db: AsyncSession,
        ledger: LedgerClient,
        now_fn: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.ledger = ledger
        self.now_fn = now_fn

    def _now(self) -> datetime:
        return self.now_fn()

    # ---------- 目录查询 ---------- #
    async def get_user_by_email(self, email: str) -> User:
        result = await self.db.execute(select(User).where(User.email == email))
        user = result.scalar_one_or_none()
        if not user:
            raise UserNotFound(f"用户不存在: {email}")
        return user

    async def get_community(self, community_id: int) -> Community:
        community = await self.db.get(Community, community_id)
        if not community:
            raise CommunityNotFound(f"社区不存在: {community_id}")
        return community

    async def get_active_collection(self, community_id: int) -> NFTCollection:
        result = await self.db.execute(
            select(NFTCollection).where(
                NFTCollection.community_id == community_id,
                NFTCollection.is_active.is_(True),
            )
        )
        collection = result.scalars().first()
        if not collection:
            raise NoActiveCollection(f"社区 {community_id} 没有可用的 NFT 合集")
        return collection

    async def _get_membership_for_pair(self, user_id: int, community_id: int) -> Optional[NFTMembership]:
        result = await self.db.execute(
            select(NFTMembership).where(
                NFTMembership.user_id == user_id,
                NFTMembership.community_id == community_id,
            ).execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _get_owned_membership(self, membership_id: int, user_id: int) -> NFTMembership:
        result = await self.db.execute(
            select(NFTMembership).where(
                NFTMembership.id == membership_id,
                NFTMembership.user_id == user_id,
            ).execution_options(populate_existing=True)
        )
        membership = result.scalar_one_or_none()
        if not membership:
            raise MembershipNotFound(f"会员记录不存在: {membership_id}")
        return membership

    async def _reload_membership_for_update(self, membership_id: int) -> NFTMembership:
        """重读最新行（覆盖 identity map 中的旧值），支持的数据库上加行锁"""
        result = await self.db.execute(
            select(NFTMembership)
            .where(NFTMembership.id == membership_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        membership = result.scalar_one_or_none()
        if not membership:
            raise MembershipNotFound(f"会员记录不存在: {membership_id}")
        return membership

    # ---------- 链上调用 ---------- #
    async def _call_ledger(
        self,
        action: str,
        call: Callable[[], Awaitable[Any]],
        error_cls: Type[LedgerFailure],
    ) -> Any:
        """链上调用统一加超时；失败或超时转为对应的领域异常"""
        timeout = settings.LEDGER_TIMEOUT_SECONDS
        try:
            return await asyncio.wait_for(call(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.error("链上 %s 超时（%ss），不写入任何状态", action, timeout)
            raise error_cls(f"链上 {action} 失败", reason=f"ledger timeout after {timeout}s")
        except LedgerError as e:
            logger.error("链上 %s 失败: %s", action, e.reason)
            raise error_cls(f"链上 {action} 失败", reason=e.reason)

    # ---------- mint ---------- #
    async def mint_community_access(
        self, user_email: str, community_id: int
    ) -> Tuple[NFTMembership, TransactionRecord]:
        """mint 社区会员 NFT，链上成功后才创建 / 重新激活会员记录"""
        now = self._now()
        user = await self.get_user_by_email(user_email)
        community = await self.get_community(community_id)
        collection = await self.get_active_collection(community.id)
        if collection.is_sold_out:
            raise CollectionSoldOut(f"合集 {collection.id} 已售罄")
        if not user.wallet_address:
            raise WalletNotFound(f"用户 {user.id} 未绑定钱包")

        existing = await self._get_membership_for_pair(user.id, community.id)
        if existing and existing.has_access(now):
            raise AlreadyMember(f"用户已是社区 {community.id} 的有效会员")

        # rollback 会让已加载对象全部过期，冲突分支只能使用这里的快照值
        user_id, community_id = user.id, community.id
        logger.info("mint 开始 user_id=%s community_id=%s collection_id=%s", user.id, community.id, collection.id)
        receipt = await self._call_ledger(
            "mint",
            lambda: self.ledger.mint(
                user.wallet_address,
                collection.contract_address or "",
                idempotency_key=new_idempotency_key(),
            ),
            LedgerMintFailed,
        )

        now = self._now()
        expires_at = now + billing_period(collection)
        if existing:
            # 过期后重新 mint：复用同一行（user, community 唯一）
            membership = existing
            membership.collection_id = collection.id
            membership.minted_at = now
        else:
            membership = NFTMembership(
                user_id=user.id,
                community_id=community.id,
                collection_id=collection.id,
                minted_at=now,
            )
            self.db.add(membership)
        membership.token_id = receipt.token_id
        membership.contract_address = collection.contract_address
        membership.transaction_hash = receipt.transaction_hash
        membership.expires_at = expires_at
        membership.is_active = True
        membership.auto_renew = True
        membership.reminder_sent = False
        membership.updated_at = now

        try:
            await self.db.flush()
            transaction = TransactionRecord(
                user_id=user.id,
                artist_id=community.artist_id,
                community_id=community.id,
                membership_id=membership.id,
                type=TransactionType.MINT.value,
                status=TransactionStatus.SUCCESS.value,
                transaction_hash=receipt.transaction_hash,
                contract_address=collection.contract_address,
                token_id=receipt.token_id,
                amount=collection.price_per_month,
                currency=collection.currency,
                block_number=receipt.block_number,
                extra={
                    "collection_id": collection.id,
                    "expires_at": expires_at.isoformat(),
                    "reactivated": existing is not None,
                },
                created_at=now,
            )
            self.db.add(transaction)
            await self.db.execute(
                update(NFTCollection)
                .where(NFTCollection.id == collection.id)
                .values(total_supply=NFTCollection.total_supply + 1, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            logger.warning(
                "并发 mint 冲突，链上 token 需人工对账 user_id=%s community_id=%s tx=%s",
                user_id, community_id, receipt.transaction_hash,
            )
            raise AlreadyMember(f"用户已是社区 {community_id} 的有效会员")
        except StaleDataError:
            await self.db.rollback()
            logger.warning("mint 写入时会员记录被并发修改 user_id=%s tx=%s", user_id, receipt.transaction_hash)
            raise MembershipConflict("会员记录被并发修改，请稍后重试")

        logger.info("mint 完成 membership_id=%s expires_at=%s", membership.id, expires_at.isoformat())
        return membership, transaction

    # ---------- 续费 ---------- #
    async def renew_membership(
        self, user_email: str, membership_id: int
    ) -> Tuple[NFTMembership, TransactionRecord]:
        """续费：链上确认后从 max(now, 到期时间) 延长一个计费周期；已过期的会员重新激活"""
        user = await self.get_user_by_email(user_email)
        membership = await self._get_owned_membership(membership_id, user.id)
        collection = await self.db.get(NFTCollection, membership.collection_id)
        community = await self.db.get(Community, membership.community_id)
        # 冲突重试前会 rollback，已加载对象随之过期；循环内只用这里的快照值
        user_id = user.id
        artist_id = community.artist_id if community else None
        amount = collection.price_per_month if collection else None
        currency = collection.currency if collection else None
        period = billing_period(collection)
        token_id = membership.token_id
        contract_address = membership.contract_address or ""

        receipt = await self._call_ledger(
            "renew",
            lambda: self.ledger.renew(token_id, contract_address, idempotency_key=new_idempotency_key()),
            LedgerRenewalFailed,
        )

        attempts = max(1, settings.RENEWAL_MAX_ATTEMPTS)
        for attempt in range(1, attempts + 1):
            now = self._now()
            current = await self._reload_membership_for_update(membership_id)
            previous_expires_at = current.expires_at
            new_expires_at = max(now, previous_expires_at) + period
            was_active = current.has_access(now)
            current.expires_at = new_expires_at
            current.is_active = True
            current.reminder_sent = False
            current.updated_at = now
            transaction = TransactionRecord(
                user_id=user_id,
                artist_id=artist_id,
                community_id=current.community_id,
                membership_id=current.id,
                type=TransactionType.RENEWAL.value,
                status=TransactionStatus.SUCCESS.value,
                transaction_hash=receipt.transaction_hash,
                contract_address=current.contract_address,
                token_id=token_id,
                amount=amount,
                currency=currency,
                block_number=receipt.block_number,
                extra={
                    "previous_expires_at": previous_expires_at.isoformat(),
                    "new_expires_at": new_expires_at.isoformat(),
                    "reactivated": not was_active,
                },
                created_at=now,
            )
            self.db.add(transaction)
            try:
                await self.db.commit()
            except StaleDataError:
                await self.db.rollback()
                logger.warning(
                    "续费写入冲突，重读后重试 membership_id=%s attempt=%s/%s",
                    membership_id, attempt, attempts,
                )
                continue
            logger.info(
                "续费完成 membership_id=%s %s -> %s",
                membership_id, previous_expires_at.isoformat(), new_expires_at.isoformat(),
            )
            return current, transaction

        logger.error("续费多次冲突，链上交易需对账 membership_id=%s tx=%s", membership_id, receipt.transaction_hash)
        raise MembershipConflict(f"会员 {membership_id} 被并发修改，续费未写入")

    # ---------- 只读查询 ---------- #
    async def check_community_access(self, user_id: int, community_id: int) -> AccessInfo:
        """访问校验：is_active 且未到期。只读，不触发过期处理"""
        now = self._now()
        membership = await self._get_membership_for_pair(user_id, community_id)
        if not membership or not membership.has_access(now):
            return AccessInfo(
                user_id=user_id,
                community_id=community_id,
                has_access=False,
                membership_id=membership.id if membership else None,
                expires_at=membership.expires_at if membership else None,
                days_remaining=0 if membership else None,
            )
        return AccessInfo(
            user_id=user_id,
            community_id=community_id,
            has_access=True,
            membership_id=membership.id,
            expires_at=membership.expires_at,
            days_remaining=membership.days_remaining(now),
        )

    async def get_user_memberships(
        self,
        user_id: int,
        status: MembershipStatusFilter = MembershipStatusFilter.ACTIVE,
    ) -> List[NFTMembership]:
        """用户会员列表（按状态筛选，新的在前）"""
        stmt = select(NFTMembership).where(
            NFTMembership.user_id == user_id,
            *membership_status_criteria(status, self._now()),
        )
        stmt = stmt.order_by(NFTMembership.created_at.desc(), NFTMembership.id.desc())
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def _transaction_history(self, criteria: list, filters: Optional[TransactionFilters]) -> List[TransactionRecord]:
        filters = filters or TransactionFilters()
        stmt = select(TransactionRecord).where(*criteria)
        if filters.type:
            stmt = stmt.where(TransactionRecord.type == filters.type.value)
        if filters.status:
            stmt = stmt.where(TransactionRecord.status == filters.status.value)
        stmt = (
            stmt.order_by(TransactionRecord.created_at.desc(), TransactionRecord.id.desc())
            .offset(filters.offset)
            .limit(filters.limit)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def get_user_transaction_history(
        self, user_id: int, filters: Optional[TransactionFilters] = None
    ) -> List[TransactionRecord]:
        """用户交易流水（新的在前，分页）"""
        return await self._transaction_history([TransactionRecord.user_id == user_id], filters)

    async def get_artist_transaction_history(
        self, artist_id: int, filters: Optional[TransactionFilters] = None
    ) -> List[TransactionRecord]:
        """艺人收款流水"""
        return await self._transaction_history([TransactionRecord.artist_id == artist_id], filters)

    async def update_auto_renew(
        self, membership_id: int, auto_renew: bool, user_email: Optional[str] = None
    ) -> NFTMembership:
        """开关自动续费"""
        if user_email:
            user = await self.get_user_by_email(user_email)
            membership = await self._get_owned_membership(membership_id, user.id)
        else:
            membership = await self.db.get(NFTMembership, membership_id, populate_existing=True)
            if not membership:
                raise MembershipNotFound(f"会员记录不存在: {membership_id}")
        membership.auto_renew = auto_renew
        membership.updated_at = self._now()
        try:
            await self.db.commit()
        except StaleDataError:
            await self.db.rollback()
            raise MembershipConflict(f"会员 {membership_id} 被并发修改，请重试")
        return membership
