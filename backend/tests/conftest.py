"""
测试公共夹具：每个测试一个独立的 SQLite 文件库、假链上客户端、假通知、可控时钟
"""
import os

# 必须在导入 community_pass 之前设置
os.environ.setdefault("CACHE_ENABLED", "false")
os.environ.setdefault("CRON_ENABLED", "false")

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace
from typing import Any, Dict, List, Optional, Set

import pytest
from sqlalchemy.ext.asyncio import create_async_engine

from community_pass.core.database import Base, make_session_factory
from community_pass.models import Artist, Community, NFTCollection, NFTMembership, User
from community_pass.services.cron_job_service import CronJobService
from community_pass.services.ledger_client import (
    CollectionReceipt,
    LedgerError,
    MintReceipt,
    RenewReceipt,
    TokenStatus,
)
from community_pass.services.subscription_service import SubscriptionService

T0 = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeLedger:
    """内存版链上服务：可配置失败、延迟和回调"""

    def __init__(self):
        self.delay = 0.0
        self.fail_mint: Optional[str] = None
        self.fail_renew: Optional[str] = None
        self.fail_renew_tokens: Set[str] = set()
        self.fail_create_collection: Optional[str] = None
        self.on_mint = None  # async callable(wallet_address)
        self.on_renew = None  # async callable(token_id)
        self.on_create_collection = None  # async callable(name)
        self.minted: List[Dict[str, Any]] = []
        self.renewed: List[Dict[str, Any]] = []
        self.collections: List[Dict[str, Any]] = []
        self.idempotency_keys: List[str] = []
        self._seq = 0

    def _next(self) -> int:
        self._seq += 1
        return self._seq

    async def mint(self, wallet_address, contract_address, *, idempotency_key):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.on_mint is not None:
            await self.on_mint(wallet_address)
        if self.fail_mint:
            raise LedgerError(self.fail_mint)
        n = self._next()
        self.idempotency_keys.append(idempotency_key)
        self.minted.append({"wallet": wallet_address, "contract": contract_address})
        return MintReceipt(token_id=f"token-{n}", transaction_hash=f"0xmint{n}", block_number=1000 + n)

    async def renew(self, token_id, contract_address, *, idempotency_key):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.on_renew is not None:
            await self.on_renew(token_id)
        if self.fail_renew:
            raise LedgerError(self.fail_renew)
        if token_id in self.fail_renew_tokens:
            raise LedgerError(f"insufficient allowance for {token_id}")
        n = self._next()
        self.idempotency_keys.append(idempotency_key)
        self.renewed.append({"token_id": token_id, "contract": contract_address})
        return RenewReceipt(transaction_hash=f"0xrenew{n}", block_number=1000 + n)

    async def verify(self, token_id, contract_address):
        return TokenStatus(valid=True, owner=None)

    async def create_collection(self, owner_wallet, name, symbol, *, idempotency_key):
        if self.on_create_collection is not None:
            await self.on_create_collection(name)
        if self.fail_create_collection:
            raise LedgerError(self.fail_create_collection)
        n = self._next()
        self.collections.append({"owner": owner_wallet, "name": name, "symbol": symbol})
        return CollectionReceipt(contract_address=f"0xcontract{n}", transaction_hash=f"0xdeploy{n}", block_number=1000 + n)


class FakeNotifier:
    def __init__(self):
        self.sent: List[Dict[str, Any]] = []
        self.fail_ids: Set[int] = set()

    async def send_renewal_reminder(self, payload):
        if payload["membership_id"] in self.fail_ids:
            return False
        self.sent.append(payload)
        return True


@pytest.fixture
async def engine(tmp_path):
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def clock():
    return Clock(T0)


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def make_service(ledger, clock):
    def _make(session):
        return SubscriptionService(session, ledger, now_fn=clock)
    return _make


@pytest.fixture
def job_service(session_factory, ledger, notifier, clock):
    return CronJobService(session_factory, ledger, notifier, now_fn=clock)


@pytest.fixture
async def seed(session_factory):
    """一个艺人（含一个带活跃合集的社区、一个空社区）和几个用户"""
    async with session_factory() as s:
        artist_user = User(email="artist@example.com", name="Artist", wallet_address="0xartist")
        fan = User(email="fan@example.com", name="Fan", wallet_address="0xfan")
        other = User(email="other@example.com", name="Other", wallet_address="0xother")
        no_wallet = User(email="nowallet@example.com", name="No Wallet")
        s.add_all([artist_user, fan, other, no_wallet])
        await s.flush()

        artist = Artist(user_id=artist_user.id, name="Artist", wallet_address="0xartist")
        s.add(artist)
        await s.flush()

        community = Community(artist_id=artist.id, name="Inner Circle", created_at=T0)
        empty_community = Community(artist_id=artist.id, name="Side Room", created_at=T0)
        s.add_all([community, empty_community])
        await s.flush()

        collection = NFTCollection(
            community_id=community.id,
            artist_id=artist.id,
            name="Inner Circle Pass",
            symbol="ICP",
            contract_address="0xcollection",
            total_supply=0,
            price_per_month=Decimal("10.00"),
            currency="USDC",
            billing_period_days=30,
            is_active=True,
            created_at=T0,
        )
        s.add(collection)
        await s.commit()

        return SimpleNamespace(
            artist_user_id=artist_user.id,
            artist_id=artist.id,
            fan_id=fan.id,
            other_id=other.id,
            no_wallet_id=no_wallet.id,
            community_id=community.id,
            empty_community_id=empty_community.id,
            collection_id=collection.id,
        )


@pytest.fixture
def add_membership(session_factory, seed):
    """直接写入一条会员记录（绕过链上），用于定时任务场景"""
    async def _add(
        email: str,
        expires_at: datetime,
        *,
        auto_renew: bool = True,
        is_active: bool = True,
        token_id: Optional[str] = None,
        wallet: str = "0xwallet",
    ) -> int:
        async with session_factory() as s:
            user = User(email=email, name=email.split("@")[0], wallet_address=wallet)
            s.add(user)
            await s.flush()
            membership = NFTMembership(
                user_id=user.id,
                community_id=seed.community_id,
                collection_id=seed.collection_id,
                token_id=token_id or f"seed-{user.id}",
                contract_address="0xcollection",
                transaction_hash=f"0xseed{user.id}",
                minted_at=expires_at - timedelta(days=30),
                expires_at=expires_at,
                is_active=is_active,
                auto_renew=auto_renew,
            )
            s.add(membership)
            await s.commit()
            return membership.id
    return _add
