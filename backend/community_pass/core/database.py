"""
数据库：异步 engine / session、ORM Base、UTC 时间列类型
"""
from datetime import datetime, timezone
from typing import AsyncGenerator, Tuple

from sqlalchemy import DateTime
from sqlalchemy.ext.asyncio import AsyncSession, AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.types import TypeDecorator

from community_pass.core.config import settings


def utc_now() -> datetime:
    """当前 UTC 时间（带时区）"""
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """
    始终以 UTC 存取的时间列。
    SQLite 不保存时区信息，读出的 naive 时间统一视为 UTC，保证与带时区的 now 可比较。
    """
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


Base = declarative_base()


def _engine_kwargs(url: str) -> dict:
    kwargs = {"echo": settings.DATABASE_ECHO}
    if not url.startswith("sqlite"):
        kwargs.update(pool_pre_ping=True, pool_size=10, max_overflow=20)
    return kwargs


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    """创建 session 工厂；提交后对象仍可访问（定时任务与接口返回都依赖这一点）"""
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


engine = create_async_engine(settings.DATABASE_URL, **_engine_kwargs(settings.DATABASE_URL))
AsyncSessionLocal = make_session_factory(engine)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI 依赖：每个请求一个 session"""
    async with AsyncSessionLocal() as session:
        yield session


def create_async_engine_and_session_for_celery() -> Tuple[AsyncEngine, async_sessionmaker]:
    """Celery 任务内使用：在当前事件循环中新建 engine/session，避免跨 loop 复用全局 engine"""
    celery_engine = create_async_engine(settings.DATABASE_URL, **_engine_kwargs(settings.DATABASE_URL))
    return celery_engine, make_session_factory(celery_engine)


def append_only(model_cls):
    """类装饰器：禁止通过 ORM 修改或删除该表记录（交易流水、任务执行记录等只追加表）"""
    from sqlalchemy import event
    from community_pass.core.exceptions import AppendOnlyViolation

    def _reject_update(mapper, connection, target):
        raise AppendOnlyViolation(f"{model_cls.__tablename__} 为只追加表，禁止更新 id={target.id}")

    def _reject_delete(mapper, connection, target):
        raise AppendOnlyViolation(f"{model_cls.__tablename__} 为只追加表，禁止删除 id={target.id}")

    event.listen(model_cls, "before_update", _reject_update)
    event.listen(model_cls, "before_delete", _reject_delete)
    return model_cls
