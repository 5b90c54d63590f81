"""
数据库配置和连接管理
"""
from typing import AsyncGenerator, Optional

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from core.config import settings
from infrastructure.models import Base


def _build_async_url(database_url: str) -> str:
    """确保数据库URL使用异步驱动"""
    url = make_url(database_url)
    drivername = url.drivername

    if "+" in drivername:
        return database_url

    driver_map = {
        "postgresql": "postgresql+asyncpg",
        "postgres": "postgresql+asyncpg",
        "sqlite": "sqlite+aiosqlite",
    }

    if drivername not in driver_map:
        raise ValueError(f"不支持的数据库驱动: {drivername}. 请使用 async 驱动或更新 DATABASE__URL")

    return url.set(drivername=driver_map[drivername]).render_as_string(hide_password=False)


def build_engine(database_url: Optional[str] = None, **kwargs) -> AsyncEngine:
    """创建异步引擎；Celery 任务每次 asyncio.run 需要独立的引擎与连接池"""
    return create_async_engine(
        _build_async_url(database_url or settings.database.url),
        echo=settings.database.echo,
        **kwargs,
    )


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=bind, expire_on_commit=False)


engine = build_engine()
AsyncSessionLocal = build_session_factory(engine)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """获取数据库会话（不自动提交，由调用方控制事务）"""
    async with AsyncSessionLocal() as session:
        yield session


async def create_tables(bind: Optional[AsyncEngine] = None):
    """根据 models 中定义的所有模型创建表（开发环境/测试使用，生产走 Alembic）"""
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def drop_tables(bind: Optional[AsyncEngine] = None):
    """
    删除所有表

    警告：仅用于测试环境，会删除所有数据！
    """
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
