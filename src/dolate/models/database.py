"""数据库初始化和会话管理."""

import logging

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlmodel import SQLModel

# 注册表模型
from dolate.models.kv import KVEntry  # noqa: F401
from dolate.models.sync import SyncRun  # noqa: F401

logger = logging.getLogger(__name__)


async def init_db(
    database_url: str,
) -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    """初始化数据库，创建所有表，返回引擎和会话工厂."""
    engine = create_async_engine(database_url, echo=False)
    session_factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    logger.info(f"本地数据库已就绪: {database_url}")
    return engine, session_factory
