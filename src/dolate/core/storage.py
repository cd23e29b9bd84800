"""本地键值存储 - 缓存与离线队列的持久化层."""

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlmodel import select

from dolate.models.article import utcnow
from dolate.models.kv import KVEntry

logger = logging.getLogger(__name__)

# 存储层可吸收的错误：数据库异常、文件 I/O、JSON/模型解析失败
STORAGE_ERRORS: tuple[type[Exception], ...] = (SQLAlchemyError, OSError, ValueError)


class KVTransaction:
    """单个事务内的键值操作."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, namespace: str, key: str, default: Any = None) -> Any:
        """读取值，不存在时返回默认值."""
        entry = await self.session.get(KVEntry, (namespace, key))
        if entry is None:
            return default
        return json.loads(entry.value)

    async def get_owner(self, namespace: str, key: str) -> str | None:
        """读取条目的所属用户."""
        entry = await self.session.get(KVEntry, (namespace, key))
        return entry.owner if entry else None

    async def set(
        self,
        namespace: str,
        key: str,
        value: Any,
        owner: str | None = None,
    ) -> None:
        """写入值（覆盖）."""
        entry = KVEntry(
            namespace=namespace,
            key=key,
            owner=owner,
            value=json.dumps(value, ensure_ascii=False),
            updated_at=utcnow(),
        )
        await self.session.merge(entry)

    async def delete(self, namespace: str, key: str) -> None:
        """删除单个条目."""
        entry = await self.session.get(KVEntry, (namespace, key))
        if entry is not None:
            await self.session.delete(entry)

    async def keys(self, namespace: str, owner: str | None = None) -> list[str]:
        """列出命名空间下的键，可按所属用户过滤."""
        stmt = select(KVEntry.key).where(KVEntry.namespace == namespace)
        if owner is not None:
            stmt = stmt.where(KVEntry.owner == owner)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def delete_owned(self, namespaces: Iterable[str], owner: str) -> None:
        """删除指定用户在若干命名空间下的全部条目."""
        stmt = delete(KVEntry).where(
            KVEntry.namespace.in_(list(namespaces)),  # type: ignore[attr-defined]
            KVEntry.owner == owner,
        )
        await self.session.execute(stmt)


class KVStore:
    """基于 SQLite 的键值存储.

    所有访问串行化：读-改-写序列在同一事务内完成，
    并发的批量同步不会互相覆盖队列或集合快照。
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory
        self._lock = asyncio.Lock()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """获取串行化的数据库会话（同一本地库的其他表也经由此处访问）."""
        async with self._lock:
            async with self._session_factory() as session:
                yield session

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[KVTransaction]:
        """打开一个串行化事务，正常退出时提交，异常时回滚."""
        async with self.session() as session:
            try:
                yield KVTransaction(session)
                await session.commit()
            except BaseException:
                await session.rollback()
                raise

    async def get(self, namespace: str, key: str, default: Any = None) -> Any:
        """读取值，存储错误时返回默认值."""
        try:
            async with self.transaction() as tx:
                return await tx.get(namespace, key, default)
        except STORAGE_ERRORS as e:
            logger.warning(f"读取本地存储失败 {namespace}/{key}: {e}")
            return default

    async def set(
        self,
        namespace: str,
        key: str,
        value: Any,
        owner: str | None = None,
    ) -> bool:
        """写入值，存储错误时返回 False."""
        try:
            async with self.transaction() as tx:
                await tx.set(namespace, key, value, owner)
            return True
        except STORAGE_ERRORS as e:
            logger.warning(f"写入本地存储失败 {namespace}/{key}: {e}")
            return False

    async def delete(self, namespace: str, key: str) -> bool:
        """删除条目，存储错误时返回 False."""
        try:
            async with self.transaction() as tx:
                await tx.delete(namespace, key)
            return True
        except STORAGE_ERRORS as e:
            logger.warning(f"删除本地存储失败 {namespace}/{key}: {e}")
            return False

    async def keys(self, namespace: str, owner: str | None = None) -> list[str]:
        """列出命名空间下的键，存储错误时返回空列表."""
        try:
            async with self.transaction() as tx:
                return await tx.keys(namespace, owner)
        except STORAGE_ERRORS as e:
            logger.warning(f"列出本地存储键失败 {namespace}: {e}")
            return []
