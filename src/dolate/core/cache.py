"""本地文章缓存.

按用户保存完整的文章集合快照，并按文章 ID 维护二级索引。
两者总是在同一事务内更新；缓存只是加速手段，任何存储错误
都会被记录并退化为"未命中"，不会抛给调用方。
"""

import logging
from datetime import datetime
from typing import Any

from dolate.core.storage import STORAGE_ERRORS, KVStore, KVTransaction
from dolate.models.article import Article, ArticlePatch, utcnow

logger = logging.getLogger(__name__)

COLLECTIONS_NAMESPACE = "collections"
ARTICLES_NAMESPACE = "articles"
LAST_SYNC_SUFFIX = ":last_sync"


def _last_sync_key(user_id: str) -> str:
    return f"{user_id}{LAST_SYNC_SUFFIX}"


class LocalCache:
    """按用户隔离的持久化文章缓存."""

    def __init__(self, store: KVStore) -> None:
        self.store = store

    async def save_collection(self, user_id: str, articles: list[Article]) -> bool:
        """整体替换用户的文章集合（覆盖而非合并），并记录同步时间."""
        try:
            async with self.store.transaction() as tx:
                previous_ids = set(await tx.keys(ARTICLES_NAMESPACE, owner=user_id))
                records = [article.to_record() for article in articles]

                await tx.set(COLLECTIONS_NAMESPACE, user_id, records, owner=user_id)
                await tx.set(
                    COLLECTIONS_NAMESPACE,
                    _last_sync_key(user_id),
                    utcnow().isoformat(),
                    owner=user_id,
                )
                for article, record in zip(articles, records, strict=True):
                    await tx.set(
                        ARTICLES_NAMESPACE, article.id, record, owner=article.user_id
                    )

                # 清理已不在集合中的单篇缓存
                for stale_id in previous_ids - {a.id for a in articles}:
                    await tx.delete(ARTICLES_NAMESPACE, stale_id)
            return True
        except STORAGE_ERRORS as e:
            logger.warning(f"保存文章集合失败 (user={user_id}): {e}")
            return False

    async def load_collection(self, user_id: str) -> list[Article]:
        """读取用户的文章集合，从未缓存时返回空列表."""
        try:
            async with self.store.transaction() as tx:
                records = await tx.get(COLLECTIONS_NAMESPACE, user_id, [])
            return [Article.model_validate(record) for record in records]
        except STORAGE_ERRORS as e:
            logger.warning(f"读取文章集合失败 (user={user_id}): {e}")
            return []

    async def get_last_sync_time(self, user_id: str) -> datetime | None:
        """获取集合快照最近一次写入的时间."""
        value = await self.store.get(COLLECTIONS_NAMESPACE, _last_sync_key(user_id))
        if not value:
            return None
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            return None

    async def get_one(self, article_id: str) -> Article | None:
        """按 ID 读取单篇文章."""
        try:
            async with self.store.transaction() as tx:
                record = await tx.get(ARTICLES_NAMESPACE, article_id)
            return Article.model_validate(record) if record else None
        except STORAGE_ERRORS as e:
            logger.warning(f"读取文章缓存失败 ({article_id}): {e}")
            return None

    async def upsert_one(self, article: Article, force: bool = False) -> bool:
        """写入单篇文章并同步更新集合快照.

        已缓存版本的 updated_at 更新时忽略本次写入（除非 force），
        返回是否实际写入。
        """
        try:
            async with self.store.transaction() as tx:
                if not force:
                    cached = await tx.get(ARTICLES_NAMESPACE, article.id)
                    if cached and Article.model_validate(cached).updated_at > article.updated_at:
                        logger.debug(f"忽略过期的文章版本: {article.id}")
                        return False

                record = article.to_record()
                await tx.set(ARTICLES_NAMESPACE, article.id, record, owner=article.user_id)
                await self._put_in_collection(tx, article.user_id, record)
            return True
        except STORAGE_ERRORS as e:
            logger.warning(f"写入文章缓存失败 ({article.id}): {e}")
            return False

    async def patch_one(self, article_id: str, patch: ArticlePatch) -> Article | None:
        """对已缓存文章应用局部更新."""
        cached = await self.get_one(article_id)
        if cached is None:
            return None
        updated = patch.apply_to(cached, updated_at=utcnow())
        if await self.upsert_one(updated):
            return updated
        return None

    async def remove_one(self, article_id: str) -> bool:
        """删除单篇文章并从所属用户的集合快照中移除."""
        try:
            async with self.store.transaction() as tx:
                owner = await tx.get_owner(ARTICLES_NAMESPACE, article_id)
                if owner is None:
                    return False
                await tx.delete(ARTICLES_NAMESPACE, article_id)
                await self._drop_from_collection(tx, owner, article_id)
            return True
        except STORAGE_ERRORS as e:
            logger.warning(f"删除文章缓存失败 ({article_id}): {e}")
            return False

    async def replace_id(self, old_id: str, article: Article) -> bool:
        """用服务端确认的文章替换临时 ID 对应的缓存."""
        try:
            async with self.store.transaction() as tx:
                await tx.delete(ARTICLES_NAMESPACE, old_id)
                record = article.to_record()
                await tx.set(ARTICLES_NAMESPACE, article.id, record, owner=article.user_id)

                records: list[dict[str, Any]] = await tx.get(
                    COLLECTIONS_NAMESPACE, article.user_id, []
                )
                records = [r for r in records if r.get("id") != article.id]
                for index, existing in enumerate(records):
                    if existing.get("id") == old_id:
                        records[index] = record
                        break
                else:
                    records.insert(0, record)
                await tx.set(
                    COLLECTIONS_NAMESPACE, article.user_id, records, owner=article.user_id
                )
            return True
        except STORAGE_ERRORS as e:
            logger.warning(f"替换临时文章失败 ({old_id} -> {article.id}): {e}")
            return False

    async def clear_for_user(self, user_id: str) -> bool:
        """清除用户的集合快照、同步时间以及全部单篇缓存."""
        try:
            async with self.store.transaction() as tx:
                await tx.delete_owned([COLLECTIONS_NAMESPACE, ARTICLES_NAMESPACE], user_id)
            logger.info(f"已清除用户缓存: {user_id}")
            return True
        except STORAGE_ERRORS as e:
            logger.warning(f"清除用户缓存失败 ({user_id}): {e}")
            return False

    async def _put_in_collection(
        self, tx: KVTransaction, user_id: str, record: dict[str, Any]
    ) -> None:
        records: list[dict[str, Any]] = await tx.get(COLLECTIONS_NAMESPACE, user_id, [])
        for index, existing in enumerate(records):
            if existing.get("id") == record["id"]:
                records[index] = record
                break
        else:
            records.insert(0, record)
        await tx.set(COLLECTIONS_NAMESPACE, user_id, records, owner=user_id)

    async def _drop_from_collection(
        self, tx: KVTransaction, user_id: str, article_id: str
    ) -> None:
        records: list[dict[str, Any]] = await tx.get(COLLECTIONS_NAMESPACE, user_id, [])
        remaining = [r for r in records if r.get("id") != article_id]
        if len(remaining) != len(records):
            await tx.set(COLLECTIONS_NAMESPACE, user_id, remaining, owner=user_id)
