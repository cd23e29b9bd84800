"""文章状态 - 面向界面的内存文章集合.

数据来源有三个：本地缓存（启动时快速展示）、远端网关（全量同步）
和实时变更推送。所有用户操作先在本地乐观生效并写入缓存，
在线时直接调用远端，离线或遇到可重试错误时进入离线队列。
"""

import logging
from typing import Any

from dolate.core.cache import LocalCache
from dolate.core.gateway import (
    RejectedGatewayError,
    RemoteGateway,
    TransientGatewayError,
)
from dolate.core.preferences import SettingsStorage
from dolate.core.queue import OperationQueue
from dolate.core.ranking import ArticleFilter, ArticleRanker, SortOrder
from dolate.core.state import SyncState
from dolate.models.article import (
    Article,
    ArticlePatch,
    estimate_reading_time,
    is_temporary_id,
    new_temporary_id,
    utcnow,
)
from dolate.models.sync import OperationType, SyncOperation

logger = logging.getLogger(__name__)


class ArticleNotFoundError(LookupError):
    """文章不存在."""


class NotSignedInError(RuntimeError):
    """当前没有登录用户."""


class ArticleStore:
    """内存中的文章集合."""

    def __init__(
        self,
        cache: LocalCache,
        queue: OperationQueue,
        gateway: RemoteGateway,
        state: SyncState,
        preferences: SettingsStorage | None = None,
    ) -> None:
        self.cache = cache
        self.queue = queue
        self.gateway = gateway
        self.state = state
        self.preferences = preferences
        self.filters = ArticleFilter()
        self.user_id: str | None = None
        self._articles: list[Article] = []
        # 已被服务端确认的临时 ID -> 服务端 ID
        self._confirmed_ids: dict[str, str] = {}
        self._ranker = ArticleRanker()

    @property
    def articles(self) -> list[Article]:
        """当前文章列表（副本）."""
        return list(self._articles)

    def get(self, article_id: str) -> Article | None:
        """按 ID 查找内存中的文章."""
        for article in self._articles:
            if article.id == article_id:
                return article
        return None

    def _require(self, article_id: str) -> Article:
        article = self.get(article_id)
        if article is None:
            msg = f"文章不存在: {article_id}"
            raise ArticleNotFoundError(msg)
        return article

    def _current(self, article_id: str) -> Article:
        """按 ID 取文章，临时 ID 已被确认时返回服务端版本."""
        server_id = self._confirmed_ids.get(article_id)
        if server_id is not None:
            article = self.get(server_id)
            if article is not None:
                return article
        return self._require(article_id)

    async def _enqueue(
        self,
        type: OperationType,
        data: dict[str, Any],
        user_id: str,
    ) -> SyncOperation | None:
        """写入离线队列；入队期间临时 ID 被确认时改写为服务端 ID."""
        operation = await self.queue.enqueue(type, data, user_id)
        if operation is None:
            logger.warning(f"变更未能写入离线队列，只保存在本地: {type} {data.get('id')}")
            return None

        server_id = self._confirmed_ids.get(operation.target_id)
        if server_id is not None:
            await self.queue.remap_target(operation.target_id, server_id)
            return operation.with_target(server_id)
        return operation

    def _require_user(self) -> str:
        if self.user_id is None:
            msg = "未登录，无法修改文章"
            raise NotSignedInError(msg)
        return self.user_id

    def _put(self, article: Article, prepend: bool = True) -> None:
        for index, existing in enumerate(self._articles):
            if existing.id == article.id:
                self._articles[index] = article
                return
        if prepend:
            self._articles.insert(0, article)
        else:
            self._articles.append(article)

    def _drop(self, article_id: str) -> Article | None:
        for index, existing in enumerate(self._articles):
            if existing.id == article_id:
                return self._articles.pop(index)
        return None

    async def _can_reach_remote(self, article_id: str | None = None) -> bool:
        """是否应直接调用远端.

        临时 ID 的文章其 create 仍在队列中，后续变更也必须排队。
        """
        if not self.state.is_online:
            return False
        if article_id is not None and is_temporary_id(article_id):
            return False
        if self.preferences is not None:
            settings = await self.preferences.get_settings()
            if settings.offline_mode:
                return False
        return True

    # ---- 集合加载 ----

    async def set_articles(self, articles: list[Article], user_id: str | None = None) -> None:
        """整体替换文章集合并写入缓存."""
        owner = user_id or self.user_id
        self._articles = list(articles)
        if owner is not None:
            await self.cache.save_collection(owner, self._articles)

    async def load_from_cache(self, user_id: str) -> list[Article]:
        """从本地缓存加载，用于网络返回之前的快速展示."""
        self.user_id = user_id
        self._articles = await self.cache.load_collection(user_id)
        logger.info(f"从缓存加载了 {len(self._articles)} 篇文章")
        return self.articles

    async def clear(self) -> None:
        """清空内存状态（退出登录时调用）."""
        self._articles = []
        self.user_id = None
        self.filters = ArticleFilter()
        self._confirmed_ids = {}

    # ---- 乐观更新 ----

    async def add_article(
        self,
        url: str,
        title: str,
        **fields: Any,
    ) -> Article:
        """新增文章：先以临时 ID 插入，再尝试远端创建."""
        user_id = self._require_user()
        article = Article(
            id=new_temporary_id(),
            url=url,
            title=title,
            user_id=user_id,
            **fields,
        )
        if article.reading_time is None:
            article.reading_time = estimate_reading_time(article.content)

        self._put(article)
        await self.cache.upsert_one(article)

        if await self._can_reach_remote():
            try:
                created = await self.gateway.create(article)
            except TransientGatewayError as e:
                logger.warning(f"创建文章失败，转入离线队列: {e}")
            except RejectedGatewayError:
                self._drop(article.id)
                await self.cache.remove_one(article.id)
                raise
            else:
                await self.replace_temporary(article.id, created)
                return created

        await self._enqueue("create", article.to_record(), user_id)
        return article

    async def update_article(self, article_id: str, patch: ArticlePatch) -> Article:
        """局部更新文章."""
        current = self._current(article_id)
        if patch.is_empty():
            return current

        updated = patch.apply_to(current, updated_at=utcnow())
        self._put(updated)
        await self.cache.upsert_one(updated)

        if updated.id in self._confirmed_ids:
            # 等待期间 create 已被确认，临时文章被服务端版本替换，改在新版本上重做
            await self.cache.remove_one(updated.id)
            return await self.update_article(updated.id, patch)

        article_id = updated.id
        if await self._can_reach_remote(article_id):
            try:
                server_article = await self.gateway.update(article_id, patch)
            except TransientGatewayError as e:
                logger.warning(f"更新文章失败，转入离线队列: {e}")
            except RejectedGatewayError:
                self._put(current)
                await self.cache.upsert_one(current, force=True)
                raise
            else:
                await self.apply_remote_upsert(server_article)
                return self.get(article_id) or server_article

        await self._enqueue(
            "update",
            {"id": article_id, **patch.to_payload()},
            current.user_id,
        )
        return updated

    async def remove_article(self, article_id: str) -> None:
        """删除文章."""
        current = self._current(article_id)
        article_id = current.id
        self._drop(article_id)
        await self.cache.remove_one(article_id)

        if is_temporary_id(article_id):
            # 尚未同步到远端，撤销排队中的创建即可
            await self.queue.discard_for_target(article_id)
            return

        if await self._can_reach_remote(article_id):
            try:
                await self.gateway.delete(article_id)
            except TransientGatewayError as e:
                logger.warning(f"删除文章失败，转入离线队列: {e}")
            except RejectedGatewayError:
                self._put(current)
                await self.cache.upsert_one(current, force=True)
                raise
            else:
                return

        await self._enqueue("delete", {"id": article_id}, current.user_id)

    async def mark_as_read(self, article_id: str, is_read: bool = True) -> Article:
        """标记已读/未读."""
        return await self.update_article(article_id, ArticlePatch(is_read=is_read))

    async def toggle_favorite(self, article_id: str) -> Article:
        """切换收藏状态."""
        article = self._current(article_id)
        return await self.update_article(
            article_id, ArticlePatch(is_favorite=not article.is_favorite)
        )

    async def set_tags(self, article_id: str, tags: list[str]) -> Article:
        """替换文章标签."""
        return await self.update_article(article_id, ArticlePatch(tags=tags))

    # ---- 远端变更（不进入离线队列）----

    async def apply_remote_upsert(self, article: Article) -> bool:
        """应用远端版本：不存在则插入，已存在且不旧于本地时覆盖."""
        if self.user_id is not None and article.user_id != self.user_id:
            logger.debug(f"忽略其他用户的文章: {article.id}")
            return False

        current = self.get(article.id)
        if current is not None and current.updated_at > article.updated_at:
            return False

        self._put(article)
        await self.cache.upsert_one(article)
        return True

    async def apply_remote_delete(self, article_id: str) -> bool:
        """应用远端删除，本地不存在时不做任何事."""
        removed = self._drop(article_id)
        cached = await self.cache.remove_one(article_id)
        return removed is not None or cached

    async def replace_temporary(self, temp_id: str, article: Article) -> None:
        """用服务端创建结果替换临时文章，并改写仍指向临时 ID 的排队操作."""
        self._confirmed_ids[temp_id] = article.id
        await self.queue.remap_target(temp_id, article.id)

        if self.get(article.id) is not None:
            # 实时推送先到，已经有服务端版本
            self._drop(temp_id)
            await self.cache.remove_one(temp_id)
            await self.apply_remote_upsert(article)
            return

        index = next(
            (i for i, a in enumerate(self._articles) if a.id == temp_id), None
        )
        if index is None:
            self._put(article)
        else:
            self._articles[index] = article
        await self.cache.replace_id(temp_id, article)

    # ---- 查询 ----

    def get_filtered_articles(
        self,
        sort_by: SortOrder = "newest",
        page: int = 1,
        limit: int | None = None,
        article_filter: ArticleFilter | None = None,
    ) -> tuple[list[Article], int]:
        """按筛选条件返回文章与总数，未指定时使用当前筛选条件."""
        return self._ranker.rank(
            self._articles,
            article_filter=article_filter or self.filters,
            sort_by=sort_by,
            page=page,
            limit=limit,
        )

    def get_tags(self) -> list[tuple[str, int]]:
        """全部标签及数量."""
        return self._ranker.tag_counts(self._articles)

    async def search(self, query: str) -> list[Article]:
        """搜索文章：在线时查询远端，离线或失败时退回本地筛选."""
        if self.user_id is not None and await self._can_reach_remote():
            try:
                return await self.gateway.search(self.user_id, query)
            except (TransientGatewayError, RejectedGatewayError) as e:
                logger.warning(f"远端搜索失败，使用本地结果: {e}")

        local_filter = ArticleFilter(search_query=query)
        articles, _ = self._ranker.rank(self._articles, article_filter=local_filter)
        return articles
