"""测试配置和 fixtures."""

import asyncio
from collections.abc import AsyncGenerator, Callable
from datetime import timedelta
from typing import Any

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dolate.core.articles import ArticleStore
from dolate.core.cache import LocalCache
from dolate.core.gateway import RejectedGatewayError, RemoteGateway, TransientGatewayError
from dolate.core.preferences import SettingsStorage
from dolate.core.queue import OperationQueue
from dolate.core.state import SyncState
from dolate.core.storage import KVStore
from dolate.core.sync import SyncService
from dolate.models.article import Article, ArticlePatch, is_temporary_id, utcnow
from dolate.models.database import init_db

USER_ID = "user-1"
OTHER_USER_ID = "user-2"


class FakeGateway(RemoteGateway):
    """内存中的远端网关，支持按文章 ID 注入错误."""

    def __init__(self) -> None:
        self.rows: dict[str, Article] = {}
        self.calls: list[tuple[str, str]] = []
        self.failures: dict[str, list[Exception]] = {}
        self.online = True
        self.delay = 0.0
        self.in_flight = 0
        self.max_in_flight = 0
        self.access_token: str | None = None
        self._next_id = 1

    def fail(self, key: str, *errors: Exception) -> None:
        """让针对 key 的后续调用依次抛出这些错误."""
        self.failures.setdefault(key, []).extend(errors)

    def seed(self, *articles: Article) -> None:
        for article in articles:
            self.rows[article.id] = article

    def set_access_token(self, token: str | None) -> None:
        self.access_token = token

    async def _call(self, action: str, key: str) -> None:
        self.calls.append((action, key))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if not self.online:
                msg = "网络不可用"
                raise TransientGatewayError(msg)
            errors = self.failures.get(key)
            if errors:
                raise errors.pop(0)
        finally:
            self.in_flight -= 1

    async def create(self, article: Article) -> Article:
        await self._call("create", article.id)
        server_id = article.id
        if is_temporary_id(article.id):
            server_id = f"srv-{self._next_id}"
            self._next_id += 1
        created = article.model_copy(update={"id": server_id, "updated_at": utcnow()})
        self.rows[server_id] = created
        return created

    async def update(self, article_id: str, patch: ArticlePatch) -> Article:
        await self._call("update", article_id)
        current = self.rows.get(article_id)
        if current is None:
            msg = "更新失败：文章不存在或无权限"
            raise RejectedGatewayError(msg)
        updated = patch.apply_to(current, updated_at=utcnow())
        self.rows[article_id] = updated
        return updated

    async def delete(self, article_id: str) -> None:
        await self._call("delete", article_id)
        self.rows.pop(article_id, None)

    async def search(self, user_id: str, query: str) -> list[Article]:
        await self._call("search", query)
        return [
            a
            for a in self.rows.values()
            if a.user_id == user_id and query.lower() in a.title.lower()
        ]

    async def ping(self) -> bool:
        return self.online

    async def list(self, user_id: str) -> list[Article]:
        await self._call("list", user_id)
        articles = [a for a in self.rows.values() if a.user_id == user_id]
        return sorted(articles, key=lambda a: a.created_at, reverse=True)


@pytest.fixture
def make_article() -> Callable[..., Article]:
    """创建测试用文章的工厂."""
    counter = {"n": 0}
    base = utcnow() - timedelta(days=1)

    def factory(**overrides: Any) -> Article:
        counter["n"] += 1
        n = counter["n"]
        fields: dict[str, Any] = {
            "id": f"a{n}",
            "title": f"Article {n}",
            "url": f"https://www.example.com/posts/{n}",
            "user_id": USER_ID,
            "created_at": base + timedelta(minutes=n),
            "updated_at": base + timedelta(minutes=n),
        }
        fields.update(overrides)
        return Article(**fields)

    return factory


@pytest.fixture
async def session_factory() -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """创建测试用的内存数据库."""
    engine, factory = await init_db("sqlite+aiosqlite:///:memory:")
    yield factory
    await engine.dispose()


@pytest.fixture
def kv_store(session_factory: async_sessionmaker[AsyncSession]) -> KVStore:
    return KVStore(session_factory)


@pytest.fixture
def state() -> SyncState:
    return SyncState()


@pytest.fixture
def cache(kv_store: KVStore) -> LocalCache:
    return LocalCache(kv_store)


@pytest.fixture
def queue(kv_store: KVStore, state: SyncState) -> OperationQueue:
    return OperationQueue(kv_store, state)


@pytest.fixture
def preferences(kv_store: KVStore) -> SettingsStorage:
    return SettingsStorage(kv_store)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def article_store(
    cache: LocalCache,
    queue: OperationQueue,
    gateway: FakeGateway,
    state: SyncState,
    preferences: SettingsStorage,
) -> ArticleStore:
    """已登录 USER_ID 的文章状态."""
    store = ArticleStore(cache, queue, gateway, state, preferences)
    store.user_id = USER_ID
    return store


@pytest.fixture
def sync_service(
    gateway: FakeGateway,
    queue: OperationQueue,
    article_store: ArticleStore,
    state: SyncState,
    kv_store: KVStore,
) -> SyncService:
    return SyncService(
        gateway,
        queue,
        article_store,
        state,
        batch_size=5,
        backoff_base_seconds=30.0,
        history_store=kv_store,
    )
