"""测试本地 HTTP 接口."""

from collections.abc import AsyncGenerator, Callable

import pytest
from httpx import ASGITransport, AsyncClient

from dolate.api.deps import get_runtime
from dolate.config import Settings
from dolate.core.gateway import RejectedGatewayError
from dolate.core.runtime import SyncRuntime, build_runtime
from dolate.main import app
from dolate.models.article import Article

USER_ID = "user-1"


@pytest.fixture
async def runtime(gateway) -> AsyncGenerator[SyncRuntime, None]:
    """使用内存数据库和假网关的运行时."""
    settings = Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        enable_realtime=False,
    )
    runtime = await build_runtime(settings, gateway=gateway)
    yield runtime
    await runtime.close()


@pytest.fixture
async def client(runtime: SyncRuntime) -> AsyncGenerator[AsyncClient, None]:
    """创建测试客户端."""
    app.dependency_overrides[get_runtime] = lambda: runtime

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture
async def signed_in(client: AsyncClient) -> AsyncClient:
    response = await client.post("/api/session", json={"user_id": USER_ID, "access_token": "jwt"})
    assert response.status_code == 200
    return client


async def _add_article(client: AsyncClient) -> str:
    response = await client.post(
        "/api/articles", json={"url": "https://example.com/a", "title": "A"}
    )
    return response.json()["id"]


class TestHealth:
    """测试健康检查."""

    async def test_health(self, client: AsyncClient) -> None:
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}


class TestSession:
    """测试登录与退出."""

    async def test_sign_in_runs_full_sync(
        self,
        client: AsyncClient,
        runtime: SyncRuntime,
        gateway,
        make_article: Callable[..., Article],
    ) -> None:
        """登录后拉取远端文章并设置令牌."""
        gateway.seed(make_article(), make_article())

        response = await client.post(
            "/api/session", json={"user_id": USER_ID, "access_token": "jwt"}
        )

        assert response.status_code == 200
        data = response.json()
        assert data["articles"] == 2
        assert data["last_sync_time"] is not None
        assert gateway.access_token == "jwt"
        assert runtime.background.is_running is True

    async def test_sign_out_clears_cache(
        self, signed_in: AsyncClient, runtime: SyncRuntime
    ) -> None:
        """退出后清除缓存并停止后台任务."""
        await _add_article(signed_in)

        response = await signed_in.delete("/api/session")

        assert response.status_code == 200
        assert runtime.user_id is None
        assert runtime.background.is_running is False
        assert await runtime.cache.load_collection(USER_ID) == []

    async def test_sync_requires_sign_in(
        self, signed_in: AsyncClient, runtime: SyncRuntime, gateway
    ) -> None:
        """退出后不能推送上一个用户留下的离线变更."""
        article_id = await _add_article(signed_in)
        runtime.state.is_online = False
        await signed_in.post(f"/api/articles/{article_id}/read")
        await signed_in.delete("/api/session")
        runtime.state.is_online = True
        calls = len(gateway.calls)

        assert (await signed_in.post("/api/sync/drain")).status_code == 401
        assert (await signed_in.post(f"/api/sync/articles/{article_id}")).status_code == 401
        assert len(gateway.calls) == calls
        assert await runtime.queue.queue_size() == 1

    async def test_articles_require_sign_in(self, client: AsyncClient) -> None:
        """未登录时返回 401."""
        assert (await client.get("/api/articles")).status_code == 401
        response = await client.post(
            "/api/articles", json={"url": "https://example.com/a", "title": "A"}
        )
        assert response.status_code == 401


class TestArticles:
    """测试文章接口."""

    async def test_add_and_list(self, signed_in: AsyncClient) -> None:
        """新增后出现在列表中."""
        response = await signed_in.post(
            "/api/articles",
            json={"url": "https://www.example.com/a", "title": "A", "tags": ["news"]},
        )
        assert response.status_code == 200
        assert response.json()["id"] == "srv-1"
        assert response.json()["domain"] == "example.com"

        response = await signed_in.get("/api/articles", params={"tag": "news"})
        data = response.json()
        assert data["total"] == 1
        assert data["items"][0]["title"] == "A"

        response = await signed_in.get("/api/articles/tags")
        assert response.json()["tags"] == [{"name": "news", "count": 1}]

    async def test_update_read_and_favorite(self, signed_in: AsyncClient) -> None:
        """修改、标记已读与收藏."""
        article_id = await _add_article(signed_in)

        response = await signed_in.patch(f"/api/articles/{article_id}", json={"title": "B"})
        assert response.json()["title"] == "B"

        response = await signed_in.post(f"/api/articles/{article_id}/read")
        assert response.json() == {"id": article_id, "is_read": True}

        response = await signed_in.post(f"/api/articles/{article_id}/favorite")
        assert response.json() == {"id": article_id, "is_favorite": True}

        response = await signed_in.get(f"/api/articles/{article_id}")
        data = response.json()
        assert data["title"] == "B"
        assert data["is_read"] is True

    async def test_delete_and_not_found(self, signed_in: AsyncClient) -> None:
        """删除后返回 404."""
        article_id = await _add_article(signed_in)

        response = await signed_in.delete(f"/api/articles/{article_id}")
        assert response.json() == {"id": article_id, "deleted": True}

        assert (await signed_in.get(f"/api/articles/{article_id}")).status_code == 404
        assert (await signed_in.delete(f"/api/articles/{article_id}")).status_code == 404

    async def test_rejected_change_maps_to_422(
        self, signed_in: AsyncClient, gateway
    ) -> None:
        """远端拒绝的修改返回 422 并回滚."""
        article_id = await _add_article(signed_in)
        gateway.fail(article_id, RejectedGatewayError("权限不足"))

        response = await signed_in.post(f"/api/articles/{article_id}/read")

        assert response.status_code == 422
        article = (await signed_in.get(f"/api/articles/{article_id}")).json()
        assert article["is_read"] is False


class TestSyncEndpoints:
    """测试同步接口."""

    async def test_offline_changes_then_drain(
        self, signed_in: AsyncClient, runtime: SyncRuntime
    ) -> None:
        """离线修改进入队列，恢复在线后推送."""
        runtime.state.is_online = False
        await _add_article(signed_in)

        status = (await signed_in.get("/api/sync/status")).json()
        assert status["pending_changes"] == 1
        assert status["is_online"] is False

        assert (await signed_in.post("/api/sync/drain")).status_code == 409

        runtime.state.is_online = True
        response = await signed_in.post("/api/sync/drain")
        data = response.json()
        assert data["synced"] == 1
        assert data["success"] is True

        status = (await signed_in.get("/api/sync/status")).json()
        assert status["pending_changes"] == 0
        assert status["recent_runs"][0]["sync_type"] == "drain"

    async def test_failed_queue_retry_and_clear(
        self, signed_in: AsyncClient, runtime: SyncRuntime, gateway
    ) -> None:
        """失败操作可以重试或丢弃."""
        article_id = await _add_article(signed_in)
        runtime.state.is_online = False
        await signed_in.post(f"/api/articles/{article_id}/read")
        runtime.state.is_online = True
        gateway.online = False
        await signed_in.post("/api/sync/drain")

        failed = (await signed_in.get("/api/sync/failed")).json()
        assert failed["total"] == 1

        gateway.online = True
        response = await signed_in.post("/api/sync/failed/retry")
        data = response.json()
        assert data["moved"] == 1
        assert data["drain"]["synced"] == 1

        assert (await signed_in.delete("/api/sync/failed")).json() == {"discarded": 0}

    async def test_full_sync_and_conflicts(
        self,
        signed_in: AsyncClient,
        runtime: SyncRuntime,
        gateway,
        make_article: Callable[..., Article],
    ) -> None:
        """全量同步拉取远端新增文章，冲突检查为只读."""
        gateway.seed(make_article())

        response = await signed_in.post("/api/sync/full")
        assert response.json()["success"] is True
        assert response.json()["articles"] == 1

        response = await signed_in.get("/api/sync/conflicts")
        assert response.json() == {"total": 0, "items": []}


class TestSettings:
    """测试偏好设置接口."""

    async def test_update_and_reset(self, client: AsyncClient) -> None:
        """只修改提供的字段，重置后恢复默认值."""
        response = await client.patch("/api/settings", json={"offline_mode": True})
        assert response.json() == {"auto_sync": True, "offline_mode": True}

        response = await client.get("/api/settings")
        assert response.json()["offline_mode"] is True

        response = await client.delete("/api/settings")
        assert response.json() == {"auto_sync": True, "offline_mode": False}
