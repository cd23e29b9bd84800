"""测试实时变更推送."""

import json
from collections.abc import Callable
from datetime import timedelta
from unittest.mock import AsyncMock

from dolate.core.articles import ArticleStore
from dolate.core.realtime import (
    ChangeEvent,
    ChangeFeedChannel,
    ChangeFeedListener,
    ConnectionStatus,
    EventHandler,
    RealtimeChannel,
)
from dolate.models.article import Article

USER_ID = "user-1"


class FakeChannel(ChangeFeedChannel):
    """记录打开与关闭的通道."""

    def __init__(self) -> None:
        self.user_id: str | None = None
        self.handler: EventHandler | None = None
        self.closed = False
        self._status: ConnectionStatus = "disconnected"

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    async def open(self, user_id: str, on_event: EventHandler) -> None:
        self.user_id = user_id
        self.handler = on_event
        self._status = "connected"

    async def close(self) -> None:
        self.closed = True
        self._status = "disconnected"


def _listener(article_store: ArticleStore) -> tuple[ChangeFeedListener, list[FakeChannel]]:
    channels: list[FakeChannel] = []

    def factory() -> FakeChannel:
        channel = FakeChannel()
        channels.append(channel)
        return channel

    return ChangeFeedListener(article_store, factory), channels


class TestChangeEvent:
    """测试变更负载解析."""

    def test_parses_realtime_protocol_payload(self) -> None:
        """解析 {"data": {"type", "record", "old_record"}} 形式."""
        event = ChangeEvent.from_payload(
            {"data": {"type": "UPDATE", "record": {"id": "a1"}, "old_record": {"id": "a1"}}}
        )

        assert event == ChangeEvent("UPDATE", {"id": "a1"}, {"id": "a1"})

    def test_parses_client_library_payload(self) -> None:
        """解析 {"eventType", "new", "old"} 形式，空对象视为 None."""
        event = ChangeEvent.from_payload({"eventType": "delete", "new": {}, "old": {"id": "a1"}})

        assert event == ChangeEvent("DELETE", None, {"id": "a1"})

    def test_unknown_event_type(self) -> None:
        """未知事件类型返回 None."""
        assert ChangeEvent.from_payload({"type": "TRUNCATE"}) is None


class TestSubscription:
    """测试订阅管理."""

    async def test_subscribe_same_user_is_noop(self, article_store: ArticleStore) -> None:
        """同一用户重复订阅只建立一个通道."""
        listener, channels = _listener(article_store)

        await listener.subscribe(USER_ID)
        await listener.subscribe(USER_ID)

        assert len(channels) == 1
        assert channels[0].user_id == USER_ID
        assert listener.connection_status() == "connected"

    async def test_subscribe_other_user_replaces_channel(
        self, article_store: ArticleStore
    ) -> None:
        """切换用户时先关闭旧通道."""
        listener, channels = _listener(article_store)

        await listener.subscribe(USER_ID)
        await listener.subscribe("user-2")

        assert len(channels) == 2
        assert channels[0].closed is True
        assert channels[1].user_id == "user-2"

    async def test_unsubscribe_releases_channel(self, article_store: ArticleStore) -> None:
        """退订后状态为 disconnected，可以重新订阅."""
        listener, channels = _listener(article_store)
        await listener.subscribe(USER_ID)

        await listener.unsubscribe()
        await listener.unsubscribe()

        assert channels[0].closed is True
        assert listener.is_subscribed is False
        assert listener.connection_status() == "disconnected"

        await listener.subscribe(USER_ID)
        assert len(channels) == 2


class TestHandleEvent:
    """测试变更应用到文章状态."""

    async def test_insert_prepends_new_article(
        self, article_store: ArticleStore, make_article: Callable[..., Article]
    ) -> None:
        """新增事件插入列表开头."""
        existing = make_article()
        await article_store.set_articles([existing], USER_ID)
        listener, _ = _listener(article_store)
        await listener.subscribe(USER_ID)

        incoming = make_article()
        await listener.handle_event(ChangeEvent("INSERT", incoming.to_record()))

        assert [a.id for a in article_store.articles] == [incoming.id, existing.id]

    async def test_insert_of_known_id_is_deduplicated(
        self, article_store: ArticleStore, make_article: Callable[..., Article]
    ) -> None:
        """已存在的 ID 不会重复插入."""
        article = make_article()
        await article_store.set_articles([article], USER_ID)
        listener, _ = _listener(article_store)
        await listener.subscribe(USER_ID)

        await listener.handle_event(ChangeEvent("INSERT", article.to_record()))

        assert len(article_store.articles) == 1

    async def test_update_patches_or_inserts(
        self, article_store: ArticleStore, make_article: Callable[..., Article]
    ) -> None:
        """更新事件覆盖已有文章，不存在时插入."""
        article = make_article()
        await article_store.set_articles([article], USER_ID)
        listener, _ = _listener(article_store)
        await listener.subscribe(USER_ID)

        newer = article.model_copy(
            update={"is_read": True, "updated_at": article.updated_at + timedelta(minutes=1)}
        )
        missing = make_article()
        await listener.handle_event(ChangeEvent("UPDATE", newer.to_record()))
        await listener.handle_event(ChangeEvent("UPDATE", missing.to_record()))

        assert article_store.get(article.id).is_read is True
        assert article_store.get(missing.id) is not None

    async def test_delete_of_uncached_id_is_noop(
        self, article_store: ArticleStore, make_article: Callable[..., Article]
    ) -> None:
        """删除本地不存在的文章不做任何事."""
        article = make_article()
        await article_store.set_articles([article], USER_ID)
        before = article_store.articles
        listener, _ = _listener(article_store)
        await listener.subscribe(USER_ID)

        await listener.handle_event(ChangeEvent("DELETE", None, {"id": "missing"}))

        assert article_store.articles == before

    async def test_delete_removes_article(
        self, article_store: ArticleStore, make_article: Callable[..., Article]
    ) -> None:
        """删除事件移除文章."""
        article = make_article()
        await article_store.set_articles([article], USER_ID)
        listener, _ = _listener(article_store)
        await listener.subscribe(USER_ID)

        await listener.handle_event(ChangeEvent("DELETE", None, {"id": article.id}))

        assert article_store.articles == []

    async def test_other_user_is_ignored(
        self, article_store: ArticleStore, make_article: Callable[..., Article]
    ) -> None:
        """其他用户的变更被忽略."""
        listener, _ = _listener(article_store)
        await listener.subscribe(USER_ID)

        other = make_article(user_id="user-2")
        await listener.handle_event(ChangeEvent("INSERT", other.to_record()))

        assert article_store.articles == []

    async def test_invalid_record_is_ignored(self, article_store: ArticleStore) -> None:
        """无法解析的记录被忽略."""
        listener, _ = _listener(article_store)
        await listener.subscribe(USER_ID)

        await listener.handle_event(ChangeEvent("INSERT", {"id": "a1"}))

        assert article_store.articles == []


class TestRealtimeChannel:
    """测试 Supabase Realtime 协议处理."""

    def test_socket_url(self) -> None:
        """https 地址转换为 wss 并带上 apikey."""
        channel = RealtimeChannel("https://demo.supabase.co/", "anon")
        assert channel.socket_url == (
            "wss://demo.supabase.co/realtime/v1/websocket?apikey=anon&vsn=1.0.0"
        )

    def test_join_message_filters_by_user(self) -> None:
        """加入消息按 user_id 过滤并携带访问令牌."""
        channel = RealtimeChannel("https://demo.supabase.co", "anon", access_token="jwt")
        channel._user_id = USER_ID

        message = channel._join_message()

        assert message["event"] == "phx_join"
        assert message["topic"] == f"realtime:articles-{USER_ID}"
        change = message["payload"]["config"]["postgres_changes"][0]
        assert change["filter"] == f"user_id=eq.{USER_ID}"
        assert message["payload"]["access_token"] == "jwt"

    async def test_reply_marks_connected_and_changes_are_dispatched(self) -> None:
        """订阅成功后状态为 connected，表变更交给处理函数."""
        channel = RealtimeChannel("https://demo.supabase.co", "anon")
        channel._user_id = USER_ID
        handler = AsyncMock()
        channel._on_event = handler

        await channel._handle_message(
            json.dumps(
                {
                    "topic": channel.topic,
                    "event": "phx_reply",
                    "payload": {"status": "ok", "response": {}},
                    "ref": "1",
                }
            )
        )
        await channel._handle_message(
            json.dumps(
                {
                    "topic": channel.topic,
                    "event": "postgres_changes",
                    "payload": {"data": {"type": "DELETE", "old_record": {"id": "a1"}}},
                    "ref": None,
                }
            )
        )

        assert channel.status == "connected"
        handler.assert_awaited_once_with(ChangeEvent("DELETE", None, {"id": "a1"}))

    async def test_handler_errors_do_not_break_channel(self) -> None:
        """处理函数异常只记录日志."""
        channel = RealtimeChannel("https://demo.supabase.co", "anon")
        channel._on_event = AsyncMock(side_effect=RuntimeError("boom"))

        await channel._handle_message(
            json.dumps(
                {
                    "event": "postgres_changes",
                    "payload": {"data": {"type": "INSERT", "record": {"id": "a1"}}},
                }
            )
        )
        await channel._handle_message("not json")

        channel._on_event.assert_awaited_once()
