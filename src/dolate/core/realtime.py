"""实时变更推送 - 订阅远端文章表的增删改并应用到本地.

远端使用 Supabase Realtime（Phoenix 协议）：建立 WebSocket 后发送 phx_join，
按 user_id 过滤 postgres_changes，定期发送心跳，断线后指数退避重连。
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Literal

import websockets
from pydantic import ValidationError
from tenacity import AsyncRetrying, retry_if_exception_type, wait_exponential
from websockets.exceptions import WebSocketException

from dolate.core.articles import ArticleStore
from dolate.models.article import Article

logger = logging.getLogger(__name__)

EventType = Literal["INSERT", "UPDATE", "DELETE"]
ConnectionStatus = Literal["connected", "connecting", "disconnected"]
EventHandler = Callable[["ChangeEvent"], Awaitable[None]]

_EVENT_TYPES = {"INSERT", "UPDATE", "DELETE"}


@dataclass
class ChangeEvent:
    """一条表变更."""

    event_type: EventType
    record: dict[str, Any] | None = None
    old_record: dict[str, Any] | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "ChangeEvent | None":
        """
        解析变更负载.

        同时兼容 Realtime 协议的 {"type", "record", "old_record"}
        和客户端库的 {"eventType", "new", "old"} 两种形式。
        """
        data = payload.get("data", payload)
        event_type = str(data.get("type") or data.get("eventType") or "").upper()
        if event_type not in _EVENT_TYPES:
            return None
        record = data.get("record", data.get("new")) or None
        old_record = data.get("old_record", data.get("old")) or None
        return cls(event_type=event_type, record=record, old_record=old_record)  # type: ignore[arg-type]


class ChannelClosedError(ConnectionError):
    """连接被远端关闭."""


class ChangeFeedChannel(ABC):
    """变更推送通道."""

    @property
    @abstractmethod
    def status(self) -> ConnectionStatus:
        """连接状态."""

    @abstractmethod
    async def open(self, user_id: str, on_event: EventHandler) -> None:
        """开始接收指定用户的变更."""

    @abstractmethod
    async def close(self) -> None:
        """关闭通道并释放资源."""


ChannelFactory = Callable[[], ChangeFeedChannel]


class RealtimeChannel(ChangeFeedChannel):
    """Supabase Realtime 通道."""

    def __init__(
        self,
        url: str,
        anon_key: str,
        access_token: str | None = None,
        table: str = "articles",
        heartbeat_seconds: float = 30.0,
        max_backoff_seconds: float = 60.0,
    ) -> None:
        self.url = url.rstrip("/")
        self.anon_key = anon_key
        self.access_token = access_token
        self.table = table
        self.heartbeat_seconds = heartbeat_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self._status: ConnectionStatus = "disconnected"
        self._task: asyncio.Task | None = None
        self._user_id: str | None = None
        self._on_event: EventHandler | None = None
        self._ref = 0

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    @property
    def socket_url(self) -> str:
        base = self.url.replace("https://", "wss://", 1).replace("http://", "ws://", 1)
        return f"{base}/realtime/v1/websocket?apikey={self.anon_key}&vsn=1.0.0"

    @property
    def topic(self) -> str:
        return f"realtime:{self.table}-{self._user_id}"

    async def open(self, user_id: str, on_event: EventHandler) -> None:
        if self._task is not None:
            await self.close()
        self._user_id = user_id
        self._on_event = on_event
        self._status = "connecting"
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def close(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._status = "disconnected"

    async def _run(self) -> None:
        """保持连接，断线后指数退避重连."""
        retrying = AsyncRetrying(
            retry=retry_if_exception_type((OSError, WebSocketException)),
            wait=wait_exponential(multiplier=1, min=1, max=self.max_backoff_seconds),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        logger.info(
                            f"实时推送重连中（第 {attempt.retry_state.attempt_number} 次）"
                        )
                    await self._session()
        except Exception:
            logger.exception("实时推送连接异常终止")
        finally:
            self._status = "disconnected"

    async def _session(self) -> None:
        self._status = "connecting"
        async with websockets.connect(self.socket_url) as ws:
            await ws.send(json.dumps(self._join_message()))
            heartbeat = asyncio.create_task(self._heartbeat(ws))
            try:
                async for raw in ws:
                    await self._handle_message(raw)
            finally:
                heartbeat.cancel()
                self._status = "disconnected"
        msg = "实时推送连接已关闭"
        raise ChannelClosedError(msg)

    async def _heartbeat(self, ws) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_seconds)
            await ws.send(
                json.dumps(
                    {"topic": "phoenix", "event": "heartbeat", "payload": {}, "ref": self._next_ref()}
                )
            )

    def _next_ref(self) -> str:
        self._ref += 1
        return str(self._ref)

    def _join_message(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "config": {
                "postgres_changes": [
                    {
                        "event": "*",
                        "schema": "public",
                        "table": self.table,
                        "filter": f"user_id=eq.{self._user_id}",
                    }
                ]
            }
        }
        if self.access_token:
            payload["access_token"] = self.access_token
        return {
            "topic": self.topic,
            "event": "phx_join",
            "payload": payload,
            "ref": self._next_ref(),
        }

    async def _handle_message(self, raw: str | bytes) -> None:
        try:
            message = json.loads(raw)
        except ValueError:
            logger.warning("无法解析实时推送消息")
            return

        event = message.get("event")
        payload = message.get("payload") or {}

        if event == "phx_reply" and message.get("topic") == self.topic:
            if payload.get("status") == "ok":
                if self._status != "connected":
                    logger.info(f"实时推送已订阅: {self.topic}")
                self._status = "connected"
            else:
                logger.warning(f"实时推送订阅失败: {payload.get('response')}")
            return

        if event == "phx_error":
            logger.warning(f"实时推送通道错误: {payload}")
            return

        if event != "postgres_changes" or self._on_event is None:
            return

        change = ChangeEvent.from_payload(payload)
        if change is None:
            return
        try:
            await self._on_event(change)
        except Exception:
            logger.exception(f"处理实时推送事件失败: {change.event_type}")


class ChangeFeedListener:
    """变更推送订阅管理，每个会话最多一个订阅."""

    def __init__(self, articles: ArticleStore, channel_factory: ChannelFactory) -> None:
        self.articles = articles
        self.channel_factory = channel_factory
        self.user_id: str | None = None
        self._channel: ChangeFeedChannel | None = None

    @property
    def is_subscribed(self) -> bool:
        return self._channel is not None

    async def subscribe(self, user_id: str) -> None:
        """订阅用户的文章变更；同一用户重复订阅无效果，切换用户时先退订旧的."""
        if self._channel is not None:
            if self.user_id == user_id:
                return
            await self.unsubscribe()

        channel = self.channel_factory()
        self._channel = channel
        self.user_id = user_id
        await channel.open(user_id, self.handle_event)
        logger.info(f"已订阅文章变更: {user_id}")

    async def unsubscribe(self) -> None:
        """退订并释放通道."""
        channel, self._channel = self._channel, None
        if channel is None:
            return
        await channel.close()
        logger.info(f"已退订文章变更: {self.user_id}")
        self.user_id = None

    def connection_status(self) -> ConnectionStatus:
        """当前连接状态."""
        if self._channel is None:
            return "disconnected"
        return self._channel.status

    async def handle_event(self, event: ChangeEvent) -> None:
        """把一条远端变更应用到文章状态."""
        if event.event_type == "DELETE":
            article_id = (event.old_record or {}).get("id")
            if article_id is None:
                return
            await self.articles.apply_remote_delete(str(article_id))
            return

        if not event.record:
            return
        try:
            article = Article.model_validate(event.record)
        except ValidationError as e:
            logger.warning(f"忽略无法解析的变更记录: {e}")
            return

        if self.user_id is not None and article.user_id != self.user_id:
            return
        await self.articles.apply_remote_upsert(article)
