"""网络状态监听 - 离线转在线时自动推送离线队列."""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable

from dolate.core.gateway import RemoteGateway
from dolate.core.queue import OperationQueue
from dolate.core.state import SyncState
from dolate.core.sync import SyncService

logger = logging.getLogger(__name__)

ConnectivityListener = Callable[[bool], None]


class ConnectivitySource(ABC):
    """连通性来源."""

    @abstractmethod
    def add_listener(self, listener: ConnectivityListener) -> Callable[[], None]:
        """注册监听器，返回取消注册的函数."""


class HttpConnectivityProbe(ConnectivitySource):
    """通过探测远端判断连通性，只在状态变化时通知."""

    def __init__(self, gateway: RemoteGateway, initial: bool = True) -> None:
        self.gateway = gateway
        self.is_connected = initial
        self._listeners: list[ConnectivityListener] = []

    def add_listener(self, listener: ConnectivityListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    async def check(self) -> bool:
        """探测一次远端，状态变化时通知监听器."""
        is_connected = await self.gateway.ping()
        if is_connected != self.is_connected:
            self.is_connected = is_connected
            logger.info(f"网络状态变化: {'在线' if is_connected else '离线'}")
            for listener in list(self._listeners):
                listener(is_connected)
        return is_connected


class NetworkMonitor:
    """网络监听器."""

    def __init__(
        self,
        state: SyncState,
        queue: OperationQueue,
        sync: SyncService,
    ) -> None:
        self.state = state
        self.queue = queue
        self.sync = sync
        self._unsubscribe: Callable[[], None] | None = None
        self._drain_task: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()

    @property
    def is_started(self) -> bool:
        return self._unsubscribe is not None

    def start(self, source: ConnectivitySource) -> None:
        """开始监听（重复调用无效果）."""
        if self._unsubscribe is not None:
            return
        self._unsubscribe = source.add_listener(self.handle_change)
        logger.info("网络监听已启动")

    def stop(self) -> None:
        """停止监听."""
        if self._unsubscribe is None:
            return
        self._unsubscribe()
        self._unsubscribe = None
        logger.info("网络监听已停止")

    def handle_change(self, is_connected: bool) -> None:
        """处理连通性变化."""
        was_online = self.state.is_online
        self.state.is_online = is_connected

        if is_connected and not was_online:
            logger.info("网络已恢复")
            self._spawn(self._drain_if_pending())

    async def _drain_if_pending(self) -> None:
        pending = await self.queue.queue_size()
        if pending == 0:
            return
        # 同一次恢复只触发一次推送，推送本身也是单飞的
        if self._drain_task is not None and not self._drain_task.done():
            return
        logger.info(f"网络恢复后推送 {pending} 个离线变更")
        self._drain_task = asyncio.current_task()
        await self.sync.drain_queue()

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def wait_idle(self) -> None:
        """等待已触发的后台任务完成."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
