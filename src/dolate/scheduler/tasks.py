"""定时任务定义."""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from dolate.core.network import HttpConnectivityProbe
from dolate.core.preferences import SettingsStorage
from dolate.core.queue import OperationQueue
from dolate.core.state import SyncState
from dolate.core.sync import DrainResult, SyncService

logger = logging.getLogger(__name__)

DRAIN_JOB_ID = "drain_queue_task"
CONNECTIVITY_JOB_ID = "connectivity_task"


class BackgroundSync:
    """后台同步：定期推送离线队列并探测连通性.

    定时任务只推送离线队列，从不触发全量同步。
    """

    def __init__(
        self,
        sync: SyncService,
        queue: OperationQueue,
        state: SyncState,
        preferences: SettingsStorage | None = None,
        probe: HttpConnectivityProbe | None = None,
        interval_minutes: int = 5,
        connectivity_check_seconds: int = 15,
    ) -> None:
        self.sync = sync
        self.queue = queue
        self.state = state
        self.preferences = preferences
        self.probe = probe
        self.interval_minutes = interval_minutes
        self.connectivity_check_seconds = connectivity_check_seconds
        self._scheduler: AsyncIOScheduler | None = None

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self) -> None:
        """启动调度器并注册任务（重复调用会替换已有任务）."""
        if self._scheduler is None:
            self._scheduler = AsyncIOScheduler()

        self._scheduler.add_job(
            self.run_drain,
            "interval",
            minutes=self.interval_minutes,
            id=DRAIN_JOB_ID,
            name="离线队列推送",
            replace_existing=True,
        )

        if self.probe is not None:
            self._scheduler.add_job(
                self.check_connectivity,
                "interval",
                seconds=self.connectivity_check_seconds,
                id=CONNECTIVITY_JOB_ID,
                name="连通性探测",
                replace_existing=True,
            )

        if not self._scheduler.running:
            self._scheduler.start()
            logger.info(f"后台同步已启动，推送间隔: {self.interval_minutes} 分钟")

    def stop(self) -> None:
        """停止调度器（未启动时无效果）."""
        if self._scheduler is None:
            return
        if self._scheduler.running:
            self._scheduler.remove_all_jobs()
            self._scheduler.shutdown(wait=False)
            logger.info("后台同步已停止")
        self._scheduler = None

    async def run_drain(self) -> DrainResult | None:
        """定时推送：在线、空闲、开启自动同步且队列非空时才执行."""
        if not self.state.is_online:
            logger.debug("离线中，跳过定时推送")
            return None

        if self.state.sync_in_progress:
            logger.info("已有同步在运行，跳过本次调度")
            return None

        if self.preferences is not None:
            settings = await self.preferences.get_settings()
            if not settings.auto_sync:
                logger.debug("自动同步已关闭，跳过定时推送")
                return None

        if await self.queue.queue_size() == 0:
            return None

        result = await self.sync.drain_queue()
        logger.info(
            f"定时推送完成: 成功={result.synced}, 失败={result.failed}, "
            f"拒绝={result.rejected}, 暂缓={result.deferred}"
        )
        return result

    async def check_connectivity(self) -> None:
        """探测一次连通性."""
        if self.probe is None:
            return
        try:
            await self.probe.check()
        except Exception:
            logger.exception("连通性探测失败")
