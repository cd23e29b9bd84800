"""测试后台定时任务."""

from unittest.mock import AsyncMock, MagicMock

from dolate.core.network import HttpConnectivityProbe
from dolate.core.preferences import SettingsStorage
from dolate.core.queue import OperationQueue
from dolate.core.state import SyncState
from dolate.core.sync import DrainResult
from dolate.scheduler.tasks import CONNECTIVITY_JOB_ID, DRAIN_JOB_ID, BackgroundSync

USER_ID = "user-1"


def _background(
    state: SyncState,
    queue: OperationQueue,
    preferences: SettingsStorage,
    probe: HttpConnectivityProbe | None = None,
) -> tuple[BackgroundSync, MagicMock]:
    sync = MagicMock()
    sync.drain_queue = AsyncMock(return_value=DrainResult(synced=1))
    return BackgroundSync(sync, queue, state, preferences, probe=probe), sync


class TestRunDrain:
    """测试定时推送的前置条件."""

    async def test_drains_when_pending(
        self, state: SyncState, queue: OperationQueue, preferences: SettingsStorage
    ) -> None:
        """在线、空闲、有待同步变更时推送."""
        await queue.enqueue("delete", {"id": "a1"}, USER_ID)
        background, sync = _background(state, queue, preferences)

        result = await background.run_drain()

        assert result is not None
        sync.drain_queue.assert_awaited_once_with()

    async def test_skips_when_offline(
        self, state: SyncState, queue: OperationQueue, preferences: SettingsStorage
    ) -> None:
        """离线时跳过."""
        await queue.enqueue("delete", {"id": "a1"}, USER_ID)
        background, sync = _background(state, queue, preferences)
        state.is_online = False

        assert await background.run_drain() is None
        sync.drain_queue.assert_not_awaited()

    async def test_skips_when_sync_running(
        self, state: SyncState, queue: OperationQueue, preferences: SettingsStorage
    ) -> None:
        """已有同步在运行时跳过."""
        await queue.enqueue("delete", {"id": "a1"}, USER_ID)
        background, sync = _background(state, queue, preferences)
        state.sync_in_progress = True

        assert await background.run_drain() is None
        sync.drain_queue.assert_not_awaited()

    async def test_skips_when_auto_sync_disabled(
        self, state: SyncState, queue: OperationQueue, preferences: SettingsStorage
    ) -> None:
        """关闭自动同步时跳过."""
        await queue.enqueue("delete", {"id": "a1"}, USER_ID)
        await preferences.update_settings(auto_sync=False)
        background, sync = _background(state, queue, preferences)

        assert await background.run_drain() is None
        sync.drain_queue.assert_not_awaited()

    async def test_skips_when_queue_empty(
        self, state: SyncState, queue: OperationQueue, preferences: SettingsStorage
    ) -> None:
        """队列为空时跳过."""
        background, sync = _background(state, queue, preferences)

        assert await background.run_drain() is None
        sync.drain_queue.assert_not_awaited()


class TestScheduler:
    """测试调度器生命周期."""

    async def test_start_registers_jobs(
        self,
        state: SyncState,
        queue: OperationQueue,
        preferences: SettingsStorage,
        gateway,
    ) -> None:
        """启动后注册推送与探测两个任务，重复启动不会重复注册."""
        background, _ = _background(state, queue, preferences, HttpConnectivityProbe(gateway))

        background.start()
        background.start()
        try:
            job_ids = {job.id for job in background._scheduler.get_jobs()}
            assert job_ids == {DRAIN_JOB_ID, CONNECTIVITY_JOB_ID}
            assert background.is_running is True
        finally:
            background.stop()

        assert background.is_running is False

    async def test_stop_without_start(
        self, state: SyncState, queue: OperationQueue, preferences: SettingsStorage
    ) -> None:
        """未启动时 stop 无效果."""
        background, _ = _background(state, queue, preferences)
        background.stop()
        assert background.is_running is False

    async def test_check_connectivity_updates_probe(
        self,
        state: SyncState,
        queue: OperationQueue,
        preferences: SettingsStorage,
        gateway,
    ) -> None:
        """探测任务把连通性变化通知给监听器."""
        probe = HttpConnectivityProbe(gateway)
        seen: list[bool] = []
        probe.add_listener(seen.append)
        background, _ = _background(state, queue, preferences, probe)
        gateway.online = False

        await background.check_connectivity()

        assert seen == [False]
