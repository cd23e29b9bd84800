"""运行时装配 - 启动时组装全部同步组件并管理登录会话."""

import logging
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncEngine

from dolate.config import Settings
from dolate.core.articles import ArticleStore
from dolate.core.cache import LocalCache
from dolate.core.gateway import RemoteGateway
from dolate.core.network import HttpConnectivityProbe, NetworkMonitor
from dolate.core.preferences import SettingsStorage
from dolate.core.queue import OperationQueue
from dolate.core.realtime import (
    ChangeFeedChannel,
    ChangeFeedListener,
    ChannelFactory,
    RealtimeChannel,
)
from dolate.core.state import SyncState
from dolate.core.storage import KVStore
from dolate.core.supabase import SupabaseConfig, SupabaseGateway
from dolate.core.sync import SyncService
from dolate.models.article import Article
from dolate.models.database import init_db
from dolate.scheduler.tasks import BackgroundSync

logger = logging.getLogger(__name__)


@dataclass
class SyncRuntime:
    """一个进程内的全部同步组件."""

    settings: Settings
    engine: AsyncEngine
    store: KVStore
    state: SyncState
    cache: LocalCache
    queue: OperationQueue
    preferences: SettingsStorage
    gateway: RemoteGateway
    articles: ArticleStore
    sync: SyncService
    network: NetworkMonitor
    probe: HttpConnectivityProbe
    background: BackgroundSync
    change_feed: ChangeFeedListener | None = None
    access_token: str | None = None

    @property
    def user_id(self) -> str | None:
        return self.articles.user_id

    def realtime_channel(self) -> ChangeFeedChannel:
        """按当前会话令牌创建实时推送通道."""
        return RealtimeChannel(
            url=self.settings.supabase_url,
            anon_key=self.settings.supabase_anon_key,
            access_token=self.access_token,
            heartbeat_seconds=self.settings.realtime_heartbeat_seconds,
        )

    async def sign_in(self, user_id: str, access_token: str | None = None) -> list[Article]:
        """
        登录：先展示缓存，再订阅变更、启动后台任务，在线时执行全量同步.

        Returns:
            list[Article]: 登录完成后的文章列表
        """
        if self.user_id is not None and self.user_id != user_id:
            await self.sign_out()

        self.access_token = access_token
        self.gateway.set_access_token(access_token)

        await self.articles.load_from_cache(user_id)
        self.state.last_sync_time = await self.cache.get_last_sync_time(user_id)
        await self.queue.queue_size()

        self.network.start(self.probe)
        if self.change_feed is not None:
            await self.change_feed.subscribe(user_id)
        self.background.start()

        if self.state.is_online:
            await self.sync.full_sync(user_id)

        logger.info(f"用户已登录: {user_id}")
        return self.articles.articles

    async def sign_out(self) -> None:
        """退出登录：退订变更、停止后台任务并清除该用户的本地缓存."""
        user_id = self.user_id
        if self.change_feed is not None:
            await self.change_feed.unsubscribe()
        self.background.stop()
        self.network.stop()

        if user_id is not None:
            await self.cache.clear_for_user(user_id)
        await self.articles.clear()

        self.access_token = None
        self.gateway.set_access_token(None)
        self.state.last_sync_time = None
        logger.info(f"用户已退出: {user_id}")

    async def close(self) -> None:
        """释放全部资源（保留本地缓存）."""
        if self.change_feed is not None:
            await self.change_feed.unsubscribe()
        self.background.stop()
        self.network.stop()
        await self.network.wait_idle()
        await self.gateway.close()
        await self.engine.dispose()


async def build_runtime(
    settings: Settings,
    gateway: RemoteGateway | None = None,
    channel_factory: ChannelFactory | None = None,
) -> SyncRuntime:
    """初始化本地数据库并组装运行时."""
    engine, session_factory = await init_db(settings.database_url)
    store = KVStore(session_factory)
    state = SyncState()

    cache = LocalCache(store)
    queue = OperationQueue(store, state, max_retries=settings.sync_max_retries)
    preferences = SettingsStorage(store)

    if gateway is None:
        gateway = SupabaseGateway(
            SupabaseConfig(
                url=settings.supabase_url,
                anon_key=settings.supabase_anon_key,
                timeout=settings.request_timeout_seconds,
                page_size=settings.max_articles_per_sync,
            )
        )

    articles = ArticleStore(cache, queue, gateway, state, preferences)
    sync = SyncService(
        gateway,
        queue,
        articles,
        state,
        batch_size=settings.sync_batch_size,
        backoff_base_seconds=settings.sync_backoff_base_seconds,
        backoff_max_seconds=settings.sync_backoff_max_seconds,
        history_store=store,
    )
    network = NetworkMonitor(state, queue, sync)
    probe = HttpConnectivityProbe(gateway)
    background = BackgroundSync(
        sync,
        queue,
        state,
        preferences,
        probe=probe,
        interval_minutes=settings.sync_interval_minutes,
        connectivity_check_seconds=settings.connectivity_check_seconds,
    )

    runtime = SyncRuntime(
        settings=settings,
        engine=engine,
        store=store,
        state=state,
        cache=cache,
        queue=queue,
        preferences=preferences,
        gateway=gateway,
        articles=articles,
        sync=sync,
        network=network,
        probe=probe,
        background=background,
    )

    # 恢复上次退出时遗留的待同步数量
    await queue.queue_size()

    if settings.enable_realtime and (channel_factory or settings.supabase_url):
        runtime.change_feed = ChangeFeedListener(
            articles, channel_factory or runtime.realtime_channel
        )

    return runtime
