"""应用偏好设置存储."""

import logging
from typing import Any

from dolate.core.storage import KVStore
from dolate.models.app_settings import AppSettings

logger = logging.getLogger(__name__)

SETTINGS_NAMESPACE = "settings"
SETTINGS_KEY = "app"


class SettingsStorage:
    """读写本地偏好设置，读取结果缓存在内存中."""

    def __init__(self, store: KVStore) -> None:
        self.store = store
        self._cached: AppSettings | None = None

    async def get_settings(self) -> AppSettings:
        """获取当前设置，未保存过时返回默认值."""
        if self._cached is None:
            raw = await self.store.get(SETTINGS_NAMESPACE, SETTINGS_KEY, {})
            try:
                self._cached = AppSettings.model_validate(raw)
            except ValueError as e:
                logger.warning(f"偏好设置已损坏，使用默认值: {e}")
                self._cached = AppSettings()
        return self._cached

    async def update_settings(self, **changes: Any) -> AppSettings:
        """合并更新设置."""
        current = await self.get_settings()
        updated = AppSettings.model_validate({**current.model_dump(), **changes})
        self._cached = updated
        await self.store.set(SETTINGS_NAMESPACE, SETTINGS_KEY, updated.model_dump())
        return updated

    async def reset_settings(self) -> AppSettings:
        """恢复默认设置."""
        self._cached = AppSettings()
        await self.store.delete(SETTINGS_NAMESPACE, SETTINGS_KEY)
        return self._cached
