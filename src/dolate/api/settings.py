"""设置 API."""

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from dolate.api.deps import get_runtime
from dolate.core.runtime import SyncRuntime
from dolate.models.app_settings import AppSettings

router = APIRouter(prefix="/api/settings", tags=["settings"])


class SettingsUpdate(BaseModel):
    """设置更新请求."""

    auto_sync: bool | None = None
    offline_mode: bool | None = None


@router.get("")
async def get_current_settings(
    runtime: SyncRuntime = Depends(get_runtime),
) -> AppSettings:
    """获取当前设置."""
    return await runtime.preferences.get_settings()


@router.patch("")
async def update_settings(
    body: SettingsUpdate,
    runtime: SyncRuntime = Depends(get_runtime),
) -> AppSettings:
    """更新设置（只修改提供的字段）."""
    changes = body.model_dump(exclude_none=True)
    return await runtime.preferences.update_settings(**changes)


@router.delete("")
async def reset_settings(
    runtime: SyncRuntime = Depends(get_runtime),
) -> AppSettings:
    """恢复默认设置."""
    return await runtime.preferences.reset_settings()
