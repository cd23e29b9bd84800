"""登录会话 API."""

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from dolate.api.deps import get_runtime
from dolate.core.runtime import SyncRuntime

router = APIRouter(prefix="/api/session", tags=["session"])


class SessionRequest(BaseModel):
    """登录请求."""

    user_id: str
    access_token: str | None = None


@router.get("")
async def get_session_info(
    runtime: SyncRuntime = Depends(get_runtime),
) -> dict:
    """当前登录状态."""
    return {
        "user_id": runtime.user_id,
        "signed_in": runtime.user_id is not None,
        "realtime": (
            runtime.change_feed.connection_status() if runtime.change_feed else "disconnected"
        ),
    }


@router.post("")
async def sign_in(
    body: SessionRequest,
    runtime: SyncRuntime = Depends(get_runtime),
) -> dict:
    """登录：加载缓存、订阅实时变更，在线时执行全量同步."""
    articles = await runtime.sign_in(body.user_id, body.access_token)
    last_sync_time = runtime.state.last_sync_time
    return {
        "user_id": body.user_id,
        "articles": len(articles),
        "pending_changes": runtime.state.pending_changes,
        "last_sync_time": last_sync_time.isoformat() if last_sync_time else None,
    }


@router.delete("")
async def sign_out(
    runtime: SyncRuntime = Depends(get_runtime),
) -> dict:
    """退出登录并清除本地缓存."""
    await runtime.sign_out()
    return {"signed_in": False}
