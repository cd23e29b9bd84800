"""API 依赖."""

from fastapi import HTTPException, Request

from dolate.core.runtime import SyncRuntime


def get_runtime(request: Request) -> SyncRuntime:
    """获取应用启动时组装的运行时."""
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=503, detail="服务尚未就绪")
    return runtime


def require_user(runtime: SyncRuntime) -> str:
    """要求已登录，返回当前用户 ID."""
    if runtime.user_id is None:
        raise HTTPException(status_code=401, detail="未登录")
    return runtime.user_id
