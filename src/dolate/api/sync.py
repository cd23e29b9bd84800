"""同步 API."""

from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, Query

from dolate.api.deps import get_runtime, require_user
from dolate.core.runtime import SyncRuntime
from dolate.core.sync import DrainResult

router = APIRouter(prefix="/api/sync", tags=["sync"])


def _drain_response(result: DrainResult) -> dict:
    data = asdict(result)
    data["started_at"] = result.started_at.isoformat()
    data["success"] = result.success
    return data


@router.post("/drain")
async def drain_queue(
    force: bool = Query(False, description="忽略退避时间立即重试"),
    runtime: SyncRuntime = Depends(get_runtime),
) -> dict:
    """推送离线队列."""
    require_user(runtime)
    if not runtime.state.is_online:
        raise HTTPException(status_code=409, detail="当前处于离线状态")
    result = await runtime.sync.drain_queue(force=force)
    return _drain_response(result)


@router.post("/full")
async def full_sync(
    runtime: SyncRuntime = Depends(get_runtime),
) -> dict:
    """全量同步：推送离线队列后拉取远端全部文章."""
    user_id = require_user(runtime)
    success = await runtime.sync.full_sync(user_id)
    last_sync_time = runtime.state.last_sync_time
    return {
        "success": success,
        "articles": len(runtime.articles.articles),
        "pending_changes": runtime.state.pending_changes,
        "last_sync_time": last_sync_time.isoformat() if last_sync_time else None,
    }


@router.post("/articles/{article_id}")
async def sync_article(
    article_id: str,
    runtime: SyncRuntime = Depends(get_runtime),
) -> dict:
    """只推送单篇文章的离线变更."""
    require_user(runtime)
    success = await runtime.sync.sync_single_article(article_id)
    return {"id": article_id, "success": success}


@router.get("/status")
async def get_sync_status(
    runtime: SyncRuntime = Depends(get_runtime),
) -> dict:
    """获取同步状态与最近同步记录."""
    state = runtime.state
    failed = await runtime.queue.get_failed_queue()
    runs = await runtime.sync.get_recent_runs(limit=5)
    connection_status = (
        runtime.change_feed.connection_status() if runtime.change_feed else "disconnected"
    )

    return {
        "is_online": state.is_online,
        "sync_in_progress": state.sync_in_progress,
        "last_sync_time": state.last_sync_time.isoformat() if state.last_sync_time else None,
        "pending_changes": state.pending_changes,
        "failed_changes": len(failed),
        "realtime": connection_status,
        "recent_runs": [
            {
                "id": run.id,
                "sync_type": run.sync_type,
                "status": run.status,
                "operations_synced": run.operations_synced,
                "operations_failed": run.operations_failed,
                "operations_discarded": run.operations_discarded,
                "articles_fetched": run.articles_fetched,
                "error_message": run.error_message,
                "started_at": run.started_at.isoformat(),
                "completed_at": run.completed_at.isoformat() if run.completed_at else None,
            }
            for run in runs
        ],
    }


@router.get("/conflicts")
async def get_conflicts(
    runtime: SyncRuntime = Depends(get_runtime),
) -> dict:
    """检查本地与远端不一致的文章（只读）."""
    user_id = require_user(runtime)
    conflicts = await runtime.sync.check_conflicts(user_id)
    return {
        "total": len(conflicts),
        "items": [
            {
                "article_id": c.article_id,
                "conflict_type": c.conflict_type,
                "local_version": c.local_version.model_dump(mode="json"),
                "server_version": c.server_version.model_dump(mode="json"),
            }
            for c in conflicts
        ],
    }


@router.get("/failed")
async def get_failed_operations(
    runtime: SyncRuntime = Depends(get_runtime),
) -> dict:
    """获取推送失败、等待重试的操作."""
    failed = await runtime.queue.get_failed_queue()
    return {
        "total": len(failed),
        "items": [op.model_dump(mode="json") for op in failed],
    }


@router.post("/failed/retry")
async def retry_failed(
    runtime: SyncRuntime = Depends(get_runtime),
) -> dict:
    """把失败操作移回主队列并立即推送."""
    moved = await runtime.queue.retry_failed()
    if not runtime.state.is_online:
        return {"moved": moved, "drain": None}
    result = await runtime.sync.drain_queue(force=True)
    return {"moved": moved, "drain": _drain_response(result)}


@router.delete("/failed")
async def clear_failed(
    runtime: SyncRuntime = Depends(get_runtime),
) -> dict:
    """丢弃全部失败操作."""
    discarded = await runtime.queue.clear_failed()
    return {"discarded": discarded}
