"""进程内同步状态（不持久化）."""

from dataclasses import dataclass
from datetime import datetime


@dataclass
class SyncState:
    """同步状态."""

    is_online: bool = True
    sync_in_progress: bool = False
    last_sync_time: datetime | None = None
    pending_changes: int = 0  # 恒等于离线队列 + 失败队列长度
