"""同步相关模型：离线操作与同步记录."""

import secrets
import string
from datetime import datetime
from typing import Any, Literal

from sqlmodel import Field, SQLModel

from dolate.models.article import utcnow

OperationType = Literal["create", "update", "delete"]

_ID_ALPHABET = string.ascii_lowercase + string.digits


def generate_operation_id() -> str:
    """生成操作 ID，格式为 `<毫秒时间戳>_<9 位随机串>`."""
    millis = int(utcnow().timestamp() * 1000)
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f"{millis}_{suffix}"


class SyncOperation(SQLModel):
    """一条待同步的离线变更."""

    id: str = Field(default_factory=generate_operation_id)
    type: OperationType = Field(description="操作类型: create|update|delete")
    collection: str = Field(default="articles", description="目标数据表")
    data: dict[str, Any] = Field(
        default_factory=dict, description="create 为完整对象，update/delete 含 id"
    )
    user_id: str = Field(description="所属用户")
    timestamp: datetime = Field(default_factory=utcnow, description="入队时间")
    retry_count: int = Field(default=0, description="已失败次数")
    last_failure: datetime | None = Field(default=None, description="最近失败时间")

    @property
    def target_id(self) -> str:
        """操作针对的文章 ID."""
        return str(self.data.get("id", ""))

    def with_target(self, article_id: str) -> "SyncOperation":
        """替换目标文章 ID（临时 ID 被确认后使用）."""
        return self.model_copy(update={"data": {**self.data, "id": article_id}})


class SyncRun(SQLModel, table=True):
    """同步任务记录."""

    __tablename__ = "sync_runs"  # type: ignore[assignment]

    id: int | None = Field(default=None, primary_key=True)
    sync_type: str = Field(description="同步类型: drain|full")
    status: str = Field(description="状态: running|success|partial|failed")
    operations_synced: int = Field(default=0, description="成功推送的操作数")
    operations_failed: int = Field(default=0, description="失败的操作数")
    operations_discarded: int = Field(default=0, description="被丢弃的操作数")
    articles_fetched: int = Field(default=0, description="拉取的文章数")
    error_message: str | None = Field(default=None, description="错误信息")
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = Field(default=None)
