"""本地键值存储模型."""

from datetime import datetime

from sqlmodel import Field, SQLModel

from dolate.models.article import utcnow


class KVEntry(SQLModel, table=True):
    """按命名空间划分的键值条目."""

    __tablename__ = "kv_entries"  # type: ignore[assignment]

    namespace: str = Field(primary_key=True, description="命名空间")
    key: str = Field(primary_key=True, description="键")
    owner: str | None = Field(default=None, index=True, description="所属用户")
    value: str = Field(description="JSON 序列化的值")
    updated_at: datetime = Field(default_factory=utcnow)
