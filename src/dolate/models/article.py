"""Article 文章模型."""

import math
import re
import uuid
from datetime import UTC, datetime
from typing import Any
from urllib.parse import urlparse

from pydantic import field_validator, model_validator
from sqlmodel import Field, SQLModel

TEMP_ID_PREFIX = "local-"
WORDS_PER_MINUTE = 200


def utcnow() -> datetime:
    """当前 UTC 时间（带时区）."""
    return datetime.now(UTC)


def new_temporary_id() -> str:
    """生成乐观插入使用的临时 ID."""
    return f"{TEMP_ID_PREFIX}{uuid.uuid4().hex}"


def is_temporary_id(article_id: str) -> bool:
    """是否为尚未被服务端确认的临时 ID."""
    return article_id.startswith(TEMP_ID_PREFIX)


def extract_domain(url: str) -> str:
    """从 URL 中提取域名（去掉 www. 前缀）."""
    host = urlparse(url).hostname or ""
    return host.removeprefix("www.")


def estimate_reading_time(text: str | None) -> int | None:
    """按每分钟 200 词估算阅读时长（分钟）."""
    if not text:
        return None
    words = len(re.findall(r"\S+", text))
    return max(1, math.ceil(words / WORDS_PER_MINUTE))


def _as_utc(value: datetime | None) -> datetime | None:
    # 无时区的时间按 UTC 处理，避免与服务端时间比较时报错
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _normalize_tags(tags: list[str] | None) -> list[str] | None:
    if tags is None:
        return None
    seen: dict[str, None] = {}
    for tag in tags:
        tag = tag.strip()
        if tag:
            seen[tag] = None
    return list(seen)


class Article(SQLModel):
    """稍后阅读的文章."""

    id: str = Field(description="服务端分配的 ID，乐观插入时为临时 ID")
    title: str = Field(description="标题")
    url: str = Field(description="原文链接")
    content: str | None = Field(default=None, description="提取的正文")
    description: str | None = Field(default=None, description="摘要")
    image_url: str | None = Field(default=None, description="封面图")
    author: str | None = Field(default=None, description="作者")
    published_at: datetime | None = Field(default=None, description="发布时间")
    domain: str = Field(default="", description="来源域名")
    is_read: bool = Field(default=False, description="是否已读")
    is_favorite: bool = Field(default=False, description="是否收藏")
    tags: list[str] = Field(default_factory=list, description="标签")
    reading_time: int | None = Field(default=None, description="预计阅读分钟数")
    user_id: str = Field(description="所属用户")
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("created_at", "updated_at", "published_at")
    @classmethod
    def _ensure_timezone(cls, value: datetime | None) -> datetime | None:
        return _as_utc(value)

    @field_validator("tags")
    @classmethod
    def _dedupe_tags(cls, value: list[str]) -> list[str]:
        return _normalize_tags(value) or []

    @model_validator(mode="after")
    def _derive_domain(self) -> "Article":
        if not self.domain and self.url:
            self.domain = extract_domain(self.url)
        return self

    def to_record(self) -> dict[str, Any]:
        """序列化为可持久化的 JSON 字典."""
        return self.model_dump(mode="json")


class ArticlePatch(SQLModel):
    """文章的局部更新."""

    title: str | None = None
    content: str | None = None
    description: str | None = None
    image_url: str | None = None
    author: str | None = None
    published_at: datetime | None = None
    is_read: bool | None = None
    is_favorite: bool | None = None
    tags: list[str] | None = None
    reading_time: int | None = None

    @field_validator("published_at")
    @classmethod
    def _ensure_timezone(cls, value: datetime | None) -> datetime | None:
        return _as_utc(value)

    @field_validator("tags")
    @classmethod
    def _dedupe_tags(cls, value: list[str] | None) -> list[str] | None:
        return _normalize_tags(value)

    def to_payload(self) -> dict[str, Any]:
        """只包含显式设置过的字段."""
        return self.model_dump(mode="json", exclude_unset=True)

    def is_empty(self) -> bool:
        """没有任何字段需要更新."""
        return not self.model_fields_set

    def apply_to(self, article: Article, updated_at: datetime | None = None) -> Article:
        """生成应用本次更新后的新文章对象."""
        changes: dict[str, Any] = self.model_dump(exclude_unset=True)
        if "content" in changes and "reading_time" not in changes:
            changes["reading_time"] = estimate_reading_time(changes["content"])
        if updated_at is not None:
            changes["updated_at"] = updated_at
        return article.model_copy(update=changes)
