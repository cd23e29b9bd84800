"""数据模型."""

from dolate.models.app_settings import AppSettings
from dolate.models.article import (
    Article,
    ArticlePatch,
    is_temporary_id,
    new_temporary_id,
)
from dolate.models.database import init_db
from dolate.models.kv import KVEntry
from dolate.models.sync import SyncOperation, SyncRun

__all__ = [
    "AppSettings",
    "Article",
    "ArticlePatch",
    "KVEntry",
    "SyncOperation",
    "SyncRun",
    "init_db",
    "is_temporary_id",
    "new_temporary_id",
]
