"""核心业务逻辑."""

from dolate.core.articles import ArticleNotFoundError, ArticleStore, NotSignedInError
from dolate.core.cache import LocalCache
from dolate.core.gateway import (
    GatewayError,
    RejectedGatewayError,
    RemoteGateway,
    TransientGatewayError,
)
from dolate.core.queue import OperationQueue
from dolate.core.ranking import ArticleFilter, ArticleRanker
from dolate.core.state import SyncState
from dolate.core.storage import KVStore
from dolate.core.supabase import SupabaseConfig, SupabaseGateway
from dolate.core.sync import ConflictRecord, DrainResult, SyncService

__all__ = [
    "ArticleFilter",
    "ArticleNotFoundError",
    "ArticleRanker",
    "ArticleStore",
    "ConflictRecord",
    "DrainResult",
    "GatewayError",
    "KVStore",
    "LocalCache",
    "NotSignedInError",
    "OperationQueue",
    "RejectedGatewayError",
    "RemoteGateway",
    "SupabaseConfig",
    "SupabaseGateway",
    "SyncService",
    "SyncState",
    "TransientGatewayError",
]
