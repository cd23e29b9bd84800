"""应用配置管理."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """应用配置（环境变量）."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Supabase 配置
    supabase_url: str = ""
    supabase_anon_key: str = ""

    # 本地存储
    database_url: str = "sqlite+aiosqlite:///./dolate.db"

    # 功能开关
    enable_realtime: bool = True

    # 同步配置
    sync_interval_minutes: int = 5
    sync_batch_size: int = 5
    sync_max_retries: int = 3
    sync_backoff_base_seconds: float = 30.0
    sync_backoff_max_seconds: float = 1800.0
    max_articles_per_sync: int = 50

    # 网络配置
    connectivity_check_seconds: int = 15
    request_timeout_seconds: float = 30.0
    realtime_heartbeat_seconds: float = 30.0


@lru_cache
def get_settings() -> Settings:
    """获取应用配置（带缓存）."""
    return Settings()
