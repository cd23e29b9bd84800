"""应用偏好设置模型."""

from sqlmodel import Field, SQLModel


class AppSettings(SQLModel):
    """用户可调整的同步偏好（存储在本地键值库中）."""

    auto_sync: bool = Field(default=True, description="是否启用后台定时同步")
    offline_mode: bool = Field(default=False, description="强制所有变更进入离线队列")
