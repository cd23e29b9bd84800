"""远端数据网关抽象."""

from abc import ABC, abstractmethod

from dolate.models.article import Article, ArticlePatch


class GatewayError(Exception):
    """远端调用错误."""


class TransientGatewayError(GatewayError):
    """可重试的错误：超时、断网、服务端 5xx 或限流."""


class RejectedGatewayError(GatewayError):
    """被服务端拒绝的错误：参数校验、权限等，不重试."""


class RemoteGateway(ABC):
    """唯一允许访问远端数据存储的组件."""

    @abstractmethod
    async def create(self, article: Article) -> Article:
        """创建文章，返回服务端分配 ID 和时间戳后的文章."""
        ...

    @abstractmethod
    async def update(self, article_id: str, patch: ArticlePatch) -> Article:
        """局部更新文章，返回带新 updated_at 的文章."""
        ...

    @abstractmethod
    async def delete(self, article_id: str) -> None:
        """删除文章."""
        ...

    @abstractmethod
    async def search(self, user_id: str, query: str) -> list[Article]:
        """按标题、摘要、域名搜索用户的文章."""
        ...

    @abstractmethod
    async def ping(self) -> bool:
        """远端是否可达."""
        ...

    def set_access_token(self, token: str | None) -> None:
        """切换登录会话的访问令牌."""
        return None

    async def close(self) -> None:
        """释放连接资源."""
        return None

    # 放在类末尾：方法名 list 会遮蔽类体内后续注解中的内置 list
    @abstractmethod
    async def list(self, user_id: str) -> list[Article]:
        """获取用户的全部文章."""
        ...
