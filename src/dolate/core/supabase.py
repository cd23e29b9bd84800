"""Supabase PostgREST 客户端."""

import re
from dataclasses import dataclass
from typing import Any

import httpx

from dolate.core.gateway import (
    RejectedGatewayError,
    RemoteGateway,
    TransientGatewayError,
)
from dolate.models.article import Article, ArticlePatch, is_temporary_id, utcnow

# 需要重试的 HTTP 状态码
TRANSIENT_STATUS_CODES = {408, 425, 429}

# PostgREST 过滤语法中的保留字符
_FILTER_RESERVED = re.compile(r"[,()*]")


@dataclass
class SupabaseConfig:
    """Supabase 连接配置."""

    url: str
    anon_key: str
    timeout: float = 30.0
    page_size: int = 50


class SupabaseGateway(RemoteGateway):
    """基于 Supabase REST 接口的文章网关."""

    table = "articles"

    def __init__(
        self,
        config: SupabaseConfig,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.config = config
        self._access_token: str | None = None
        self._client = client or httpx.AsyncClient(timeout=config.timeout)

    @property
    def rest_url(self) -> str:
        """PostgREST 根地址."""
        return f"{self.config.url.rstrip('/')}/rest/v1"

    async def close(self) -> None:
        """关闭客户端."""
        await self._client.aclose()

    def set_access_token(self, token: str | None) -> None:
        """设置当前登录会话的访问令牌."""
        self._access_token = token

    def _get_headers(self) -> dict[str, str]:
        """获取带认证的请求头."""
        token = self._access_token or self.config.anon_key
        return {
            "apikey": self.config.anon_key,
            "Authorization": f"Bearer {token}",
            "Prefer": "return=representation",
        }

    async def _request(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        json: Any = None,
    ) -> httpx.Response:
        """发送请求并把失败归类为可重试/被拒绝两类."""
        url = f"{self.rest_url}/{self.table}"
        try:
            response = await self._client.request(
                method,
                url,
                params=params,
                json=json,
                headers=self._get_headers(),
            )
        except httpx.TimeoutException as e:
            msg = f"请求超时: {method} {url}"
            raise TransientGatewayError(msg) from e
        except httpx.TransportError as e:
            msg = f"网络错误: {e}"
            raise TransientGatewayError(msg) from e

        if response.status_code >= 500 or response.status_code in TRANSIENT_STATUS_CODES:
            msg = f"服务暂时不可用 ({response.status_code}): {response.text[:200]}"
            raise TransientGatewayError(msg)
        if response.status_code >= 400:
            msg = f"请求被拒绝 ({response.status_code}): {response.text[:200]}"
            raise RejectedGatewayError(msg)
        return response

    def _single(self, response: httpx.Response, action: str) -> Article:
        rows = response.json()
        if not rows:
            msg = f"{action}失败：文章不存在或无权限"
            raise RejectedGatewayError(msg)
        return Article.model_validate(rows[0])

    async def create(self, article: Article) -> Article:
        """创建文章，临时 ID 和 updated_at 交给服务端生成."""
        exclude = {"updated_at"}
        if is_temporary_id(article.id):
            exclude.add("id")
        payload = article.model_dump(mode="json", exclude=exclude)

        response = await self._request("POST", json=payload)
        return self._single(response, "创建")

    async def update(self, article_id: str, patch: ArticlePatch) -> Article:
        """局部更新文章，每次写入都会刷新 updated_at."""
        payload = {**patch.to_payload(), "updated_at": utcnow().isoformat()}
        params = {"id": f"eq.{article_id}", "select": "*"}

        response = await self._request("PATCH", params=params, json=payload)
        return self._single(response, "更新")

    async def delete(self, article_id: str) -> None:
        """删除文章."""
        await self._request("DELETE", params={"id": f"eq.{article_id}"})

    async def search(self, user_id: str, query: str) -> list[Article]:
        """按标题、摘要、域名模糊搜索."""
        term = _FILTER_RESERVED.sub(" ", query).strip()
        if not term:
            return await self.list(user_id)

        params = {
            "select": "*",
            "user_id": f"eq.{user_id}",
            "or": f"(title.ilike.*{term}*,description.ilike.*{term}*,domain.ilike.*{term}*)",
            "order": "created_at.desc",
        }
        response = await self._request("GET", params=params)
        return [Article.model_validate(row) for row in response.json()]

    async def ping(self) -> bool:
        """检查 REST 接口是否可达."""
        try:
            response = await self._client.get(
                f"{self.rest_url}/",
                headers=self._get_headers(),
            )
        except httpx.HTTPError:
            return False
        return response.status_code < 500

    # 放在类末尾：方法名 list 会遮蔽类体内后续注解中的内置 list
    async def list(self, user_id: str) -> list[Article]:
        """分页拉取用户的全部文章（按创建时间倒序）."""
        articles: list[Article] = []
        offset = 0
        while True:
            params = {
                "select": "*",
                "user_id": f"eq.{user_id}",
                "order": "created_at.desc",
                "limit": self.config.page_size,
                "offset": offset,
            }
            response = await self._request("GET", params=params)
            rows = response.json()
            articles.extend(Article.model_validate(row) for row in rows)
            if len(rows) < self.config.page_size:
                break
            offset += self.config.page_size
        return articles
