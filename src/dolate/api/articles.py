"""文章 API."""

from datetime import datetime
from typing import NoReturn

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from dolate.api.deps import get_runtime, require_user
from dolate.core.articles import ArticleNotFoundError, NotSignedInError
from dolate.core.gateway import RejectedGatewayError
from dolate.core.ranking import ArticleFilter, SortOrder
from dolate.core.runtime import SyncRuntime
from dolate.models.article import ArticlePatch

router = APIRouter(prefix="/api/articles", tags=["articles"])


class ArticleCreate(BaseModel):
    """新增文章请求."""

    url: str
    title: str
    content: str | None = None
    description: str | None = None
    image_url: str | None = None
    author: str | None = None
    published_at: datetime | None = None
    tags: list[str] = Field(default_factory=list)


def _raise_for(e: Exception) -> NoReturn:
    if isinstance(e, ArticleNotFoundError):
        raise HTTPException(status_code=404, detail="文章不存在") from e
    if isinstance(e, NotSignedInError):
        raise HTTPException(status_code=401, detail="未登录") from e
    if isinstance(e, RejectedGatewayError):
        raise HTTPException(status_code=422, detail=str(e)) from e
    raise e


@router.get("")
async def list_articles(
    sort: SortOrder = Query("newest", description="排序方式"),
    search: str = Query("", description="搜索关键词"),
    tag: list[str] | None = Query(None, description="按标签筛选（任一命中）"),
    unread_only: bool = Query(False, description="只看未读"),
    favorites_only: bool = Query(False, description="只看收藏"),
    page: int = Query(1, ge=1, description="页码"),
    limit: int = Query(20, ge=1, le=100, description="每页数量"),
    runtime: SyncRuntime = Depends(get_runtime),
) -> dict:
    """获取文章列表（本地数据，离线可用）."""
    require_user(runtime)
    article_filter = ArticleFilter(
        search_query=search,
        selected_tags=tag or [],
        unread_only=unread_only,
        favorites_only=favorites_only,
    )
    articles, total = runtime.articles.get_filtered_articles(
        sort_by=sort,
        page=page,
        limit=limit,
        article_filter=article_filter,
    )

    return {
        "total": total,
        "page": page,
        "limit": limit,
        "items": [article.model_dump(mode="json") for article in articles],
    }


@router.get("/tags")
async def get_all_tags(
    runtime: SyncRuntime = Depends(get_runtime),
) -> dict:
    """获取所有标签及其数量."""
    require_user(runtime)
    return {
        "tags": [
            {"name": name, "count": count}
            for name, count in runtime.articles.get_tags()
        ],
    }


@router.get("/search")
async def search_articles(
    q: str = Query(..., min_length=1, description="搜索关键词"),
    runtime: SyncRuntime = Depends(get_runtime),
) -> dict:
    """搜索文章（在线查远端，离线查本地）."""
    require_user(runtime)
    articles = await runtime.articles.search(q)
    return {
        "total": len(articles),
        "items": [article.model_dump(mode="json") for article in articles],
    }


@router.post("")
async def add_article(
    body: ArticleCreate,
    runtime: SyncRuntime = Depends(get_runtime),
) -> dict:
    """新增文章."""
    try:
        article = await runtime.articles.add_article(**body.model_dump())
    except (NotSignedInError, RejectedGatewayError) as e:
        _raise_for(e)
    return article.model_dump(mode="json")


@router.get("/{article_id}")
async def get_article(
    article_id: str,
    runtime: SyncRuntime = Depends(get_runtime),
) -> dict:
    """获取文章详情."""
    article = runtime.articles.get(article_id)
    if article is None:
        raise HTTPException(status_code=404, detail="文章不存在")
    return article.model_dump(mode="json")


@router.patch("/{article_id}")
async def update_article(
    article_id: str,
    patch: ArticlePatch,
    runtime: SyncRuntime = Depends(get_runtime),
) -> dict:
    """局部更新文章."""
    try:
        article = await runtime.articles.update_article(article_id, patch)
    except (ArticleNotFoundError, RejectedGatewayError) as e:
        _raise_for(e)
    return article.model_dump(mode="json")


@router.post("/{article_id}/read")
async def mark_read(
    article_id: str,
    read: bool = Query(True, description="是否已读"),
    runtime: SyncRuntime = Depends(get_runtime),
) -> dict:
    """标记文章已读/未读."""
    try:
        article = await runtime.articles.mark_as_read(article_id, read)
    except (ArticleNotFoundError, RejectedGatewayError) as e:
        _raise_for(e)
    return {"id": article.id, "is_read": article.is_read}


@router.post("/{article_id}/favorite")
async def toggle_favorite(
    article_id: str,
    runtime: SyncRuntime = Depends(get_runtime),
) -> dict:
    """切换收藏状态."""
    try:
        article = await runtime.articles.toggle_favorite(article_id)
    except (ArticleNotFoundError, RejectedGatewayError) as e:
        _raise_for(e)
    return {"id": article.id, "is_favorite": article.is_favorite}


@router.delete("/{article_id}")
async def delete_article(
    article_id: str,
    runtime: SyncRuntime = Depends(get_runtime),
) -> dict:
    """删除文章."""
    try:
        await runtime.articles.remove_article(article_id)
    except (ArticleNotFoundError, RejectedGatewayError) as e:
        _raise_for(e)
    return {"id": article_id, "deleted": True}
