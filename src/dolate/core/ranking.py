"""文章筛选与排序."""

from dataclasses import dataclass, field
from typing import Literal

from dolate.models.article import Article

SortOrder = Literal["newest", "oldest", "title", "unread_first"]


@dataclass
class ArticleFilter:
    """列表筛选条件."""

    search_query: str = ""
    selected_tags: list[str] = field(default_factory=list)
    unread_only: bool = False
    favorites_only: bool = False

    @property
    def is_active(self) -> bool:
        """是否设置了任何筛选条件."""
        return bool(
            self.search_query
            or self.selected_tags
            or self.unread_only
            or self.favorites_only
        )

    def matches(self, article: Article) -> bool:
        """文章是否满足筛选条件."""
        if self.search_query:
            query = self.search_query.lower()
            fields = [article.title, article.description, article.domain, article.author]
            if not any(value and query in value.lower() for value in fields):
                return False

        # 任一标签命中即可
        if self.selected_tags and not set(self.selected_tags) & set(article.tags):
            return False

        if self.unread_only and article.is_read:
            return False

        if self.favorites_only and not article.is_favorite:
            return False

        return True


class ArticleRanker:
    """文章排序器."""

    def rank(
        self,
        articles: list[Article],
        article_filter: ArticleFilter | None = None,
        sort_by: SortOrder = "newest",
        page: int = 1,
        limit: int | None = None,
    ) -> tuple[list[Article], int]:
        """
        筛选并排序文章.

        返回：(文章列表, 总数)
        """
        if article_filter is not None:
            articles = [a for a in articles if article_filter.matches(a)]
        total = len(articles)

        if sort_by == "newest":
            articles = sorted(articles, key=lambda a: a.created_at, reverse=True)
        elif sort_by == "oldest":
            articles = sorted(articles, key=lambda a: a.created_at)
        elif sort_by == "title":
            articles = sorted(articles, key=lambda a: a.title.lower())
        else:  # unread_first
            articles = sorted(
                sorted(articles, key=lambda a: a.created_at, reverse=True),
                key=lambda a: a.is_read,
            )

        if limit is not None:
            offset = (page - 1) * limit
            articles = articles[offset : offset + limit]

        return articles, total

    def tag_counts(self, articles: list[Article]) -> list[tuple[str, int]]:
        """统计标签出现次数，按数量倒序."""
        counts: dict[str, int] = {}
        for article in articles:
            for tag in article.tags:
                counts[tag] = counts.get(tag, 0) + 1
        return sorted(counts.items(), key=lambda x: x[1], reverse=True)
