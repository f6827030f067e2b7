"""Article sharing and public discovery."""

import secrets
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from feed_crawler.config import get_config
from feed_crawler.models.schemas import Article
from feed_crawler.storage import database

SHARE_TOKEN_BYTES = 16
DEFAULT_PAGE_SIZE = 20


@dataclass
class ArticlePage:
    """One page of a keyset-paginated listing."""

    articles: List[Article]
    next_cursor: Optional[str]
    sources: List[str] = field(default_factory=list)

    @property
    def has_more(self) -> bool:
        return self.next_cursor is not None


def new_share_token() -> str:
    return secrets.token_urlsafe(SHARE_TOKEN_BYTES)


async def share(owner_id: str, article_id: int) -> Optional[str]:
    """Share an article and return its token.

    Idempotent: an article that already has a token keeps it.

    Returns:
        The share token, or None if the account has no such article
    """
    return await database.set_share_id(article_id, owner_id, new_share_token())


async def unshare(owner_id: str, article_id: int) -> bool:
    return await database.unshare_article(article_id, owner_id)


async def get_shared(share_id: str) -> Optional[Tuple[Article, str]]:
    """Fetch a shared article by token, without authentication."""
    if not share_id:
        return None
    return await database.get_shared_article(share_id)


def clean_search(term: Optional[str], max_length: Optional[int] = None) -> Optional[str]:
    if not term:
        return None
    max_length = max_length or get_config().search_max_length
    term = term.strip()[:max_length]
    return term or None


async def discover(
    search: Optional[str] = None,
    source_url: Optional[str] = None,
    cursor: Optional[str] = None,
    page_size: int = DEFAULT_PAGE_SIZE,
) -> ArticlePage:
    """Public listing of articles across all accounts, newest first.

    The first page (no cursor) also lists the feed URLs available as filters.

    Raises:
        ValueError: If the cursor is malformed
    """
    articles, next_cursor = await database.list_articles(
        source_url=source_url or None,
        search=clean_search(search),
        cursor=cursor or None,
        limit=page_size,
    )
    sources = await database.list_discovery_sources() if not cursor else []
    return ArticlePage(articles=articles, next_cursor=next_cursor, sources=sources)


async def list_for_owner(
    owner_id: str,
    source_id: Optional[int] = None,
    search: Optional[str] = None,
    cursor: Optional[str] = None,
    page_size: int = DEFAULT_PAGE_SIZE,
) -> ArticlePage:
    """An account's own articles, newest first.

    Raises:
        ValueError: If the cursor is malformed
    """
    articles, next_cursor = await database.list_articles(
        owner_id=owner_id,
        source_id=source_id,
        search=clean_search(search),
        cursor=cursor or None,
        limit=page_size,
    )
    return ArticlePage(articles=articles, next_cursor=next_cursor)
