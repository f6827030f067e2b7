"""Feed crawler MCP tools.

This module exposes crawler settings, feed sources, manual crawls, articles,
sharing, public discovery and push subscriptions as MCP tools.

Tools that act on an account take ``owner_id``; authentication happens in
front of this server. Public tools (discovery, shared articles) take none.

NOTE: Never use Optional parameters in MCP tools - they break MCP clients.
Use empty string "" for optional strings and 0 for optional integers.
"""

import logging
from typing import Any, Dict, Optional
from mcp.server.fastmcp import Context

from feed_crawler.config import get_config
from feed_crawler.models.schemas import Article, CrawlerSettings, FeedSource
from feed_crawler.services import notifier, sharing
from feed_crawler.services.dispatcher import Dispatcher, create_dispatcher
from feed_crawler.services.schedule import describe_schedule, schedule_error
from feed_crawler.storage import database

logger = logging.getLogger(__name__)

_dispatcher: Optional[Dispatcher] = None


def set_dispatcher(dispatcher: Optional[Dispatcher]) -> None:
    """Install the dispatcher used by ``trigger_source``."""
    global _dispatcher
    _dispatcher = dispatcher


def get_dispatcher() -> Dispatcher:
    global _dispatcher

    if _dispatcher is None:
        _dispatcher = create_dispatcher(get_config())

    return _dispatcher


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_flag(value: str, name: str) -> Optional[bool]:
    """Interpret "true"/"false" strings; "" means unchanged."""
    value = value.strip().lower()
    if not value:
        return None
    if value in ("true", "1", "yes", "on"):
        return True
    if value in ("false", "0", "no", "off"):
        return False
    raise ValueError(f"Invalid value for {name}: '{value}' (use 'true' or 'false')")


def _settings_dict(settings: CrawlerSettings) -> Dict[str, Any]:
    return {
        "max_items_per_source": settings.max_items_per_source,
        "enabled": settings.enabled,
        "schedule_mode": settings.schedule_mode.value,
        "schedule_value": settings.schedule_value,
        "timezone": settings.timezone,
        "ai_language": settings.ai_language,
    }


def _source_dict(source: FeedSource, settings: Optional[CrawlerSettings] = None) -> Dict[str, Any]:
    data = {
        "id": source.id,
        "feed_url": source.feed_url,
        "is_active": source.is_active,
        "status": source.status.value,
        "last_run_at": _iso(source.last_run_at),
        "schedule_mode": source.schedule_mode.value,
        "schedule_value": source.schedule_value,
    }
    if settings is not None:
        data["effective_schedule"] = describe_schedule(source, settings)
        data["schedule_error"] = schedule_error(source, settings)
    return data


def _article_dict(article: Article, full: bool = False) -> Dict[str, Any]:
    data = {
        "id": article.id,
        "source_id": article.source_id,
        "title": article.title,
        "summary": article.summary,
        "url": article.url,
        "image_url": article.image_url,
        "notification_content": article.notification_content,
        "published_at": _iso(article.published_at),
        "created_at": _iso(article.created_at),
        "share_id": article.share_id if article.is_shared else None,
        "is_shared": article.is_shared,
        "notification_sent": article.notification_sent,
    }
    if full:
        data["formatted_content"] = article.formatted_content
        data["original_content"] = article.original_content
    return data


async def get_settings(owner_id: str, ctx: Context = None) -> Dict[str, Any]:
    """Get the account's crawler settings, creating defaults on first use.

    Args:
        owner_id: Account identifier
        ctx: MCP Context object (injected automatically)

    Returns:
        Dictionary with:
        - success: bool
        - settings: max_items_per_source, enabled, schedule_mode, schedule_value,
          timezone, ai_language
    """
    settings = await database.get_settings(owner_id)
    return {"success": True, "settings": _settings_dict(settings)}


async def update_settings(
    owner_id: str,
    max_items_per_source: int = 0,
    enabled: str = "",
    schedule_mode: str = "",
    schedule_value: str = "",
    timezone: str = "",
    ai_language: str = "",
    ctx: Context = None,
) -> Dict[str, Any]:
    """Update the account's crawler settings. Empty/zero arguments leave a field unchanged.

    Args:
        owner_id: Account identifier
        max_items_per_source: New articles kept per crawl, 1-50 (0 = unchanged)
        enabled: "true" or "false" to switch scheduled crawling on or off
        schedule_mode: "every_hours" or "daily"
        schedule_value: Hour count for every_hours, "HH:MM" local time for daily
        timezone: IANA timezone used for daily schedules (e.g. "Europe/Berlin")
        ai_language: Enrichment output language, "auto" keeps the original
        ctx: MCP Context object (injected automatically)

    Returns:
        Dictionary with:
        - success: bool
        - settings: the updated settings
        - error: string if a value is invalid
    """
    try:
        settings = await database.update_settings(
            owner_id,
            max_items_per_source=max_items_per_source or None,
            enabled=_parse_flag(enabled, "enabled"),
            schedule_mode=schedule_mode or None,
            schedule_value=schedule_value or None,
            timezone_name=timezone or None,
            ai_language=ai_language or None,
        )
    except ValueError as e:
        return {"success": False, "error": str(e)}

    return {"success": True, "settings": _settings_dict(settings)}


async def add_source(
    owner_id: str,
    feed_url: str,
    is_active: str = "true",
    schedule_mode: str = "inherit",
    schedule_value: str = "",
    ctx: Context = None,
) -> Dict[str, Any]:
    """Add a feed source to crawl.

    Args:
        owner_id: Account identifier
        feed_url: RSS/Atom feed URL (https:// is added if no scheme is given)
        is_active: "true" or "false"; whether scheduled and manual crawls are allowed
        schedule_mode: "inherit" (account schedule), "every_hours" or "daily"
        schedule_value: Override value; defaults to "6" for every_hours and "07:00" for daily
        ctx: MCP Context object (injected automatically)

    Returns:
        Dictionary with:
        - success: bool
        - source: the created source
        - error: string if the URL is already tracked or a value is invalid
    """
    feed_url = feed_url.strip()
    if not feed_url:
        return {"success": False, "error": "feed_url is required"}
    if not feed_url.startswith(("http://", "https://")):
        feed_url = "https://" + feed_url

    try:
        active = _parse_flag(is_active, "is_active")
        source = await database.add_source(
            owner_id,
            feed_url,
            is_active=True if active is None else active,
            schedule_mode=schedule_mode or "inherit",
            schedule_value=schedule_value or None,
        )
    except ValueError as e:
        return {"success": False, "error": str(e)}

    settings = await database.get_settings(owner_id)
    return {"success": True, "source": _source_dict(source, settings)}


async def update_source(
    owner_id: str,
    source_id: int,
    feed_url: str = "",
    is_active: str = "",
    schedule_mode: str = "",
    schedule_value: str = "",
    ctx: Context = None,
) -> Dict[str, Any]:
    """Update a feed source. Empty arguments leave a field unchanged.

    Deactivating a source stops future crawls; a crawl already running finishes.

    Args:
        owner_id: Account identifier
        source_id: ID of the source (from list_sources)
        feed_url: New feed URL
        is_active: "true" or "false"
        schedule_mode: "inherit", "every_hours" or "daily"
        schedule_value: Override value for the source's schedule mode
        ctx: MCP Context object (injected automatically)

    Returns:
        Dictionary with:
        - success: bool
        - source: the updated source
        - error: string if the source is not found or a value is invalid
    """
    try:
        source = await database.update_source(
            owner_id,
            source_id,
            feed_url=feed_url.strip() or None,
            is_active=_parse_flag(is_active, "is_active"),
            schedule_mode=schedule_mode or None,
            schedule_value=schedule_value or None,
        )
    except ValueError as e:
        return {"success": False, "error": str(e)}

    if source is None:
        return {"success": False, "error": f"Source with id {source_id} not found"}

    settings = await database.get_settings(owner_id)
    return {"success": True, "source": _source_dict(source, settings)}


async def remove_source(owner_id: str, source_id: int, ctx: Context = None) -> Dict[str, Any]:
    """Remove a feed source and all of its articles.

    This permanently deletes the source, its articles and its run history.

    Args:
        owner_id: Account identifier
        source_id: ID of the source to remove
        ctx: MCP Context object (injected automatically)

    Returns:
        Dictionary with:
        - success: bool
        - articles_deleted: count of articles removed
        - error: string if the source is not found
    """
    success, article_count = await database.remove_source(owner_id, source_id)

    if success:
        return {
            "success": True,
            "message": f"Removed source {source_id} and {article_count} articles",
            "articles_deleted": article_count,
        }
    else:
        return {
            "success": False,
            "error": f"Source with id {source_id} not found",
        }


async def list_sources(owner_id: str, ctx: Context = None) -> Dict[str, Any]:
    """List the account's feed sources with their run state and effective schedule.

    Args:
        owner_id: Account identifier
        ctx: MCP Context object (injected automatically)

    Returns:
        Dictionary with:
        - success: bool
        - count: number of sources
        - sources: list of sources (status, last_run_at, schedule fields,
          effective_schedule, schedule_error)
    """
    settings = await database.get_settings(owner_id)
    sources = await database.list_sources(owner_id=owner_id)
    return {
        "success": True,
        "count": len(sources),
        "sources": [_source_dict(s, settings) for s in sources],
    }


async def trigger_source(owner_id: str, source_id: int, ctx: Context = None) -> Dict[str, Any]:
    """Crawl a source now, ignoring its schedule.

    The request is answered immediately: it is refused when the source is
    inactive or already running (nothing is queued), otherwise the crawl starts
    in the background.

    Args:
        owner_id: Account identifier
        source_id: ID of the source to crawl
        ctx: MCP Context object (injected automatically)

    Returns:
        Dictionary with:
        - success: bool (True when the crawl was started)
        - accepted: bool
        - message: reason for acceptance or refusal
    """
    result = await get_dispatcher().trigger(owner_id, source_id)
    response = {
        "success": result.accepted,
        "accepted": result.accepted,
        "source_id": result.source_id,
        "message": result.reason,
    }
    if not result.accepted:
        response["error"] = result.reason
    return response


async def get_status(owner_id: str, ctx: Context = None) -> Dict[str, Any]:
    """Aggregate crawler status for the account.

    Args:
        owner_id: Account identifier
        ctx: MCP Context object (injected automatically)

    Returns:
        Dictionary with:
        - success: bool
        - enabled: whether scheduled crawling is on
        - sources: per-source state, last run and schedule (including schedule_error)
        - stats: total_articles, unnotified_articles, runs per outcome
    """
    settings = await database.get_settings(owner_id)
    sources = await database.list_sources(owner_id=owner_id)
    totals = await database.get_totals(owner_id)

    return {
        "success": True,
        "enabled": settings.enabled,
        "sources": [_source_dict(s, settings) for s in sources],
        "stats": totals,
    }


async def list_runs(owner_id: str, ctx: Context = None) -> Dict[str, Any]:
    """List the account's 50 most recent crawl runs.

    Args:
        owner_id: Account identifier
        ctx: MCP Context object (injected automatically)

    Returns:
        Dictionary with:
        - success: bool
        - runs: list with source_id, trigger, started_at, finished_at, outcome,
          new_articles, error
    """
    runs = await database.list_runs(owner_id)
    return {
        "success": True,
        "count": len(runs),
        "runs": [
            {
                "id": r.id,
                "source_id": r.source_id,
                "trigger": r.trigger.value,
                "started_at": _iso(r.started_at),
                "finished_at": _iso(r.finished_at),
                "outcome": r.outcome.value if r.outcome else None,
                "new_articles": r.new_articles,
                "error": r.error,
            }
            for r in runs
        ],
    }


async def list_articles(
    owner_id: str,
    source_id: int = 0,
    search: str = "",
    cursor: str = "",
    ctx: Context = None,
) -> Dict[str, Any]:
    """List the account's articles, newest first, one page at a time.

    Args:
        owner_id: Account identifier
        source_id: Only articles from this source (0 for all sources)
        search: Text to match in title, summary or notification text
        cursor: next_cursor from the previous page ("" for the first page)
        ctx: MCP Context object (injected automatically)

    Returns:
        Dictionary with:
        - success: bool
        - count: number of articles on this page
        - articles: list of articles
        - next_cursor: cursor for the next page, null on the last page
    """
    try:
        page = await sharing.list_for_owner(
            owner_id,
            source_id=source_id or None,
            search=search,
            cursor=cursor,
            page_size=get_config().page_size,
        )
    except ValueError as e:
        return {"success": False, "error": str(e)}

    return {
        "success": True,
        "count": len(page.articles),
        "articles": [_article_dict(a) for a in page.articles],
        "next_cursor": page.next_cursor,
    }


async def get_article(owner_id: str, article_id: int, ctx: Context = None) -> Dict[str, Any]:
    """Get one of the account's articles with its full content.

    Args:
        owner_id: Account identifier
        article_id: ID of the article
        ctx: MCP Context object (injected automatically)
    """
    article = await database.get_article(article_id, owner_id=owner_id)
    if article is None:
        return {"success": False, "error": f"Article with id {article_id} not found"}
    return {"success": True, "article": _article_dict(article, full=True)}


async def delete_article(owner_id: str, article_id: int, ctx: Context = None) -> Dict[str, Any]:
    """Delete an article. It stays deleted even if the feed still lists it.

    Args:
        owner_id: Account identifier
        article_id: ID of the article
        ctx: MCP Context object (injected automatically)
    """
    if not await database.delete_article(article_id, owner_id):
        return {"success": False, "error": f"Article with id {article_id} not found"}
    return {"success": True, "message": "Article deleted successfully"}


async def discover_articles(
    search: str = "",
    source_url: str = "",
    cursor: str = "",
    ctx: Context = None,
) -> Dict[str, Any]:
    """Public article listing across all accounts (no authentication).

    Args:
        search: Text to match in title, summary or notification text
        source_url: Only articles from sources with this feed URL
        cursor: next_cursor from the previous page ("" for the first page)
        ctx: MCP Context object (injected automatically)

    Returns:
        Dictionary with:
        - success: bool
        - articles: list of articles
        - next_cursor: cursor for the next page, null on the last page
        - sources: feed URLs usable as source_url filter (first page only)
    """
    try:
        page = await sharing.discover(
            search=search,
            source_url=source_url,
            cursor=cursor,
            page_size=get_config().page_size,
        )
    except ValueError as e:
        return {"success": False, "error": str(e)}

    return {
        "success": True,
        "count": len(page.articles),
        "articles": [_article_dict(a) for a in page.articles],
        "next_cursor": page.next_cursor,
        "sources": page.sources,
    }


async def share_article(owner_id: str, article_id: int, ctx: Context = None) -> Dict[str, Any]:
    """Make an article publicly readable and return its share token.

    Sharing an already-shared article returns the same token.

    Args:
        owner_id: Account identifier
        article_id: ID of the article
        ctx: MCP Context object (injected automatically)

    Returns:
        Dictionary with:
        - success: bool
        - share_id: the article's share token
        - share_url: relative URL of the public page
    """
    share_id = await sharing.share(owner_id, article_id)
    if share_id is None:
        return {"success": False, "error": f"Article with id {article_id} not found"}
    return {
        "success": True,
        "share_id": share_id,
        "share_url": f"/shared-article/{share_id}",
    }


async def unshare_article(owner_id: str, article_id: int, ctx: Context = None) -> Dict[str, Any]:
    """Revoke public access to an article.

    Args:
        owner_id: Account identifier
        article_id: ID of the article
        ctx: MCP Context object (injected automatically)
    """
    if not await sharing.unshare(owner_id, article_id):
        return {"success": False, "error": f"Article with id {article_id} not found"}
    return {"success": True, "message": "Article unshared successfully"}


async def get_shared_article(share_id: str, ctx: Context = None) -> Dict[str, Any]:
    """Read a shared article by its token (no authentication).

    Args:
        share_id: Share token from share_article
        ctx: MCP Context object (injected automatically)
    """
    found = await sharing.get_shared(share_id)
    if found is None:
        return {"success": False, "error": "Article not found or is no longer shared"}

    article, source_url = found
    data = _article_dict(article, full=True)
    data["source_url"] = source_url
    return {"success": True, "article": data}


async def register_push(
    owner_id: str,
    endpoint: str,
    auth_key: str,
    p256dh_key: str,
    ctx: Context = None,
) -> Dict[str, Any]:
    """Register a browser push endpoint for new-article notifications.

    Args:
        owner_id: Account identifier
        endpoint: Push service endpoint URL
        auth_key: Subscription auth secret
        p256dh_key: Subscription public key
        ctx: MCP Context object (injected automatically)
    """
    await database.register_subscription(
        owner_id, endpoint.strip(), {"auth": auth_key, "p256dh": p256dh_key}
    )
    return {"success": True, "message": "Push subscription registered"}


async def unregister_push(owner_id: str, endpoint: str, ctx: Context = None) -> Dict[str, Any]:
    """Remove a push endpoint.

    Args:
        owner_id: Account identifier
        endpoint: Push service endpoint URL
        ctx: MCP Context object (injected automatically)
    """
    removed = await database.unregister_subscription(owner_id, endpoint.strip())
    return {"success": True, "removed": removed}


async def push_status(owner_id: str, ctx: Context = None) -> Dict[str, Any]:
    """Report whether the account has an active push endpoint.

    ``supported`` is false until the server has VAPID keys; ``public_key`` is
    the application server key browsers need to subscribe.

    Args:
        owner_id: Account identifier
        ctx: MCP Context object (injected automatically)
    """
    config = get_config()
    subscriptions = await database.list_active_subscriptions(owner_id)
    return {
        "success": True,
        "subscribed": bool(subscriptions),
        "endpoints": len(subscriptions),
        "supported": config.push_configured,
        "public_key": config.vapid_public_key or "",
    }


async def latest_notification(owner_id: str, ctx: Context = None) -> Dict[str, Any]:
    """Notification payload for the account's newest article.

    Push pings carry no body; the service worker calls this to render them.

    Args:
        owner_id: Account identifier
        ctx: MCP Context object (injected automatically)
    """
    payload = await notifier.latest_notification(owner_id)
    return {"success": True, "notification": payload}


# List of feed tools for registration
feed_tools = [
    get_settings,
    update_settings,
    add_source,
    update_source,
    remove_source,
    list_sources,
    trigger_source,
    get_status,
    list_runs,
    list_articles,
    get_article,
    delete_article,
    discover_articles,
    share_article,
    unshare_article,
    get_shared_article,
    register_push,
    unregister_push,
    push_status,
    latest_notification,
]
