"""Database storage for feed_crawler.

This module provides async SQLite database operations for crawler settings,
feed sources, articles, push subscriptions and crawl run history.
Database location: ~/.feed_crawler/feed_crawler.db (or FEED_CRAWLER_DB_PATH env var)

All timestamps are stored as UTC ISO-8601 strings with microsecond precision
so that lexical and chronological ordering agree.
"""

import base64
import json
import aiosqlite
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from feed_crawler.config import get_config
from feed_crawler.models.schemas import (
    Article,
    CrawlerSettings,
    CrawlRun,
    FeedSource,
    PushSubscription,
    RunTrigger,
    ScheduleMode,
    SourceStatus,
)


MAX_ITEMS_LIMIT = 50
SCHEDULE_VALUE_MAX_LENGTH = 16
DEFAULT_EVERY_HOURS_VALUE = "6"
DEFAULT_DAILY_VALUE = "07:00"

# try_acquire default: no check on last_run_at
_ANY_LAST_RUN = object()


def _get_db_path() -> Path:
    """Get the database path from configuration (FEED_CRAWLER_DB_PATH overrides the default)."""
    return get_config().db_path


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_db_time(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _from_db_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# Singleton connection
_db_connection: Optional[aiosqlite.Connection] = None


async def get_database() -> aiosqlite.Connection:
    """Get or create a singleton database connection.

    Returns:
        Active database connection
    """
    global _db_connection

    if _db_connection is None:
        db_path = _get_db_path()
        # Ensure directory exists
        db_path.parent.mkdir(parents=True, exist_ok=True)

        _db_connection = await aiosqlite.connect(db_path)
        _db_connection.row_factory = aiosqlite.Row
        await init_database(_db_connection)

    return _db_connection


async def init_database(db: Optional[aiosqlite.Connection] = None) -> None:
    """Initialize database tables if they don't exist.

    Args:
        db: Optional database connection (uses singleton if not provided)
    """
    if db is None:
        db = await get_database()

    await db.execute("""
        CREATE TABLE IF NOT EXISTS crawler_settings (
            owner_id TEXT PRIMARY KEY,
            max_items_per_source INTEGER NOT NULL DEFAULT 5,
            enabled BOOLEAN NOT NULL DEFAULT TRUE,
            schedule_mode TEXT NOT NULL DEFAULT 'every_hours',
            schedule_value TEXT NOT NULL DEFAULT '6',
            timezone TEXT NOT NULL DEFAULT 'UTC',
            ai_language TEXT NOT NULL DEFAULT 'auto'
        )
    """)

    await db.execute("""
        CREATE TABLE IF NOT EXISTS feed_sources (
            id INTEGER PRIMARY KEY,
            owner_id TEXT NOT NULL,
            feed_url TEXT NOT NULL,
            is_active BOOLEAN NOT NULL DEFAULT TRUE,
            status TEXT NOT NULL DEFAULT 'idle',
            last_run_at TIMESTAMP,
            schedule_mode TEXT NOT NULL DEFAULT 'inherit',
            schedule_value TEXT,
            created_at TIMESTAMP NOT NULL,
            UNIQUE (owner_id, feed_url)
        )
    """)

    await db.execute("""
        CREATE TABLE IF NOT EXISTS articles (
            id INTEGER PRIMARY KEY,
            source_id INTEGER NOT NULL,
            title TEXT NOT NULL,
            summary TEXT NOT NULL DEFAULT '',
            formatted_content TEXT NOT NULL DEFAULT '',
            original_content TEXT NOT NULL DEFAULT '',
            notification_content TEXT NOT NULL DEFAULT '',
            url TEXT NOT NULL,
            guid TEXT NOT NULL,
            image_url TEXT,
            published_at TIMESTAMP,
            created_at TIMESTAMP NOT NULL,
            share_id TEXT UNIQUE,
            is_shared BOOLEAN NOT NULL DEFAULT FALSE,
            notification_sent BOOLEAN NOT NULL DEFAULT FALSE,
            is_deleted BOOLEAN NOT NULL DEFAULT FALSE,
            UNIQUE (source_id, guid),
            FOREIGN KEY (source_id) REFERENCES feed_sources(id) ON DELETE CASCADE
        )
    """)

    await db.execute("""
        CREATE TABLE IF NOT EXISTS push_subscriptions (
            id INTEGER PRIMARY KEY,
            owner_id TEXT NOT NULL,
            endpoint TEXT NOT NULL UNIQUE,
            keys TEXT NOT NULL DEFAULT '{}',
            active BOOLEAN NOT NULL DEFAULT TRUE,
            created_at TIMESTAMP NOT NULL
        )
    """)

    await db.execute("""
        CREATE TABLE IF NOT EXISTS crawl_runs (
            id INTEGER PRIMARY KEY,
            source_id INTEGER NOT NULL,
            trigger TEXT NOT NULL,
            started_at TIMESTAMP NOT NULL,
            finished_at TIMESTAMP,
            outcome TEXT,
            new_articles INTEGER NOT NULL DEFAULT 0,
            error TEXT
        )
    """)

    # Create indexes for the hot lookups
    await db.execute("""
        CREATE INDEX IF NOT EXISTS idx_feed_sources_owner ON feed_sources(owner_id)
    """)

    await db.execute("""
        CREATE INDEX IF NOT EXISTS idx_articles_source_id ON articles(source_id)
    """)

    await db.execute("""
        CREATE INDEX IF NOT EXISTS idx_articles_created ON articles(created_at DESC, id DESC)
    """)

    await db.execute("""
        CREATE INDEX IF NOT EXISTS idx_push_subscriptions_owner ON push_subscriptions(owner_id)
    """)

    await db.execute("""
        CREATE INDEX IF NOT EXISTS idx_crawl_runs_source ON crawl_runs(source_id)
    """)

    await db.commit()


async def close_database() -> None:
    """Close the database connection."""
    global _db_connection

    if _db_connection is not None:
        await _db_connection.close()
        _db_connection = None


# ---------------------------------------------------------------------------
# Crawler settings
# ---------------------------------------------------------------------------


def _row_to_settings(row: aiosqlite.Row) -> CrawlerSettings:
    return CrawlerSettings(
        owner_id=row["owner_id"],
        max_items_per_source=row["max_items_per_source"],
        enabled=bool(row["enabled"]),
        schedule_mode=ScheduleMode(row["schedule_mode"]),
        schedule_value=row["schedule_value"],
        timezone=row["timezone"],
        ai_language=row["ai_language"],
    )


async def get_settings(owner_id: str) -> CrawlerSettings:
    """Get crawler settings for an account, creating the defaults on first access.

    Args:
        owner_id: Account identifier

    Returns:
        The account's CrawlerSettings
    """
    db = await get_database()

    await db.execute(
        "INSERT OR IGNORE INTO crawler_settings (owner_id) VALUES (?)",
        (owner_id,),
    )
    await db.commit()

    cursor = await db.execute(
        "SELECT * FROM crawler_settings WHERE owner_id = ?", (owner_id,)
    )
    row = await cursor.fetchone()
    return _row_to_settings(row)


async def update_settings(
    owner_id: str,
    max_items_per_source: Optional[int] = None,
    enabled: Optional[bool] = None,
    schedule_mode: Optional[str] = None,
    schedule_value: Optional[str] = None,
    timezone_name: Optional[str] = None,
    ai_language: Optional[str] = None,
) -> CrawlerSettings:
    """Update crawler settings for an account.

    Only the provided fields change. The account-level schedule mode cannot be
    ``inherit``.

    Returns:
        The updated CrawlerSettings

    Raises:
        ValueError: If a field is outside its allowed range
    """
    await get_settings(owner_id)

    updates: Dict[str, Any] = {}

    if max_items_per_source is not None:
        if not 1 <= max_items_per_source <= MAX_ITEMS_LIMIT:
            raise ValueError(f"max_items_per_source must be between 1 and {MAX_ITEMS_LIMIT}")
        updates["max_items_per_source"] = max_items_per_source

    if enabled is not None:
        updates["enabled"] = bool(enabled)

    if schedule_mode is not None:
        mode = _parse_mode(schedule_mode)
        if mode == ScheduleMode.INHERIT:
            raise ValueError("Account schedule mode must be 'every_hours' or 'daily'")
        updates["schedule_mode"] = mode.value
        if schedule_value is None:
            schedule_value = (
                DEFAULT_EVERY_HOURS_VALUE if mode == ScheduleMode.EVERY_HOURS else DEFAULT_DAILY_VALUE
            )

    if schedule_value is not None:
        updates["schedule_value"] = _check_schedule_value(schedule_value)

    if timezone_name is not None:
        updates["timezone"] = timezone_name.strip() or "UTC"

    if ai_language is not None:
        updates["ai_language"] = ai_language.strip() or "auto"

    if updates:
        db = await get_database()
        assignments = ", ".join(f"{column} = ?" for column in updates)
        await db.execute(
            f"UPDATE crawler_settings SET {assignments} WHERE owner_id = ?",
            list(updates.values()) + [owner_id],
        )
        await db.commit()

    return await get_settings(owner_id)


def _parse_mode(value: str) -> ScheduleMode:
    try:
        return ScheduleMode(value)
    except ValueError as e:
        allowed = ", ".join(mode.value for mode in ScheduleMode)
        raise ValueError(f"Invalid schedule mode '{value}' (expected one of: {allowed})") from e


def _check_schedule_value(value: str) -> str:
    value = value.strip()
    if len(value) > SCHEDULE_VALUE_MAX_LENGTH:
        raise ValueError(f"schedule_value must be at most {SCHEDULE_VALUE_MAX_LENGTH} characters")
    return value


# ---------------------------------------------------------------------------
# Feed sources
# ---------------------------------------------------------------------------


def _row_to_source(row: aiosqlite.Row) -> FeedSource:
    return FeedSource(
        id=row["id"],
        owner_id=row["owner_id"],
        feed_url=row["feed_url"],
        is_active=bool(row["is_active"]),
        status=SourceStatus(row["status"]),
        last_run_at=_from_db_time(row["last_run_at"]),
        schedule_mode=ScheduleMode(row["schedule_mode"]),
        schedule_value=row["schedule_value"],
    )


def _source_schedule(mode: ScheduleMode, value: Optional[str]) -> Optional[str]:
    """Apply the per-mode default schedule value."""
    if mode == ScheduleMode.INHERIT:
        return None
    if value is None or not value.strip():
        return DEFAULT_EVERY_HOURS_VALUE if mode == ScheduleMode.EVERY_HOURS else DEFAULT_DAILY_VALUE
    return _check_schedule_value(value)


async def add_source(
    owner_id: str,
    feed_url: str,
    is_active: bool = True,
    schedule_mode: str = ScheduleMode.INHERIT.value,
    schedule_value: Optional[str] = None,
) -> FeedSource:
    """Add a new feed source for an account.

    Args:
        owner_id: Account identifier
        feed_url: RSS/Atom feed URL
        is_active: Whether the dispatcher may crawl this source
        schedule_mode: ``inherit``, ``every_hours`` or ``daily``
        schedule_value: Hour count or ``HH:MM`` (ignored for ``inherit``)

    Returns:
        The created FeedSource

    Raises:
        ValueError: If the account already has this feed URL or a field is invalid
    """
    mode = _parse_mode(schedule_mode)
    value = _source_schedule(mode, schedule_value)

    db = await get_database()

    try:
        cursor = await db.execute(
            """
            INSERT INTO feed_sources
                (owner_id, feed_url, is_active, status, schedule_mode, schedule_value, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                owner_id,
                feed_url,
                bool(is_active),
                SourceStatus.IDLE.value,
                mode.value,
                value,
                _to_db_time(utcnow()),
            ),
        )
        await db.commit()
    except aiosqlite.IntegrityError as e:
        raise ValueError(f"Source with URL '{feed_url}' already exists") from e

    return FeedSource(
        id=cursor.lastrowid,
        owner_id=owner_id,
        feed_url=feed_url,
        is_active=bool(is_active),
        status=SourceStatus.IDLE,
        last_run_at=None,
        schedule_mode=mode,
        schedule_value=value,
    )


async def update_source(
    owner_id: str,
    source_id: int,
    feed_url: Optional[str] = None,
    is_active: Optional[bool] = None,
    schedule_mode: Optional[str] = None,
    schedule_value: Optional[str] = None,
) -> Optional[FeedSource]:
    """Update a source owned by an account.

    Disabling a source only prevents future acquisitions; a crawl that is
    already running finishes normally.

    Returns:
        Updated FeedSource, or None if the account has no such source

    Raises:
        ValueError: If a field is invalid or the new URL duplicates another source
    """
    source = await get_source(source_id, owner_id=owner_id)
    if source is None:
        return None

    updates: Dict[str, Any] = {}

    if feed_url is not None:
        updates["feed_url"] = feed_url

    if is_active is not None:
        updates["is_active"] = bool(is_active)

    if schedule_mode is not None:
        mode = _parse_mode(schedule_mode)
        updates["schedule_mode"] = mode.value
        updates["schedule_value"] = _source_schedule(mode, schedule_value)
    elif schedule_value is not None and source.schedule_mode != ScheduleMode.INHERIT:
        updates["schedule_value"] = _source_schedule(source.schedule_mode, schedule_value)

    if updates:
        db = await get_database()
        assignments = ", ".join(f"{column} = ?" for column in updates)
        try:
            await db.execute(
                f"UPDATE feed_sources SET {assignments} WHERE id = ? AND owner_id = ?",
                list(updates.values()) + [source_id, owner_id],
            )
            await db.commit()
        except aiosqlite.IntegrityError as e:
            raise ValueError(f"Source with URL '{feed_url}' already exists") from e

    return await get_source(source_id, owner_id=owner_id)


async def remove_source(owner_id: str, source_id: int) -> Tuple[bool, int]:
    """Remove a source and all its articles.

    Args:
        owner_id: Account identifier
        source_id: ID of the source to remove

    Returns:
        Tuple of (success, article_count_deleted)
    """
    db = await get_database()

    cursor = await db.execute(
        "SELECT id FROM feed_sources WHERE id = ? AND owner_id = ?",
        (source_id, owner_id),
    )
    row = await cursor.fetchone()

    if row is None:
        return (False, 0)

    cursor = await db.execute(
        "SELECT COUNT(*) as count FROM articles WHERE source_id = ?", (source_id,)
    )
    count_row = await cursor.fetchone()
    article_count = count_row["count"]

    # Delete articles first (foreign key constraint)
    await db.execute("DELETE FROM articles WHERE source_id = ?", (source_id,))
    await db.execute("DELETE FROM crawl_runs WHERE source_id = ?", (source_id,))
    await db.execute("DELETE FROM feed_sources WHERE id = ?", (source_id,))
    await db.commit()

    return (True, article_count)


async def get_source(source_id: int, owner_id: Optional[str] = None) -> Optional[FeedSource]:
    """Get a source by id, optionally scoped to an account.

    Returns:
        FeedSource if found, None otherwise
    """
    db = await get_database()

    query = "SELECT * FROM feed_sources WHERE id = ?"
    params: List[Any] = [source_id]
    if owner_id is not None:
        query += " AND owner_id = ?"
        params.append(owner_id)

    cursor = await db.execute(query, params)
    row = await cursor.fetchone()

    if row is None:
        return None

    return _row_to_source(row)


async def list_sources(owner_id: Optional[str] = None, active_only: bool = False) -> List[FeedSource]:
    """List sources, optionally for one account and/or only active ones."""
    db = await get_database()

    query = "SELECT * FROM feed_sources WHERE 1=1"
    params: List[Any] = []

    if owner_id is not None:
        query += " AND owner_id = ?"
        params.append(owner_id)

    if active_only:
        query += " AND is_active = 1"

    query += " ORDER BY id"

    cursor = await db.execute(query, params)
    return [_row_to_source(row) async for row in cursor]


async def try_acquire(source_id: int, last_run_at: Any = _ANY_LAST_RUN) -> bool:
    """Atomically move a source into the ``running`` state.

    The guard and the transition happen in a single UPDATE, so two callers
    racing for the same source can never both succeed.

    Args:
        source_id: Source to acquire
        last_run_at: When given (``None`` included), the source is acquired
            only if its ``last_run_at`` still has this value. A run that
            finished after the caller read the source makes the acquire fail.

    Returns:
        True if the caller now owns the run, False if the source is missing,
        inactive, already running or has run since it was read
    """
    db = await get_database()

    query = """
        UPDATE feed_sources SET status = ?
        WHERE id = ? AND is_active = 1 AND status != ?
    """
    params: List[Any] = [SourceStatus.RUNNING.value, source_id, SourceStatus.RUNNING.value]

    if last_run_at is not _ANY_LAST_RUN:
        query += " AND last_run_at IS ?"
        params.append(_to_db_time(last_run_at))

    cursor = await db.execute(query, params)
    await db.commit()

    return cursor.rowcount == 1


async def release(source_id: int, outcome: SourceStatus, now: Optional[datetime] = None) -> None:
    """Finish a run: record the outcome and stamp ``last_run_at``.

    ``last_run_at`` is written for failures too, so a broken feed waits for its
    next slot instead of being retried on every tick.
    """
    if outcome not in (SourceStatus.COMPLETED, SourceStatus.FAILED):
        raise ValueError(f"Cannot release a source as '{outcome.value}'")

    db = await get_database()

    await db.execute(
        "UPDATE feed_sources SET status = ?, last_run_at = ? WHERE id = ?",
        (outcome.value, _to_db_time(now or utcnow()), source_id),
    )
    await db.commit()


async def reset_stale_running() -> int:
    """Mark sources left ``running`` by a previous process as ``failed``.

    Returns:
        Number of sources reset
    """
    db = await get_database()

    cursor = await db.execute(
        "UPDATE feed_sources SET status = ? WHERE status = ?",
        (SourceStatus.FAILED.value, SourceStatus.RUNNING.value),
    )
    await db.commit()
    return cursor.rowcount


# ---------------------------------------------------------------------------
# Articles
# ---------------------------------------------------------------------------


def _row_to_article(row: aiosqlite.Row) -> Article:
    return Article(
        id=row["id"],
        source_id=row["source_id"],
        title=row["title"],
        url=row["url"],
        guid=row["guid"],
        summary=row["summary"],
        formatted_content=row["formatted_content"],
        original_content=row["original_content"],
        notification_content=row["notification_content"],
        image_url=row["image_url"],
        published_at=_from_db_time(row["published_at"]),
        created_at=_from_db_time(row["created_at"]),
        share_id=row["share_id"],
        is_shared=bool(row["is_shared"]),
        notification_sent=bool(row["notification_sent"]),
        is_deleted=bool(row["is_deleted"]),
    )


async def get_existing_guids(source_id: int, guids: List[str]) -> Set[str]:
    """Get guids that already exist for a source (deleted articles included).

    Args:
        source_id: ID of the source
        guids: List of guids to check

    Returns:
        Set of guids that already exist
    """
    if not guids:
        return set()

    db = await get_database()

    placeholders = ",".join("?" * len(guids))
    cursor = await db.execute(
        f"""
        SELECT guid FROM articles
        WHERE source_id = ? AND guid IN ({placeholders})
        """,
        [source_id] + guids,
    )

    existing = set()
    async for row in cursor:
        existing.add(row["guid"])

    return existing


async def add_articles(source_id: int, articles: List[dict]) -> List[Article]:
    """Add new articles for a source, skipping duplicates.

    Rows whose ``(source_id, guid)`` already exists are ignored, and nothing is
    written if the source has been removed in the meantime.

    Args:
        source_id: ID of the source these articles belong to
        articles: List of article dicts with title, url, guid and optional
            summary, formatted_content, original_content, notification_content,
            image_url, published_at

    Returns:
        The articles actually added (excludes duplicates)
    """
    db = await get_database()
    added: List[Article] = []

    for article in articles:
        created_at = utcnow()
        cursor = await db.execute(
            """
            INSERT OR IGNORE INTO articles (
                source_id, title, summary, formatted_content, original_content,
                notification_content, url, guid, image_url, published_at, created_at
            )
            SELECT ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?
            WHERE EXISTS (SELECT 1 FROM feed_sources WHERE id = ?)
            """,
            (
                source_id,
                article["title"],
                article.get("summary", ""),
                article.get("formatted_content", ""),
                article.get("original_content", ""),
                article.get("notification_content", ""),
                article["url"],
                article["guid"],
                article.get("image_url"),
                _to_db_time(article.get("published_at")),
                _to_db_time(created_at),
                source_id,
            ),
        )
        if cursor.rowcount == 1:
            added.append(Article(
                id=cursor.lastrowid,
                source_id=source_id,
                title=article["title"],
                url=article["url"],
                guid=article["guid"],
                summary=article.get("summary", ""),
                formatted_content=article.get("formatted_content", ""),
                original_content=article.get("original_content", ""),
                notification_content=article.get("notification_content", ""),
                image_url=article.get("image_url"),
                published_at=article.get("published_at"),
                created_at=created_at,
            ))

    await db.commit()
    return added


async def get_article(article_id: int, owner_id: Optional[str] = None) -> Optional[Article]:
    """Get a non-deleted article, optionally scoped to the owning account."""
    db = await get_database()

    query = """
        SELECT a.* FROM articles a
        JOIN feed_sources s ON a.source_id = s.id
        WHERE a.id = ? AND a.is_deleted = 0
    """
    params: List[Any] = [article_id]
    if owner_id is not None:
        query += " AND s.owner_id = ?"
        params.append(owner_id)

    cursor = await db.execute(query, params)
    row = await cursor.fetchone()

    if row is None:
        return None

    return _row_to_article(row)


def encode_cursor(created_at: datetime, article_id: int) -> str:
    """Encode a keyset pagination position as an opaque string."""
    raw = f"{_to_db_time(created_at)}|{article_id}"
    return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii")


def decode_cursor(cursor: str) -> Tuple[str, int]:
    """Decode a pagination cursor.

    Raises:
        ValueError: If the cursor is malformed
    """
    try:
        raw = base64.urlsafe_b64decode(cursor.encode("ascii")).decode("utf-8")
        created_at, article_id = raw.rsplit("|", 1)
        _from_db_time(created_at)
        return created_at, int(article_id)
    except (ValueError, UnicodeError) as e:
        raise ValueError(f"Invalid cursor: {cursor!r}") from e


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


async def list_articles(
    owner_id: Optional[str] = None,
    source_id: Optional[int] = None,
    source_url: Optional[str] = None,
    search: Optional[str] = None,
    cursor: Optional[str] = None,
    limit: int = 20,
) -> Tuple[List[Article], Optional[str]]:
    """List non-deleted articles newest first using keyset pagination.

    Ordering is ``created_at DESC, id DESC``; the cursor is the position of the
    last row of the previous page, so rows inserted while a client pages never
    shift later pages (no duplicates, no skips).

    Args:
        owner_id: Restrict to one account's sources (None lists every account)
        source_id: Restrict to one source
        source_url: Restrict to sources with this feed URL
        search: Case-insensitive substring matched against title, summary and
            notification text
        cursor: Cursor returned by the previous page
        limit: Page size

    Returns:
        Tuple of (articles, next_cursor); next_cursor is None on the last page

    Raises:
        ValueError: If the cursor is malformed
    """
    db = await get_database()

    query = """
        SELECT a.* FROM articles a
        JOIN feed_sources s ON a.source_id = s.id
        WHERE a.is_deleted = 0
    """
    params: List[Any] = []

    if owner_id is not None:
        query += " AND s.owner_id = ?"
        params.append(owner_id)

    if source_id is not None:
        query += " AND a.source_id = ?"
        params.append(source_id)

    if source_url:
        query += " AND s.feed_url = ?"
        params.append(source_url)

    if search:
        pattern = f"%{_escape_like(search)}%"
        query += """
            AND (a.title LIKE ? ESCAPE '\\'
                 OR a.summary LIKE ? ESCAPE '\\'
                 OR a.notification_content LIKE ? ESCAPE '\\')
        """
        params.extend([pattern, pattern, pattern])

    if cursor:
        created_at, last_id = decode_cursor(cursor)
        query += " AND (a.created_at < ? OR (a.created_at = ? AND a.id < ?))"
        params.extend([created_at, created_at, last_id])

    query += " ORDER BY a.created_at DESC, a.id DESC LIMIT ?"
    params.append(limit + 1)

    rows = await db.execute(query, params)
    articles = [_row_to_article(row) async for row in rows]

    next_cursor = None
    if len(articles) > limit:
        articles = articles[:limit]
        last = articles[-1]
        next_cursor = encode_cursor(last.created_at, last.id)

    return articles, next_cursor


async def list_discovery_sources() -> List[str]:
    """Distinct feed URLs that have at least one visible article."""
    db = await get_database()

    cursor = await db.execute("""
        SELECT DISTINCT s.feed_url FROM feed_sources s
        JOIN articles a ON a.source_id = s.id
        WHERE a.is_deleted = 0
        ORDER BY s.feed_url
    """)
    return [row["feed_url"] async for row in cursor]


async def mark_notification_sent(article_ids: Iterable[int]) -> int:
    """Flag articles as notified.

    Returns:
        Number of articles updated
    """
    ids = list(article_ids)
    if not ids:
        return 0

    db = await get_database()

    placeholders = ",".join("?" * len(ids))
    cursor = await db.execute(
        f"UPDATE articles SET notification_sent = 1 WHERE id IN ({placeholders})",
        ids,
    )
    await db.commit()
    return cursor.rowcount


async def set_share_id(article_id: int, owner_id: str, share_id: str) -> Optional[str]:
    """Share an article, keeping any token it already has.

    Returns:
        The article's share token, or None if the account has no such article
    """
    article = await get_article(article_id, owner_id=owner_id)
    if article is None:
        return None

    db = await get_database()

    # COALESCE keeps an existing token even if another caller minted it first
    await db.execute(
        """
        UPDATE articles SET share_id = COALESCE(share_id, ?), is_shared = 1
        WHERE id = ? AND is_deleted = 0
        """,
        (share_id, article_id),
    )
    await db.commit()

    cursor = await db.execute("SELECT share_id FROM articles WHERE id = ?", (article_id,))
    row = await cursor.fetchone()
    return row["share_id"] if row else None


async def unshare_article(article_id: int, owner_id: str) -> bool:
    """Revoke public access to an article; its token is kept for a later re-share.

    Returns:
        True if the article was found
    """
    article = await get_article(article_id, owner_id=owner_id)
    if article is None:
        return False

    db = await get_database()
    await db.execute("UPDATE articles SET is_shared = 0 WHERE id = ?", (article_id,))
    await db.commit()
    return True


async def get_shared_article(share_id: str) -> Optional[Tuple[Article, str]]:
    """Look up a publicly shared article by token.

    Returns:
        Tuple of (article, source feed URL), or None if not shared
    """
    db = await get_database()

    cursor = await db.execute(
        """
        SELECT a.*, s.feed_url AS source_url FROM articles a
        JOIN feed_sources s ON a.source_id = s.id
        WHERE a.share_id = ? AND a.is_shared = 1 AND a.is_deleted = 0
        """,
        (share_id,),
    )
    row = await cursor.fetchone()

    if row is None:
        return None

    return _row_to_article(row), row["source_url"]


async def delete_article(article_id: int, owner_id: str) -> bool:
    """Soft-delete an article and revoke its share.

    The row is kept so the same guid is not ingested again.

    Returns:
        True if the article was found
    """
    article = await get_article(article_id, owner_id=owner_id)
    if article is None:
        return False

    db = await get_database()
    await db.execute(
        "UPDATE articles SET is_deleted = 1, is_shared = 0, share_id = NULL WHERE id = ?",
        (article_id,),
    )
    await db.commit()
    return True


# ---------------------------------------------------------------------------
# Push subscriptions
# ---------------------------------------------------------------------------


def _row_to_subscription(row: aiosqlite.Row) -> PushSubscription:
    return PushSubscription(
        id=row["id"],
        owner_id=row["owner_id"],
        endpoint=row["endpoint"],
        keys=json.loads(row["keys"] or "{}"),
        active=bool(row["active"]),
    )


async def register_subscription(owner_id: str, endpoint: str, keys: Dict[str, str]) -> PushSubscription:
    """Register (or re-register) a push endpoint for an account.

    Raises:
        ValueError: If the endpoint or its keys are missing
    """
    if not endpoint or not keys.get("auth") or not keys.get("p256dh"):
        raise ValueError("Invalid push subscription payload")

    db = await get_database()

    await db.execute(
        """
        INSERT INTO push_subscriptions (owner_id, endpoint, keys, active, created_at)
        VALUES (?, ?, ?, 1, ?)
        ON CONFLICT(endpoint) DO UPDATE SET
            owner_id = excluded.owner_id,
            keys = excluded.keys,
            active = 1
        """,
        (owner_id, endpoint, json.dumps(keys), _to_db_time(utcnow())),
    )
    await db.commit()

    cursor = await db.execute(
        "SELECT * FROM push_subscriptions WHERE endpoint = ?", (endpoint,)
    )
    row = await cursor.fetchone()
    return _row_to_subscription(row)


async def unregister_subscription(owner_id: str, endpoint: str) -> bool:
    """Delete an account's push endpoint.

    Returns:
        True if a subscription was removed
    """
    db = await get_database()

    cursor = await db.execute(
        "DELETE FROM push_subscriptions WHERE owner_id = ? AND endpoint = ?",
        (owner_id, endpoint),
    )
    await db.commit()
    return cursor.rowcount > 0


async def list_active_subscriptions(owner_id: str) -> List[PushSubscription]:
    db = await get_database()

    cursor = await db.execute(
        "SELECT * FROM push_subscriptions WHERE owner_id = ? AND active = 1 ORDER BY id",
        (owner_id,),
    )
    return [_row_to_subscription(row) async for row in cursor]


async def deactivate_subscription(endpoint: str) -> None:
    db = await get_database()

    await db.execute(
        "UPDATE push_subscriptions SET active = 0 WHERE endpoint = ?", (endpoint,)
    )
    await db.commit()


# ---------------------------------------------------------------------------
# Crawl runs and status
# ---------------------------------------------------------------------------


def _row_to_run(row: aiosqlite.Row) -> CrawlRun:
    return CrawlRun(
        id=row["id"],
        source_id=row["source_id"],
        trigger=RunTrigger(row["trigger"]),
        started_at=_from_db_time(row["started_at"]),
        finished_at=_from_db_time(row["finished_at"]),
        outcome=SourceStatus(row["outcome"]) if row["outcome"] else None,
        new_articles=row["new_articles"],
        error=row["error"],
    )


async def start_run(source_id: int, trigger: RunTrigger) -> int:
    """Record the start of a crawl run.

    Returns:
        ID of the run record
    """
    db = await get_database()

    cursor = await db.execute(
        "INSERT INTO crawl_runs (source_id, trigger, started_at) VALUES (?, ?, ?)",
        (source_id, trigger.value, _to_db_time(utcnow())),
    )
    await db.commit()
    return cursor.lastrowid


async def finish_run(
    run_id: int,
    outcome: SourceStatus,
    new_articles: int = 0,
    error: Optional[str] = None,
) -> None:
    db = await get_database()

    await db.execute(
        """
        UPDATE crawl_runs SET finished_at = ?, outcome = ?, new_articles = ?, error = ?
        WHERE id = ?
        """,
        (_to_db_time(utcnow()), outcome.value, new_articles, error, run_id),
    )
    await db.commit()


async def list_runs(owner_id: str, limit: int = 50) -> List[CrawlRun]:
    """List an account's most recent crawl runs, newest first."""
    db = await get_database()

    cursor = await db.execute(
        """
        SELECT r.* FROM crawl_runs r
        JOIN feed_sources s ON r.source_id = s.id
        WHERE s.owner_id = ?
        ORDER BY r.started_at DESC, r.id DESC
        LIMIT ?
        """,
        (owner_id, limit),
    )
    return [_row_to_run(row) async for row in cursor]


async def get_totals(owner_id: str) -> Dict[str, Any]:
    """Aggregate article and run counts for an account."""
    db = await get_database()

    cursor = await db.execute(
        """
        SELECT COUNT(a.id) AS total_articles,
               SUM(CASE WHEN a.notification_sent = 0 THEN 1 ELSE 0 END) AS unnotified_articles
        FROM articles a
        JOIN feed_sources s ON a.source_id = s.id
        WHERE s.owner_id = ? AND a.is_deleted = 0
        """,
        (owner_id,),
    )
    row = await cursor.fetchone()

    runs = {
        "running": 0,
        SourceStatus.COMPLETED.value: 0,
        SourceStatus.FAILED.value: 0,
    }
    cursor = await db.execute(
        """
        SELECT r.outcome, COUNT(*) AS count FROM crawl_runs r
        JOIN feed_sources s ON r.source_id = s.id
        WHERE s.owner_id = ?
        GROUP BY r.outcome
        """,
        (owner_id,),
    )
    async for run_row in cursor:
        key = run_row["outcome"] or "running"
        runs[key] = run_row["count"]

    return {
        "total_articles": row["total_articles"] or 0,
        "unnotified_articles": row["unnotified_articles"] or 0,
        "runs": runs,
    }
