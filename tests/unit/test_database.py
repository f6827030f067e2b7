"""Unit tests for database operations.

Tests for the storage layer using in-memory SQLite.
"""

import asyncio
import pytest
from datetime import datetime, timezone
from unittest.mock import patch

from feed_crawler.config import ServerConfig, load_config
from feed_crawler.storage.database import (
    _get_db_path,
    init_database,
    get_settings,
    update_settings,
    add_source,
    update_source,
    remove_source,
    get_source,
    list_sources,
    try_acquire,
    release,
    reset_stale_running,
    add_articles,
    get_existing_guids,
    get_article,
    list_articles,
    list_discovery_sources,
    decode_cursor,
    encode_cursor,
    mark_notification_sent,
    set_share_id,
    unshare_article,
    get_shared_article,
    delete_article,
    register_subscription,
    unregister_subscription,
    list_active_subscriptions,
    deactivate_subscription,
    start_run,
    finish_run,
    list_runs,
    get_totals,
)
from feed_crawler.models.schemas import RunTrigger, ScheduleMode, SourceStatus


# Mark all tests as async
pytestmark = pytest.mark.anyio


def _rows(count, prefix="item"):
    return [
        {
            "title": f"{prefix} {i}",
            "url": f"https://example.com/{prefix}/{i}",
            "guid": f"{prefix}-{i}",
            "summary": f"summary {i}",
        }
        for i in range(count)
    ]


class TestDatabaseInitialization:
    """Tests for database schema initialization."""

    async def test_init_creates_tables(self, in_memory_db):
        """Test that initialization creates the required tables."""
        cursor = await in_memory_db.execute(
            "SELECT name FROM sqlite_master WHERE type='table'"
        )
        tables = [row[0] for row in await cursor.fetchall()]

        for table in ("crawler_settings", "feed_sources", "articles", "push_subscriptions", "crawl_runs"):
            assert table in tables

    async def test_init_is_idempotent(self, in_memory_db):
        """Test that calling init multiple times doesn't cause errors."""
        await init_database(in_memory_db)
        await init_database(in_memory_db)


class TestSettings:
    """Tests for per-account crawler settings."""

    async def test_defaults_created_on_first_access(self, in_memory_db):
        """Test that settings are created with defaults on first read."""
        settings = await get_settings("alice")

        assert settings.owner_id == "alice"
        assert settings.max_items_per_source == 5
        assert settings.enabled is True
        assert settings.schedule_mode == ScheduleMode.EVERY_HOURS
        assert settings.schedule_value == "6"
        assert settings.timezone == "UTC"
        assert settings.ai_language == "auto"

    async def test_update_changes_only_given_fields(self, in_memory_db):
        """Test that update leaves unspecified fields alone."""
        await update_settings("alice", max_items_per_source=10, timezone_name="Europe/Berlin")
        settings = await update_settings("alice", enabled=False)

        assert settings.max_items_per_source == 10
        assert settings.timezone == "Europe/Berlin"
        assert settings.enabled is False

    async def test_switching_mode_applies_default_value(self, in_memory_db):
        """Test that switching to daily without a value uses 07:00."""
        settings = await update_settings("alice", schedule_mode="daily")

        assert settings.schedule_mode == ScheduleMode.DAILY
        assert settings.schedule_value == "07:00"

    async def test_max_items_out_of_range_rejected(self, in_memory_db):
        """Test that max_items_per_source must be 1..50."""
        with pytest.raises(ValueError, match="between 1 and 50"):
            await update_settings("alice", max_items_per_source=51)

        with pytest.raises(ValueError):
            await update_settings("alice", max_items_per_source=-1)

    async def test_inherit_not_allowed_at_account_level(self, in_memory_db):
        """Test that the account schedule cannot be 'inherit'."""
        with pytest.raises(ValueError):
            await update_settings("alice", schedule_mode="inherit")

    async def test_unknown_mode_rejected(self, in_memory_db):
        """Test that an unknown schedule mode is rejected."""
        with pytest.raises(ValueError, match="Invalid schedule mode"):
            await update_settings("alice", schedule_mode="weekly")


class TestSourceOperations:
    """Tests for feed source CRUD operations."""

    async def test_add_source_defaults(self, in_memory_db):
        """Test adding a source with default fields."""
        source = await add_source("alice", "https://example.com/feed.xml")

        assert source.id is not None
        assert source.is_active is True
        assert source.status == SourceStatus.IDLE
        assert source.last_run_at is None
        assert source.schedule_mode == ScheduleMode.INHERIT
        assert source.schedule_value is None

    async def test_add_source_override_defaults(self, in_memory_db):
        """Test that overrides without a value get the per-mode default."""
        hourly = await add_source("alice", "https://a.example.com/feed", schedule_mode="every_hours")
        daily = await add_source("alice", "https://b.example.com/feed", schedule_mode="daily")

        assert hourly.schedule_value == "6"
        assert daily.schedule_value == "07:00"

    async def test_add_duplicate_url_rejected(self, in_memory_db):
        """Test that an account cannot track the same URL twice."""
        await add_source("alice", "https://example.com/feed.xml")

        with pytest.raises(ValueError, match="already exists"):
            await add_source("alice", "https://example.com/feed.xml")

    async def test_same_url_for_different_accounts(self, in_memory_db):
        """Test that two accounts may track the same URL."""
        a = await add_source("alice", "https://example.com/feed.xml")
        b = await add_source("bob", "https://example.com/feed.xml")

        assert a.id != b.id

    async def test_update_source(self, in_memory_db):
        """Test updating activity and schedule override."""
        source = await add_source("alice", "https://example.com/feed.xml")

        updated = await update_source(
            "alice", source.id, is_active=False, schedule_mode="daily", schedule_value="08:30"
        )

        assert updated.is_active is False
        assert updated.schedule_mode == ScheduleMode.DAILY
        assert updated.schedule_value == "08:30"

    async def test_update_source_back_to_inherit_clears_value(self, in_memory_db):
        """Test that returning to inherit drops the override value."""
        source = await add_source("alice", "https://example.com/feed.xml", schedule_mode="daily")

        updated = await update_source("alice", source.id, schedule_mode="inherit")

        assert updated.schedule_mode == ScheduleMode.INHERIT
        assert updated.schedule_value is None

    async def test_update_source_other_account(self, in_memory_db):
        """Test that another account cannot update a source."""
        source = await add_source("alice", "https://example.com/feed.xml")

        assert await update_source("bob", source.id, is_active=False) is None
        assert (await get_source(source.id)).is_active is True

    async def test_remove_source_deletes_articles(self, in_memory_db):
        """Test that removing a source removes its articles and runs."""
        source = await add_source("alice", "https://example.com/feed.xml")
        await add_articles(source.id, _rows(3))
        await start_run(source.id, RunTrigger.MANUAL)

        success, count = await remove_source("alice", source.id)

        assert success is True
        assert count == 3
        assert await get_source(source.id) is None
        articles, _ = await list_articles(owner_id="alice")
        assert articles == []
        assert await list_runs("alice") == []

    async def test_remove_source_not_found(self, in_memory_db):
        """Test removing a non-existent or foreign source."""
        source = await add_source("alice", "https://example.com/feed.xml")

        assert await remove_source("alice", 9999) == (False, 0)
        assert await remove_source("bob", source.id) == (False, 0)

    async def test_list_sources_filters(self, in_memory_db):
        """Test listing by account and active flag."""
        await add_source("alice", "https://a.example.com/feed")
        await add_source("alice", "https://b.example.com/feed", is_active=False)
        await add_source("bob", "https://c.example.com/feed")

        assert len(await list_sources()) == 3
        assert len(await list_sources(owner_id="alice")) == 2
        active = await list_sources(active_only=True)
        assert {s.feed_url for s in active} == {"https://a.example.com/feed", "https://c.example.com/feed"}


class TestRunGuard:
    """Tests for the atomic acquire/release of a source."""

    async def test_acquire_moves_to_running(self, in_memory_db):
        """Test that a successful acquire sets status to running."""
        source = await add_source("alice", "https://example.com/feed.xml")

        assert await try_acquire(source.id) is True
        assert (await get_source(source.id)).status == SourceStatus.RUNNING

    async def test_second_acquire_refused(self, in_memory_db):
        """Test that a running source cannot be acquired again."""
        source = await add_source("alice", "https://example.com/feed.xml")

        assert await try_acquire(source.id) is True
        assert await try_acquire(source.id) is False

    async def test_concurrent_acquire_single_winner(self, in_memory_db):
        """Test that exactly one of many concurrent acquires succeeds."""
        source = await add_source("alice", "https://example.com/feed.xml")

        results = await asyncio.gather(*(try_acquire(source.id) for _ in range(10)))

        assert results.count(True) == 1

    async def test_acquire_inactive_refused(self, in_memory_db):
        """Test that an inactive source cannot be acquired."""
        source = await add_source("alice", "https://example.com/feed.xml", is_active=False)

        assert await try_acquire(source.id) is False
        assert (await get_source(source.id)).status == SourceStatus.IDLE

    async def test_acquire_missing_refused(self, in_memory_db):
        """Test that acquiring an unknown source fails."""
        assert await try_acquire(12345) is False

    async def test_release_stamps_last_run(self, in_memory_db):
        """Test that release records outcome and last_run_at."""
        source = await add_source("alice", "https://example.com/feed.xml")
        now = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
        await try_acquire(source.id)

        await release(source.id, SourceStatus.FAILED, now=now)

        stored = await get_source(source.id)
        assert stored.status == SourceStatus.FAILED
        assert stored.last_run_at == now
        assert await try_acquire(source.id) is True

    async def test_acquire_with_expected_last_run(self, in_memory_db):
        """Test that a source that ran since it was read is not acquired."""
        source = await add_source("alice", "https://example.com/feed.xml")
        now = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

        assert await try_acquire(source.id, last_run_at=None) is True
        await release(source.id, SourceStatus.COMPLETED, now=now)

        assert await try_acquire(source.id, last_run_at=None) is False
        assert (await get_source(source.id)).status == SourceStatus.COMPLETED
        assert await try_acquire(source.id, last_run_at=now) is True

    async def test_release_rejects_non_final_status(self, in_memory_db):
        """Test that a source cannot be released as running or idle."""
        source = await add_source("alice", "https://example.com/feed.xml")

        with pytest.raises(ValueError):
            await release(source.id, SourceStatus.RUNNING)

    async def test_reset_stale_running(self, in_memory_db):
        """Test that running sources left by a crash are reset to failed."""
        a = await add_source("alice", "https://a.example.com/feed")
        b = await add_source("alice", "https://b.example.com/feed")
        await try_acquire(a.id)

        assert await reset_stale_running() == 1
        assert (await get_source(a.id)).status == SourceStatus.FAILED
        assert (await get_source(b.id)).status == SourceStatus.IDLE


class TestArticleOperations:
    """Tests for article storage."""

    async def test_add_articles_ignores_duplicates(self, in_memory_db):
        """Test that re-adding the same guids stores nothing new."""
        source = await add_source("alice", "https://example.com/feed.xml")

        first = await add_articles(source.id, _rows(3))
        second = await add_articles(source.id, _rows(3))

        assert len(first) == 3
        assert second == []
        articles, _ = await list_articles(owner_id="alice")
        assert len(articles) == 3

    async def test_same_guid_in_different_sources(self, in_memory_db):
        """Test that guid uniqueness is per source."""
        a = await add_source("alice", "https://a.example.com/feed")
        b = await add_source("alice", "https://b.example.com/feed")

        assert len(await add_articles(a.id, _rows(1))) == 1
        assert len(await add_articles(b.id, _rows(1))) == 1

    async def test_add_articles_for_removed_source(self, in_memory_db):
        """Test that nothing is stored once the source is gone."""
        source = await add_source("alice", "https://example.com/feed.xml")
        await remove_source("alice", source.id)

        assert await add_articles(source.id, _rows(2)) == []

    async def test_get_existing_guids(self, in_memory_db):
        """Test detecting already-stored guids."""
        source = await add_source("alice", "https://example.com/feed.xml")
        await add_articles(source.id, _rows(2))

        existing = await get_existing_guids(source.id, ["item-0", "item-1", "item-9"])

        assert existing == {"item-0", "item-1"}
        assert await get_existing_guids(source.id, []) == set()

    async def test_new_articles_start_unnotified_and_unshared(self, in_memory_db):
        """Test the initial flags of a stored article."""
        source = await add_source("alice", "https://example.com/feed.xml")
        [article] = await add_articles(source.id, _rows(1))

        stored = await get_article(article.id)
        assert stored.notification_sent is False
        assert stored.is_shared is False
        assert stored.share_id is None

    async def test_get_article_scoped_to_owner(self, in_memory_db):
        """Test that another account cannot read an article."""
        source = await add_source("alice", "https://example.com/feed.xml")
        [article] = await add_articles(source.id, _rows(1))

        assert await get_article(article.id, owner_id="alice") is not None
        assert await get_article(article.id, owner_id="bob") is None

    async def test_mark_notification_sent(self, in_memory_db):
        """Test flagging articles as notified."""
        source = await add_source("alice", "https://example.com/feed.xml")
        added = await add_articles(source.id, _rows(2))

        assert await mark_notification_sent([added[0].id]) == 1
        assert (await get_article(added[0].id)).notification_sent is True
        assert (await get_article(added[1].id)).notification_sent is False
        assert await mark_notification_sent([]) == 0


class TestArticlePagination:
    """Tests for keyset pagination of article listings."""

    async def test_newest_first_with_cursor(self, in_memory_db):
        """Test that pages are disjoint and cover every article."""
        source = await add_source("alice", "https://example.com/feed.xml")
        await add_articles(source.id, _rows(5))

        first, cursor = await list_articles(owner_id="alice", limit=2)
        second, cursor2 = await list_articles(owner_id="alice", cursor=cursor, limit=2)
        third, cursor3 = await list_articles(owner_id="alice", cursor=cursor2, limit=2)

        assert [a.title for a in first] == ["item 4", "item 3"]
        assert [a.title for a in second] == ["item 2", "item 1"]
        assert [a.title for a in third] == ["item 0"]
        assert cursor3 is None

    async def test_insert_between_pages_does_not_shift(self, in_memory_db):
        """Test that rows added while paging never duplicate or skip rows."""
        source = await add_source("alice", "https://example.com/feed.xml")
        await add_articles(source.id, _rows(4))

        first, cursor = await list_articles(owner_id="alice", limit=2)
        await add_articles(source.id, _rows(3, prefix="late"))
        second, cursor2 = await list_articles(owner_id="alice", cursor=cursor, limit=2)

        assert [a.title for a in first] == ["item 3", "item 2"]
        assert [a.title for a in second] == ["item 1", "item 0"]
        assert cursor2 is None

    async def test_exact_page_has_no_cursor(self, in_memory_db):
        """Test that a full last page reports no next cursor."""
        source = await add_source("alice", "https://example.com/feed.xml")
        await add_articles(source.id, _rows(2))

        articles, cursor = await list_articles(owner_id="alice", limit=2)

        assert len(articles) == 2
        assert cursor is None

    async def test_search_is_case_insensitive(self, in_memory_db):
        """Test search across title and summary."""
        source = await add_source("alice", "https://example.com/feed.xml")
        await add_articles(source.id, [
            {"title": "Python Release", "url": "https://e.com/1", "guid": "1"},
            {"title": "Other", "url": "https://e.com/2", "guid": "2", "summary": "all about PYTHON"},
            {"title": "Unrelated", "url": "https://e.com/3", "guid": "3"},
        ])

        articles, _ = await list_articles(owner_id="alice", search="python")

        assert {a.guid for a in articles} == {"1", "2"}

    async def test_search_escapes_wildcards(self, in_memory_db):
        """Test that % in a search term is matched literally."""
        source = await add_source("alice", "https://example.com/feed.xml")
        await add_articles(source.id, [
            {"title": "100% done", "url": "https://e.com/1", "guid": "1"},
            {"title": "100 percent", "url": "https://e.com/2", "guid": "2"},
        ])

        articles, _ = await list_articles(owner_id="alice", search="100%")

        assert [a.guid for a in articles] == ["1"]

    async def test_filter_by_source_url(self, in_memory_db):
        """Test the cross-account listing filtered by feed URL."""
        a = await add_source("alice", "https://a.example.com/feed")
        b = await add_source("bob", "https://b.example.com/feed")
        await add_articles(a.id, _rows(2, prefix="a"))
        await add_articles(b.id, _rows(1, prefix="b"))

        everything, _ = await list_articles()
        only_b, _ = await list_articles(source_url="https://b.example.com/feed")

        assert len(everything) == 3
        assert [x.guid for x in only_b] == ["b-0"]
        assert await list_discovery_sources() == [
            "https://a.example.com/feed",
            "https://b.example.com/feed",
        ]

    async def test_malformed_cursor_rejected(self, in_memory_db):
        """Test that a garbage cursor raises ValueError."""
        with pytest.raises(ValueError, match="Invalid cursor"):
            await list_articles(cursor="not-a-cursor")

    async def test_cursor_encoding(self):
        """Test that a cursor decodes to its position."""
        created = datetime(2024, 1, 2, 3, 4, 5, 600000, tzinfo=timezone.utc)

        created_at, article_id = decode_cursor(encode_cursor(created, 42))

        assert article_id == 42
        assert created_at.startswith("2024-01-02T03:04:05.600000")


class TestSharing:
    """Tests for article share state."""

    async def test_share_is_idempotent(self, in_memory_db):
        """Test that sharing twice keeps the first token."""
        source = await add_source("alice", "https://example.com/feed.xml")
        [article] = await add_articles(source.id, _rows(1))

        first = await set_share_id(article.id, "alice", "token-1")
        second = await set_share_id(article.id, "alice", "token-2")

        assert first == "token-1"
        assert second == "token-1"

    async def test_share_other_account(self, in_memory_db):
        """Test that another account cannot share an article."""
        source = await add_source("alice", "https://example.com/feed.xml")
        [article] = await add_articles(source.id, _rows(1))

        assert await set_share_id(article.id, "bob", "token") is None

    async def test_shared_lookup_and_unshare(self, in_memory_db):
        """Test public lookup before and after unsharing."""
        source = await add_source("alice", "https://example.com/feed.xml")
        [article] = await add_articles(source.id, _rows(1))
        await set_share_id(article.id, "alice", "token-1")

        found = await get_shared_article("token-1")
        assert found is not None
        assert found[0].id == article.id
        assert found[1] == "https://example.com/feed.xml"

        assert await unshare_article(article.id, "alice") is True
        assert await get_shared_article("token-1") is None

        # Re-sharing reuses the kept token
        assert await set_share_id(article.id, "alice", "token-2") == "token-1"

    async def test_delete_is_soft_and_blocks_reingest(self, in_memory_db):
        """Test that a deleted article is hidden but its guid stays known."""
        source = await add_source("alice", "https://example.com/feed.xml")
        [article] = await add_articles(source.id, _rows(1))
        await set_share_id(article.id, "alice", "token-1")

        assert await delete_article(article.id, "alice") is True

        assert await get_article(article.id) is None
        assert await get_shared_article("token-1") is None
        articles, _ = await list_articles(owner_id="alice")
        assert articles == []
        assert await get_existing_guids(source.id, ["item-0"]) == {"item-0"}
        assert await add_articles(source.id, _rows(1)) == []

    async def test_delete_other_account(self, in_memory_db):
        """Test that another account cannot delete an article."""
        source = await add_source("alice", "https://example.com/feed.xml")
        [article] = await add_articles(source.id, _rows(1))

        assert await delete_article(article.id, "bob") is False


class TestPushSubscriptions:
    """Tests for push subscription storage."""

    async def test_register_and_list(self, in_memory_db):
        """Test registering an endpoint."""
        sub = await register_subscription(
            "alice", "https://push.example.com/1", {"auth": "a", "p256dh": "p"}
        )

        assert sub.active is True
        assert sub.keys == {"auth": "a", "p256dh": "p"}
        assert [s.endpoint for s in await list_active_subscriptions("alice")] == [
            "https://push.example.com/1"
        ]

    async def test_register_requires_keys(self, in_memory_db):
        """Test that incomplete subscriptions are rejected."""
        with pytest.raises(ValueError):
            await register_subscription("alice", "https://push.example.com/1", {"auth": "a"})

        with pytest.raises(ValueError):
            await register_subscription("alice", "", {"auth": "a", "p256dh": "p"})

    async def test_reregister_reactivates(self, in_memory_db):
        """Test that registering a deactivated endpoint reactivates it."""
        endpoint = "https://push.example.com/1"
        await register_subscription("alice", endpoint, {"auth": "a", "p256dh": "p"})
        await deactivate_subscription(endpoint)
        assert await list_active_subscriptions("alice") == []

        await register_subscription("alice", endpoint, {"auth": "b", "p256dh": "q"})

        [sub] = await list_active_subscriptions("alice")
        assert sub.keys["auth"] == "b"

    async def test_unregister(self, in_memory_db):
        """Test removing an endpoint."""
        endpoint = "https://push.example.com/1"
        await register_subscription("alice", endpoint, {"auth": "a", "p256dh": "p"})

        assert await unregister_subscription("bob", endpoint) is False
        assert await unregister_subscription("alice", endpoint) is True
        assert await list_active_subscriptions("alice") == []


class TestRunsAndTotals:
    """Tests for crawl run history and aggregate counts."""

    async def test_run_history(self, in_memory_db):
        """Test recording and listing runs."""
        source = await add_source("alice", "https://example.com/feed.xml")
        run_id = await start_run(source.id, RunTrigger.MANUAL)
        await finish_run(run_id, SourceStatus.COMPLETED, new_articles=3)

        [run] = await list_runs("alice")

        assert run.trigger == RunTrigger.MANUAL
        assert run.outcome == SourceStatus.COMPLETED
        assert run.new_articles == 3
        assert run.finished_at is not None
        assert await list_runs("bob") == []

    async def test_totals(self, in_memory_db):
        """Test aggregate article and run counts."""
        source = await add_source("alice", "https://example.com/feed.xml")
        added = await add_articles(source.id, _rows(3))
        await mark_notification_sent([added[0].id])

        done = await start_run(source.id, RunTrigger.SCHEDULED)
        await finish_run(done, SourceStatus.COMPLETED, new_articles=3)
        failed = await start_run(source.id, RunTrigger.SCHEDULED)
        await finish_run(failed, SourceStatus.FAILED, error="boom")
        await start_run(source.id, RunTrigger.MANUAL)

        totals = await get_totals("alice")

        assert totals["total_articles"] == 3
        assert totals["unnotified_articles"] == 2
        assert totals["runs"] == {"running": 1, "completed": 1, "failed": 1}

    async def test_totals_empty_account(self, in_memory_db):
        """Test totals for an account with nothing stored."""
        totals = await get_totals("nobody")

        assert totals["total_articles"] == 0
        assert totals["unnotified_articles"] == 0


class TestDatabaseLocation:
    """Tests for where the database file lives."""

    async def test_path_comes_from_config(self, tmp_path):
        """Test that the connection path is the configured db_path."""
        config = ServerConfig(db_path=tmp_path / "crawler.db")

        with patch("feed_crawler.storage.database.get_config", return_value=config):
            assert _get_db_path() == tmp_path / "crawler.db"

    async def test_env_override(self, monkeypatch, tmp_path):
        """Test that FEED_CRAWLER_DB_PATH sets the configured path."""
        monkeypatch.setenv("FEED_CRAWLER_DB_PATH", str(tmp_path / "env.db"))

        assert load_config().db_path == tmp_path / "env.db"
