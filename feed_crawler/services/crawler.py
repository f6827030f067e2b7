"""Crawl executor.

Runs one crawl of an already-acquired feed source: fetch, parse, dedupe,
cap, enrich, store, release, then notify.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from feed_crawler.models.schemas import (
    Article,
    CrawlerSettings,
    FeedSource,
    RunTrigger,
    SourceStatus,
)
from feed_crawler.services.enrichment import Enricher, EnrichmentError
from feed_crawler.services.feed_parser import (
    DEFAULT_USER_AGENT,
    FeedFetchError,
    ParsedEntry,
    fetch_feed,
    parse_entries,
)
from feed_crawler.services.notifier import FanOutReport, PushSender, notify_new_articles
from feed_crawler.storage import database

logger = logging.getLogger(__name__)


@dataclass
class CrawlResult:
    """Outcome of a single crawl run."""

    source_id: int
    outcome: SourceStatus
    articles: List[Article] = field(default_factory=list)
    entries_seen: int = 0
    duplicates: int = 0
    overflow: int = 0
    enrichment_failures: int = 0
    error: Optional[str] = None
    notifications: Optional[FanOutReport] = None


def select_newest(entries: Iterable[ParsedEntry], limit: int) -> List[ParsedEntry]:
    """Keep at most ``limit`` entries, newest published first.

    Entries without a publication date sort after dated ones; ties keep feed
    order.
    """
    if limit <= 0:
        return []

    def sort_key(item):
        position, entry = item
        if entry.published_at is None:
            return (1, 0.0, position)
        return (0, -entry.published_at.timestamp(), position)

    ranked = sorted(enumerate(entries), key=sort_key)
    return [entry for _, entry in ranked[:limit]]


class CrawlExecutor:
    """Executes crawls for sources the caller has acquired."""

    def __init__(
        self,
        enricher: Optional[Enricher] = None,
        sender: Optional[PushSender] = None,
        fetch_timeout: float = 30.0,
        user_agent: str = DEFAULT_USER_AGENT,
    ):
        self.enricher = enricher
        self.sender = sender
        self.fetch_timeout = fetch_timeout
        self.user_agent = user_agent

    async def execute(self, source: FeedSource, trigger: RunTrigger = RunTrigger.SCHEDULED) -> CrawlResult:
        """Crawl a source and release it.

        The source must already be in the ``running`` state (acquired via
        ``database.try_acquire``). It is always released, as ``failed`` when
        the feed could not be fetched or parsed and ``completed`` otherwise.

        Args:
            source: The acquired source
            trigger: What started this run (recorded in run history)

        Returns:
            CrawlResult describing the run
        """
        started = time.monotonic()
        logger.info(f"Crawling source {source.id} ({trigger.value}): {source.feed_url}")
        result = CrawlResult(source_id=source.id, outcome=SourceStatus.FAILED)
        run_id = None
        try:
            run_id = await database.start_run(source.id, trigger)
            settings = await database.get_settings(source.owner_id)
            await self._crawl(source, settings, result)
            result.outcome = SourceStatus.COMPLETED
        except FeedFetchError as e:
            logger.error(f"Source {source.id} failed: {e}")
            result.error = str(e)
        except Exception as e:
            result.error = f"Unexpected error: {e}"
            raise
        finally:
            await database.release(source.id, result.outcome)
            if run_id is not None:
                await database.finish_run(run_id, result.outcome, len(result.articles), result.error)
            logger.info(
                f"Source {source.id} {result.outcome.value} in {time.monotonic() - started:.1f}s: "
                f"{len(result.articles)} new, {result.duplicates} duplicate, {result.overflow} over limit"
            )

        if result.articles and self.sender is not None:
            try:
                result.notifications = await notify_new_articles(source.owner_id, result.articles, self.sender)
            except Exception as e:
                logger.error(f"Notification fan-out failed for source {source.id}: {e}")

        return result

    async def _crawl(self, source: FeedSource, settings: CrawlerSettings, result: CrawlResult) -> None:
        document = await fetch_feed(source.feed_url, timeout=self.fetch_timeout, user_agent=self.user_agent)

        candidates: List[ParsedEntry] = []
        seen = set()
        for entry in parse_entries(document):
            result.entries_seen += 1
            if entry.guid in seen:
                result.duplicates += 1
                continue
            seen.add(entry.guid)
            candidates.append(entry)

        existing = await database.get_existing_guids(source.id, [e.guid for e in candidates])
        fresh = [e for e in candidates if e.guid not in existing]
        result.duplicates += len(candidates) - len(fresh)

        kept = select_newest(fresh, settings.max_items_per_source)
        result.overflow = len(fresh) - len(kept)

        rows = []
        for index, entry in enumerate(kept, start=1):
            logger.debug(f"[{index}/{len(kept)}] Enriching: {entry.title[:50]}")
            rows.append(await self._build_row(entry, settings, result))

        if rows:
            result.articles = await database.add_articles(source.id, rows)

    async def _build_row(self, entry: ParsedEntry, settings: CrawlerSettings, result: CrawlResult) -> dict:
        row = {
            "title": entry.title,
            "url": entry.url,
            "guid": entry.guid,
            "summary": "",
            "formatted_content": entry.content,
            "original_content": entry.content,
            "notification_content": "",
            "image_url": entry.image_url,
            "published_at": entry.published_at,
        }

        if self.enricher is None:
            return row

        try:
            enrichment = await self.enricher.enrich(entry, settings.ai_language)
        except EnrichmentError as e:
            logger.warning(f"Enrichment failed for '{entry.title[:50]}', storing raw content: {e}")
            result.enrichment_failures += 1
            return row

        row.update(
            summary=enrichment.summary,
            formatted_content=enrichment.formatted_content or entry.content,
            notification_content=enrichment.notification_content,
        )
        if enrichment.title:
            row["title"] = enrichment.title
        return row
