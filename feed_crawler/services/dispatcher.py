"""Trigger dispatcher.

A periodic tick selects due sources and a manual trigger selects one source
on request. Both go through the same atomic acquire, then hand the run to a
bounded pool of workers that call the crawl executor.

A source is acquired (moved to ``running``) at submission time, before it
waits for a worker slot. A later tick or trigger for the same source is
therefore refused instead of being queued a second time.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional, Set

from feed_crawler.config import ServerConfig
from feed_crawler.models.schemas import CrawlerSettings, FeedSource, RunTrigger, SourceStatus
from feed_crawler.services.crawler import CrawlExecutor
from feed_crawler.services.enrichment import OpenAIEnricher
from feed_crawler.services.notifier import WebPushSender
from feed_crawler.services.schedule import is_due
from feed_crawler.storage import database

logger = logging.getLogger(__name__)


@dataclass
class TriggerResult:
    """Synchronous answer to a manual trigger."""

    source_id: int
    accepted: bool
    reason: str


class Dispatcher:
    """Periodic tick loop plus manual trigger, feeding a bounded worker pool."""

    def __init__(
        self,
        executor: CrawlExecutor,
        worker_count: int = 4,
        tick_interval: float = 60.0,
        clock: Callable[[], datetime] = database.utcnow,
    ):
        self.executor = executor
        self.worker_count = max(1, worker_count)
        self.tick_interval = tick_interval
        self.clock = clock
        self._slots = asyncio.Semaphore(self.worker_count)
        self._tasks: Set[asyncio.Task] = set()
        self._stopping = asyncio.Event()

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def tick(self, now: Optional[datetime] = None) -> List[int]:
        """Evaluate every active source once and submit the due ones.

        Args:
            now: Evaluation instant (defaults to the dispatcher clock)

        Returns:
            IDs of sources that were acquired and submitted
        """
        now = now or self.clock()
        sources = await database.list_sources(active_only=True)
        settings_by_owner: Dict[str, CrawlerSettings] = {}
        submitted = []

        for source in sources:
            try:
                settings = settings_by_owner.get(source.owner_id)
                if settings is None:
                    settings = await database.get_settings(source.owner_id)
                    settings_by_owner[source.owner_id] = settings

                if not settings.enabled or not is_due(source, settings, now):
                    continue

                if await self._submit(source, RunTrigger.SCHEDULED, last_run_at=source.last_run_at):
                    submitted.append(source.id)
                else:
                    logger.debug(f"Source {source.id} is due but already running or just ran")
            except Exception as e:
                logger.error(f"Could not schedule source {source.id}: {e}")

        if submitted:
            logger.info(f"Tick submitted {len(submitted)} source(s): {submitted}")
        return submitted

    async def trigger(self, owner_id: str, source_id: int) -> TriggerResult:
        """Run a source now, bypassing its schedule.

        The active/running guard still applies: an inactive or running source
        is refused, not queued.

        Args:
            owner_id: Account requesting the run
            source_id: Source to crawl

        Returns:
            TriggerResult saying whether the run was accepted and why
        """
        source = await database.get_source(source_id, owner_id=owner_id)
        if source is None:
            return TriggerResult(source_id, False, "Source not found")

        if not source.is_active:
            return TriggerResult(source_id, False, "Source is inactive")

        if not await self._submit(source, RunTrigger.MANUAL):
            logger.info(f"Manual trigger refused for source {source_id}: already running")
            return TriggerResult(source_id, False, "Source is already running")

        logger.info(f"Manual trigger accepted for source {source_id}")
        return TriggerResult(source_id, True, "Crawl started")

    async def _submit(self, source: FeedSource, trigger: RunTrigger, **expected) -> bool:
        if not await database.try_acquire(source.id, **expected):
            return False

        task = asyncio.create_task(self._work(source.id, trigger))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return True

    async def _work(self, source_id: int, trigger: RunTrigger) -> None:
        started = False
        try:
            async with self._slots:
                source = await database.get_source(source_id)
                if source is None:
                    logger.info(f"Source {source_id} was removed before its crawl started")
                    return
                started = True
                await self.executor.execute(source, trigger)
        except Exception:
            logger.exception(f"Crawl of source {source_id} crashed")
        finally:
            if not started:
                # The executor releases once entered; before that the run is ours
                await self._release_unstarted(source_id)

    async def _release_unstarted(self, source_id: int) -> None:
        try:
            await database.release(source_id, SourceStatus.FAILED)
        except Exception:
            logger.exception(f"Could not release source {source_id}")

    async def run(self) -> None:
        """Tick until ``stop`` is called, then wait for in-flight crawls."""
        reset = await database.reset_stale_running()
        if reset:
            logger.warning(f"Reset {reset} source(s) left running by a previous process")

        logger.info(
            f"Dispatcher started: tick every {self.tick_interval}s, {self.worker_count} worker(s)"
        )

        while not self._stopping.is_set():
            try:
                await self.tick()
            except Exception:
                logger.exception("Dispatcher tick failed")

            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.tick_interval)
            except asyncio.TimeoutError:
                pass

        await self.drain()
        logger.info("Dispatcher stopped")

    def stop(self) -> None:
        self._stopping.set()

    async def drain(self) -> None:
        """Wait for every submitted crawl to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


def create_dispatcher(config: ServerConfig) -> Dispatcher:
    """Wire a dispatcher, executor and collaborators from configuration.

    Enrichment is enabled only when an API key is configured; push delivery
    only when both VAPID keys are configured.
    """
    enricher = None
    if config.openai_api_key:
        enricher = OpenAIEnricher(
            api_key=config.openai_api_key,
            model=config.enrich_model,
            base_url=config.openai_base_url,
            timeout=config.enrich_timeout_seconds,
        )
    else:
        logger.info("No OPENAI_API_KEY configured, articles will be stored without enrichment")

    sender = None
    if config.push_configured:
        sender = WebPushSender(
            private_key=config.vapid_private_key,
            contact=config.vapid_contact,
            timeout=config.push_timeout_seconds,
            ttl=config.push_ttl_seconds,
        )
    else:
        logger.info("WEB_PUSH_PUBLIC_KEY and WEB_PUSH_PRIVATE_KEY not set, push notifications are disabled")

    executor = CrawlExecutor(
        enricher=enricher,
        sender=sender,
        fetch_timeout=config.fetch_timeout_seconds,
        user_agent=config.user_agent,
    )
    return Dispatcher(
        executor,
        worker_count=config.worker_count,
        tick_interval=config.tick_interval_seconds,
    )
