"""Services for feed_crawler."""

from .crawler import CrawlExecutor, CrawlResult, select_newest
from .dispatcher import Dispatcher, TriggerResult, create_dispatcher
from .enrichment import Enrichment, EnrichmentError, OpenAIEnricher
from .feed_parser import FeedFetchError, ParsedEntry, fetch_feed, parse_entries
from .notifier import DeliveryResult, WebPushSender, notify_new_articles
from .schedule import is_due, parse_schedule, resolve_schedule

__all__ = [
    "CrawlExecutor",
    "CrawlResult",
    "select_newest",
    "Dispatcher",
    "TriggerResult",
    "create_dispatcher",
    "Enrichment",
    "EnrichmentError",
    "OpenAIEnricher",
    "FeedFetchError",
    "ParsedEntry",
    "fetch_feed",
    "parse_entries",
    "DeliveryResult",
    "WebPushSender",
    "notify_new_articles",
    "is_due",
    "parse_schedule",
    "resolve_schedule",
]
