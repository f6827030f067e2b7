"""Data models for feed_crawler.

This module defines the core data structures for crawler settings, feed
sources, articles, push subscriptions and crawl runs.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional


class ScheduleMode(str, Enum):
    """How often a source is crawled."""

    INHERIT = "inherit"
    EVERY_HOURS = "every_hours"
    DAILY = "daily"


class SourceStatus(str, Enum):
    """Run state of a feed source."""

    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class RunTrigger(str, Enum):
    SCHEDULED = "scheduled"
    MANUAL = "manual"


@dataclass
class CrawlerSettings:
    """Account-wide crawler configuration (one row per owner)."""

    owner_id: str
    max_items_per_source: int = 5
    enabled: bool = True
    schedule_mode: ScheduleMode = ScheduleMode.EVERY_HOURS
    schedule_value: str = "6"
    timezone: str = "UTC"
    ai_language: str = "auto"


@dataclass
class FeedSource:
    """Represents a feed the crawler fetches on a schedule."""

    id: int
    owner_id: str
    feed_url: str
    is_active: bool = True
    status: SourceStatus = SourceStatus.IDLE
    last_run_at: Optional[datetime] = None
    schedule_mode: ScheduleMode = ScheduleMode.INHERIT
    schedule_value: Optional[str] = None


@dataclass
class Article:
    """Represents an ingested (and possibly enriched) feed entry."""

    id: int
    source_id: int
    title: str
    url: str
    guid: str
    summary: str = ""
    formatted_content: str = ""
    original_content: str = ""
    notification_content: str = ""
    image_url: Optional[str] = None
    published_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    share_id: Optional[str] = None
    is_shared: bool = False
    notification_sent: bool = False
    is_deleted: bool = False


@dataclass
class PushSubscription:
    """A push endpoint registered by an account."""

    id: int
    owner_id: str
    endpoint: str
    keys: dict = field(default_factory=dict)
    active: bool = True


@dataclass
class CrawlRun:
    """History record for one acquired crawl of a source."""

    id: int
    source_id: int
    trigger: RunTrigger
    started_at: datetime
    finished_at: Optional[datetime] = None
    outcome: Optional[SourceStatus] = None
    new_articles: int = 0
    error: Optional[str] = None
