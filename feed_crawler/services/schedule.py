"""Schedule resolution.

Decides whether a feed source is due for a crawl. Everything here is pure:
no I/O and no clock reads, the caller passes ``now`` in.

A source either inherits the account schedule or overrides it with its own
``every_hours`` / ``daily`` setting. ``daily`` is evaluated on the account's
local wall clock, so DST shifts move the trigger instant but never skip or
repeat a calendar day.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone, tzinfo
from typing import Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from feed_crawler.models.schemas import CrawlerSettings, FeedSource, ScheduleMode

logger = logging.getLogger(__name__)

_DAILY_PATTERN = re.compile(r"^(\d{1,2}):(\d{2})$")


class ScheduleError(ValueError):
    """Raised when a schedule value cannot be interpreted."""


@dataclass(frozen=True)
class Schedule:
    """A resolved, validated schedule."""

    mode: ScheduleMode
    interval: Optional[timedelta] = None
    at: Optional[time] = None

    def describe(self) -> str:
        if self.mode == ScheduleMode.EVERY_HOURS:
            hours = int(self.interval.total_seconds() // 3600)
            return f"every {hours} hour(s)"
        return f"daily at {self.at.strftime('%H:%M')}"


def resolve_schedule(source: FeedSource, settings: CrawlerSettings) -> Tuple[ScheduleMode, str]:
    """Pick the schedule that applies to a source.

    Returns:
        Tuple of (mode, raw value); mode is never ``inherit``
    """
    if source.schedule_mode == ScheduleMode.INHERIT:
        return settings.schedule_mode, settings.schedule_value or ""
    return source.schedule_mode, source.schedule_value or ""


def parse_schedule(mode: ScheduleMode, value: str) -> Schedule:
    """Validate a raw schedule value.

    Args:
        mode: ``every_hours`` or ``daily``
        value: Positive whole hour count, or ``HH:MM`` local time

    Raises:
        ScheduleError: If the value is malformed for the mode
    """
    value = (value or "").strip()

    if mode == ScheduleMode.EVERY_HOURS:
        if not value.isdigit():
            raise ScheduleError(f"Hour interval must be a positive whole number, got '{value}'")
        hours = int(value)
        if hours <= 0:
            raise ScheduleError(f"Hour interval must be greater than zero, got '{value}'")
        return Schedule(mode=mode, interval=timedelta(hours=hours))

    if mode == ScheduleMode.DAILY:
        match = _DAILY_PATTERN.match(value)
        if not match:
            raise ScheduleError(f"Daily time must be HH:MM, got '{value}'")
        hour, minute = int(match.group(1)), int(match.group(2))
        if hour > 23 or minute > 59:
            raise ScheduleError(f"Daily time out of range: '{value}'")
        return Schedule(mode=mode, at=time(hour, minute))

    raise ScheduleError(f"Schedule mode '{mode.value}' cannot be evaluated directly")


def get_timezone(name: Optional[str]) -> tzinfo:
    """Resolve an IANA timezone name, falling back to UTC."""
    if not name:
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown timezone '{name}', using UTC")
        return timezone.utc


def schedule_error(source: FeedSource, settings: CrawlerSettings) -> Optional[str]:
    """Describe why a source's schedule is unusable, or None if it is valid."""
    mode, value = resolve_schedule(source, settings)
    try:
        parse_schedule(mode, value)
    except ScheduleError as e:
        return str(e)
    return None


def describe_schedule(source: FeedSource, settings: CrawlerSettings) -> Optional[str]:
    mode, value = resolve_schedule(source, settings)
    try:
        return parse_schedule(mode, value).describe()
    except ScheduleError:
        return None


def is_due(source: FeedSource, settings: CrawlerSettings, now: datetime) -> bool:
    """Return whether a source should be crawled at ``now``.

    A malformed schedule is never due. A source that has never run is always
    due under a valid schedule.

    Args:
        source: The feed source (its ``last_run_at`` drives the decision)
        settings: The owning account's settings
        now: Evaluation instant; naive values are taken as UTC
    """
    mode, value = resolve_schedule(source, settings)
    try:
        schedule = parse_schedule(mode, value)
    except ScheduleError as e:
        logger.debug(f"Source {source.id} has an invalid schedule: {e}")
        return False

    now = _aware(now)
    last_run = _aware(source.last_run_at) if source.last_run_at else None

    if last_run is None:
        return True

    if schedule.mode == ScheduleMode.EVERY_HOURS:
        return now - last_run >= schedule.interval

    tz = get_timezone(settings.timezone)
    local_now = now.astimezone(tz)
    if local_now.time() < schedule.at:
        return False

    # Any run on the current local day consumes it, manual or scheduled
    return last_run.astimezone(tz).date() < local_now.date()


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
