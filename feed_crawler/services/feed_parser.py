"""Feed parser service.

This module fetches RSS/Atom feeds and turns them into entries ready for
deduplication and enrichment.
"""

import logging
import httpx
import feedparser
from bs4 import BeautifulSoup
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterator, Optional
from email.utils import parsedate_to_datetime
from urllib.parse import urlsplit, urlunsplit

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "FeedCrawler/1.0 (RSS Feed Crawler)"


class FeedFetchError(Exception):
    """The feed could not be downloaded or is not a usable feed document."""


@dataclass
class ParsedEntry:
    """Represents a single entry from a feed."""

    title: str
    url: str
    guid: str
    published_at: Optional[datetime]
    content: str
    summary: str
    image_url: Optional[str]


async def fetch_feed(
    feed_url: str,
    timeout: float = 30.0,
    user_agent: str = DEFAULT_USER_AGENT,
) -> str:
    """Download a feed document.

    Args:
        feed_url: URL of the feed
        timeout: Overall request timeout in seconds
        user_agent: User-Agent header to send

    Returns:
        The raw document text

    Raises:
        FeedFetchError: On network errors, timeouts and non-2xx responses
    """
    logger.info(f"Fetching feed: {feed_url}")

    async with httpx.AsyncClient(
        follow_redirects=True,
        timeout=timeout,
        headers={"User-Agent": user_agent},
    ) as client:
        try:
            response = await client.get(feed_url)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise FeedFetchError(f"Failed to fetch feed {feed_url}: {e}") from e

    return response.text


def parse_entries(document: str) -> Iterator[ParsedEntry]:
    """Parse a feed document into entries, lazily.

    Entries that cannot be turned into a ParsedEntry are logged and skipped.

    Args:
        document: Raw RSS/Atom text

    Yields:
        ParsedEntry objects in feed order

    Raises:
        FeedFetchError: If the document is not a feed at all
    """
    feed = feedparser.parse(document)

    if feed.bozo and not feed.entries:
        raise FeedFetchError(f"Feed parsing error: {feed.bozo_exception}")

    return _iter_entries(feed.entries)


def _iter_entries(entries) -> Iterator[ParsedEntry]:
    for position, entry in enumerate(entries):
        try:
            parsed = _parse_entry(entry)
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            logger.warning(f"Skipping entry {position}: {e}")
            continue

        if parsed is None:
            logger.warning(f"Skipping entry {position}: missing title or link")
            continue

        yield parsed


def _parse_entry(entry: dict) -> Optional[ParsedEntry]:
    title = (entry.get("title") or "").strip()
    if not title:
        return None

    url = (entry.get("link") or "").strip()
    if not url:
        # Try alternate link
        for link in entry.get("links", []):
            if link.get("rel") == "alternate" or link.get("href"):
                url = link.get("href", "")
                break

    guid = (entry.get("id") or "").strip()
    if not guid and url:
        guid = normalize_url(url)

    if not url or not guid:
        return None

    content = ""
    if entry.get("content"):
        content = entry["content"][0].get("value", "") or ""
    summary = entry.get("summary") or entry.get("description") or ""
    if not content:
        content = summary

    return ParsedEntry(
        title=title,
        url=url,
        guid=guid,
        published_at=_parse_date(entry),
        content=content,
        summary=summary,
        image_url=_extract_image(entry, content),
    )


def normalize_url(url: str) -> str:
    """Normalize a URL for use as a dedup key.

    Lowercases scheme and host, drops the fragment and a trailing slash.
    """
    parts = urlsplit(url.strip())
    path = parts.path.rstrip("/") if parts.path != "/" else ""
    return urlunsplit((
        parts.scheme.lower(),
        parts.netloc.lower(),
        path,
        parts.query,
        "",
    ))


def _extract_image(entry: dict, content: str) -> Optional[str]:
    for field in ("media_content", "media_thumbnail"):
        for media in entry.get(field, []) or []:
            url = media.get("url")
            if url and media.get("medium", "image") == "image":
                return url

    for enclosure in entry.get("enclosures", []) or []:
        if (enclosure.get("type") or "").startswith("image/") and enclosure.get("href"):
            return enclosure["href"]

    if content and "<img" in content:
        img = BeautifulSoup(content, "lxml").find("img")
        if img and img.get("src"):
            return img["src"]

    return None


def html_to_text(html: str) -> str:
    """Strip markup from entry content."""
    if not html:
        return ""
    return BeautifulSoup(html, "lxml").get_text("\n", strip=True)


def _parse_date(entry: dict) -> Optional[datetime]:
    """Parse the publication date from a feed entry.

    Args:
        entry: Feed entry dict

    Returns:
        Timezone-aware datetime (UTC when the feed gives no offset), None otherwise
    """
    for field in ["published", "updated", "created"]:
        # Already a time struct (from feedparser), always in UTC
        parsed = entry.get(f"{field}_parsed")
        if parsed:
            try:
                return datetime(*parsed[:6], tzinfo=timezone.utc)
            except (ValueError, TypeError):
                pass

        date_str = entry.get(field, "")
        if not date_str:
            continue

        # Try RFC 2822 format (common in RSS)
        try:
            return _as_utc(parsedate_to_datetime(date_str))
        except (ValueError, TypeError):
            pass

        # Try ISO format
        try:
            return _as_utc(datetime.fromisoformat(date_str.replace("Z", "+00:00")))
        except (ValueError, AttributeError):
            pass

    return None


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
