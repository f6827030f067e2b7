"""Configuration for feed_crawler.

All settings come from environment variables prefixed with ``FEED_CRAWLER_``
(plus ``OPENAI_API_KEY`` / ``OPENAI_BASE_URL`` for the enrichment service and
``WEB_PUSH_PUBLIC_KEY`` / ``WEB_PUSH_PRIVATE_KEY`` / ``WEB_PUSH_CONTACT_EMAIL`` for
VAPID-signed push delivery).
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

_log = logging.getLogger(__name__)

ENV_PREFIX = "FEED_CRAWLER_"


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.environ.get(ENV_PREFIX + name)
    if value is None or value.strip() == "":
        return default
    return value.strip()


def _env_int(name: str, default: int, minimum: int = 1) -> int:
    raw = _env(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        _log.warning(f"Ignoring invalid {ENV_PREFIX}{name}={raw!r}, using {default}")
        return default
    return max(value, minimum)


def _env_float(name: str, default: float) -> float:
    raw = _env(name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError:
        _log.warning(f"Ignoring invalid {ENV_PREFIX}{name}={raw!r}, using {default}")
        return default
    return value if value > 0 else default


@dataclass
class ServerConfig:
    """Runtime configuration for the crawler server."""

    name: str = "feed_crawler"
    log_level: str = "INFO"
    log_file: Optional[str] = None

    db_path: Path = Path.home() / ".feed_crawler" / "feed_crawler.db"

    tick_interval_seconds: float = 60.0
    worker_count: int = 4

    fetch_timeout_seconds: float = 30.0
    enrich_timeout_seconds: float = 300.0
    push_timeout_seconds: float = 10.0
    user_agent: str = "FeedCrawler/1.0 (RSS Feed Crawler)"

    openai_api_key: Optional[str] = None
    openai_base_url: Optional[str] = None
    enrich_model: str = "gpt-4o-mini"

    # VAPID application server keys, base64url encoded (raw P-256 points)
    vapid_public_key: Optional[str] = None
    vapid_private_key: Optional[str] = None
    vapid_contact: str = "mailto:admin@example.com"
    push_ttl_seconds: int = 2419200

    page_size: int = 20
    search_max_length: int = 100

    @property
    def push_configured(self) -> bool:
        return bool(self.vapid_public_key and self.vapid_private_key)


def load_config() -> ServerConfig:
    """Build a ServerConfig from the current environment.

    Returns:
        A fresh ServerConfig instance
    """
    defaults = ServerConfig()
    db_path = os.environ.get("FEED_CRAWLER_DB_PATH")

    return ServerConfig(
        name=_env("NAME", defaults.name),
        log_level=_env("LOG_LEVEL", defaults.log_level).upper(),
        log_file=_env("LOG_FILE"),
        db_path=Path(db_path) if db_path else defaults.db_path,
        tick_interval_seconds=_env_float("TICK_INTERVAL", defaults.tick_interval_seconds),
        worker_count=_env_int("WORKERS", defaults.worker_count),
        fetch_timeout_seconds=_env_float("FETCH_TIMEOUT", defaults.fetch_timeout_seconds),
        enrich_timeout_seconds=_env_float("ENRICH_TIMEOUT", defaults.enrich_timeout_seconds),
        push_timeout_seconds=_env_float("PUSH_TIMEOUT", defaults.push_timeout_seconds),
        user_agent=_env("USER_AGENT", defaults.user_agent),
        openai_api_key=os.environ.get("OPENAI_API_KEY") or None,
        openai_base_url=os.environ.get("OPENAI_BASE_URL") or None,
        enrich_model=_env("ENRICH_MODEL", defaults.enrich_model),
        vapid_public_key=os.environ.get("WEB_PUSH_PUBLIC_KEY", "").strip() or None,
        vapid_private_key=os.environ.get("WEB_PUSH_PRIVATE_KEY", "").strip() or None,
        vapid_contact=os.environ.get("WEB_PUSH_CONTACT_EMAIL", "").strip() or defaults.vapid_contact,
        push_ttl_seconds=_env_int("PUSH_TTL", defaults.push_ttl_seconds),
        page_size=_env_int("PAGE_SIZE", defaults.page_size),
        search_max_length=_env_int("SEARCH_MAX_LENGTH", defaults.search_max_length),
    )


_config: Optional[ServerConfig] = None


def get_config() -> ServerConfig:
    """Get the process-wide configuration, loading it on first use."""
    global _config

    if _config is None:
        _config = load_config()

    return _config
