"""Storage layer for feed_crawler."""

from .database import (
    get_database,
    init_database,
    close_database,
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
    get_existing_guids,
    add_articles,
    get_article,
    list_articles,
    list_discovery_sources,
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

__all__ = [
    "get_database",
    "init_database",
    "close_database",
    "get_settings",
    "update_settings",
    "add_source",
    "update_source",
    "remove_source",
    "get_source",
    "list_sources",
    "try_acquire",
    "release",
    "reset_stale_running",
    "get_existing_guids",
    "add_articles",
    "get_article",
    "list_articles",
    "list_discovery_sources",
    "mark_notification_sent",
    "set_share_id",
    "unshare_article",
    "get_shared_article",
    "delete_article",
    "register_subscription",
    "unregister_subscription",
    "list_active_subscriptions",
    "deactivate_subscription",
    "start_run",
    "finish_run",
    "list_runs",
    "get_totals",
]
