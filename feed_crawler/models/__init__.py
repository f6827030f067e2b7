"""Data models for feed_crawler."""
