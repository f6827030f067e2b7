"""feed_crawler - scheduled multi-source feed crawler with enrichment, sharing and push fan-out."""

__version__ = "0.1.0"
