"""Logging setup for feed_crawler.

Logs go to stderr because stdout carries the MCP STDIO transport.
"""

import logging
import sys

from feed_crawler.config import ServerConfig

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

logger = logging.getLogger("feed_crawler")


def setup_logging(config: ServerConfig) -> logging.Logger:
    """Configure the ``feed_crawler`` logger hierarchy.

    Args:
        config: Server configuration (log level and optional log file)

    Returns:
        The package root logger
    """
    level = getattr(logging, config.log_level.upper(), logging.INFO)
    formatter = logging.Formatter(LOG_FORMAT)

    # Replace handlers so repeated setup (tests, reloads) does not duplicate output
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)

    if config.log_file:
        file_handler = logging.FileHandler(config.log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    logger.setLevel(level)
    logger.propagate = False
    return logger
