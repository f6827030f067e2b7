"""MCP tools for feed_crawler."""
