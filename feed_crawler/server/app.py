"""feed_crawler - MCP Server with Decorators

This module implements the MCP server using FastMCP with multi-transport support
(STDIO, SSE, and Streamable HTTP), applies the tool decorators (exception
handling, logging) and runs the crawl dispatcher next to the transport.
"""

import asyncio
import os
import sys
from typing import Optional

import click
from mcp.server.fastmcp import FastMCP
from mcp.server.transport_security import TransportSecuritySettings

from feed_crawler.config import ServerConfig, get_config
from feed_crawler.logging_config import setup_logging, logger
from feed_crawler.storage import database
from feed_crawler.tools import feed_tools as tools_module
from feed_crawler.tools.feed_tools import feed_tools


def create_mcp_server(config: Optional[ServerConfig] = None) -> FastMCP:
    """Create and configure the MCP server with decorators.

    Args:
        config: Optional server configuration

    Returns:
        Configured FastMCP server instance
    """
    if config is None:
        config = get_config()

    setup_logging(config)
    logger.info(f"Server config: {config.name} at log level {config.log_level}")

    # Configure DNS rebinding protection (disabled by default for development)
    dns_protection = os.getenv("MCP_DNS_REBINDING_PROTECTION", "false").lower() == "true"
    allowed_hosts_env = os.getenv("MCP_ALLOWED_HOSTS", "")
    allowed_hosts = [h.strip() for h in allowed_hosts_env.split(",") if h.strip()] if allowed_hosts_env else []

    logger.info(f"DNS rebinding protection: {'enabled' if dns_protection else 'disabled'}")
    if dns_protection and allowed_hosts:
        logger.info(f"Allowed hosts: {allowed_hosts}")

    mcp_server = FastMCP(
        config.name or "feed_crawler",
        transport_security=TransportSecuritySettings(
            enable_dns_rebinding_protection=dns_protection,
            allowed_hosts=allowed_hosts
        )
    )

    # Register all tools with the server
    register_tools(mcp_server)

    logger.info("Server initialization complete")
    return mcp_server


def register_tools(mcp_server: FastMCP) -> None:
    """Register all MCP tools with the server using decorators.

    Registers decorated functions directly with MCP to preserve function signatures
    for proper parameter introspection.
    """
    from feed_crawler.decorators import exception_handler, tool_logger

    for tool_func in feed_tools:
        # Apply decorator chain: exception_handler → tool_logger
        decorated_func = exception_handler(tool_logger(tool_func))

        tool_name = tool_func.__name__

        # Register directly with MCP
        mcp_server.tool(
            name=tool_name
        )(decorated_func)

        logger.debug(f"Registered feed tool: {tool_name}")

    logger.info(f"Server '{mcp_server.name}' initialized with {len(feed_tools)} tools")


# Create a server instance that can be imported by the MCP CLI
server = create_mcp_server()


async def _run_transport(transport: str, host: str, port: int) -> None:
    if transport == "stdio":
        logger.info("Starting server with STDIO transport")
        await server.run_stdio_async()
    elif transport == "sse":
        logger.info(f"Starting server with SSE transport on {host}:{port}")
        server.settings.host = host
        server.settings.port = port
        await server.run_sse_async()
    elif transport == "streamable-http":
        logger.info(f"Starting server with Streamable HTTP transport on {host}:{port}")
        server.settings.host = host
        server.settings.port = port
        server.settings.streamable_http_path = "/mcp"
        await server.run_streamable_http_async()
    else:
        raise ValueError(f"Unknown transport: {transport}")


@click.command()
@click.option(
    "--port",
    default=3001,
    help="Port to listen on for SSE or Streamable HTTP transport"
)
@click.option(
    "--host",
    default="127.0.0.1",
    help="Host to bind to (use 0.0.0.0 for Docker)"
)
@click.option(
    "--transport",
    type=click.Choice(["stdio", "sse", "streamable-http"]),
    default="stdio",
    help="Transport type (stdio, sse, or streamable-http)"
)
@click.option(
    "--scheduler/--no-scheduler",
    default=True,
    help="Run the periodic crawl dispatcher alongside the server"
)
def main(port: int, host: str, transport: str, scheduler: bool = True) -> int:
    """Run the feed_crawler server with specified transport."""
    async def run_server():
        """Inner async function to run the server and the dispatcher loop."""
        dispatcher = tools_module.get_dispatcher()
        dispatcher_task = asyncio.create_task(dispatcher.run()) if scheduler else None

        try:
            await _run_transport(transport, host, port)
        finally:
            if dispatcher_task is not None:
                dispatcher.stop()
                await dispatcher_task
            await database.close_database()

    try:
        asyncio.run(run_server())
        return 0
    except KeyboardInterrupt:
        logger.info("Server stopped by user")
        return 0
    except Exception as e:
        logger.error(f"Failed to start server: {e}", exc_info=True)
        return 1


def main_stdio() -> int:
    """Entry point for STDIO transport (convenience wrapper)."""
    return main.callback(port=3001, host="127.0.0.1", transport="stdio")


def main_http() -> int:
    """Entry point for Streamable HTTP transport (convenience wrapper)."""
    return main.callback(port=3001, host="127.0.0.1", transport="streamable-http")


def main_sse() -> int:
    """Entry point for SSE transport (convenience wrapper)."""
    return main.callback(port=3001, host="127.0.0.1", transport="sse")


if __name__ == "__main__":
    sys.exit(main())
