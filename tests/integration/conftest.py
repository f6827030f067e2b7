"""Fixtures for MCP integration tests.

The server is exercised through a real MCP client session connected over
in-memory streams, with storage patched to an in-memory SQLite database.
"""

import pytest
from mcp.shared.memory import create_connected_server_and_client_session

from feed_crawler.server.app import create_mcp_server
from feed_crawler.tools import feed_tools


@pytest.fixture
async def mcp_session(in_memory_db):
    """Yield (session, transport_name) for a connected client."""
    server = create_mcp_server()
    async with create_connected_server_and_client_session(server._mcp_server) as session:
        yield session, "memory"


@pytest.fixture
def dispatcher_slot():
    """Restore the module-level dispatcher after a test installs its own."""
    yield feed_tools.set_dispatcher
    feed_tools.set_dispatcher(None)

