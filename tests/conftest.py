"""Shared fixtures for feed_crawler tests."""

import pytest
import aiosqlite
from cryptography.hazmat.primitives import serialization
from py_vapid import Vapid01
from py_vapid.utils import b64urlencode
from unittest.mock import patch, AsyncMock

from feed_crawler.storage.database import init_database


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
async def in_memory_db():
    """Create an in-memory database for testing."""
    db = await aiosqlite.connect(":memory:")
    db.row_factory = aiosqlite.Row
    await init_database(db)

    # Patch get_database to return our in-memory connection
    with patch("feed_crawler.storage.database.get_database", AsyncMock(return_value=db)):
        yield db

    await db.close()


@pytest.fixture
def vapid_keys():
    """Fresh VAPID key pair as (private scalar, public point), base64url encoded."""
    vapid = Vapid01()
    vapid.generate_keys()
    private = vapid.private_key.private_numbers().private_value.to_bytes(32, "big")
    public = vapid.public_key.public_bytes(
        serialization.Encoding.X962, serialization.PublicFormat.UncompressedPoint
    )
    return b64urlencode(private), b64urlencode(public)
