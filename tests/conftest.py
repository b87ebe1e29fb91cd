"""Shared fixtures for the crawler tests.

Redis is replaced by fakeredis, HTTP by a fake aiohttp session and MongoDB
by the file storage backend, so no test needs live infrastructure.
"""

from __future__ import annotations

import fakeredis
import pytest
import pytest_asyncio

from knowledge_crawler.crawler.job_queue import JobQueue
from knowledge_crawler.storage.database import DatabaseManager
from knowledge_crawler.utils.config import DatabaseConfig

from .helpers import FakeClock


# ---------------------------------------------------------------------------
# Clock and broker
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest_asyncio.fixture
async def redis_client():
    client = fakeredis.FakeAsyncRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest_asyncio.fixture
async def job_queue(redis_client, clock) -> JobQueue:
    return JobQueue(redis_client, name="test-queue", max_attempts=3,
                    backoff_base_delay=2.0, clock=clock)


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def database(tmp_path) -> DatabaseManager:
    manager = DatabaseManager(
        DatabaseConfig(type="file", file={"data_directory": str(tmp_path / "data")})
    )
    await manager.initialize()
    yield manager
    await manager.close()
