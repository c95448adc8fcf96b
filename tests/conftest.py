"""
Shared pytest fixtures and configuration for queuespine tests.

This module provides:
- Settings and default-worker cleanup for test isolation
- Per-test in-memory broker URLs (fakeredis)
- A ready-to-use Worker that is stopped after the test
"""

from collections.abc import AsyncGenerator, Generator

import fakeredis
import pytest
import pytest_asyncio

from queuespine.broker import RedisBroker
from queuespine.config import QueueSettings, reset_settings
from queuespine.worker import Worker, reset_worker
from tests._support import memory_url as _memory_url

# Short poll interval keeps consumer loops responsive in tests
POLL_INTERVAL = 0.02


# =============================================================================
# Global State Cleanup
# =============================================================================


@pytest.fixture(autouse=True)
def clean_globals() -> Generator[None, None, None]:
    """Reset process settings and the default worker around every test."""
    reset_settings()
    reset_worker()
    yield
    reset_settings()
    reset_worker()


# =============================================================================
# Broker Fixtures
# =============================================================================


@pytest.fixture
def memory_url() -> str:
    return _memory_url()


@pytest.fixture
def settings(memory_url: str) -> QueueSettings:
    return QueueSettings(connection=memory_url, poll_interval_seconds=POLL_INTERVAL)


@pytest_asyncio.fixture
async def broker() -> AsyncGenerator[RedisBroker, None]:
    """A RedisBroker over a private fakeredis server."""
    client = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)
    broker = RedisBroker(client, prefix="test", blocking=False)
    await broker.connect()
    yield broker
    await broker.close()


@pytest_asyncio.fixture
async def worker(settings: QueueSettings) -> AsyncGenerator[Worker, None]:
    """A Worker on an isolated in-memory broker, stopped after the test."""
    w = Worker(settings=settings)
    yield w
    await w.stop()
