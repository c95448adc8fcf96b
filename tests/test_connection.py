"""Tests for queuespine.connection: ConnectionProvider."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from queuespine.config import QueueSettings
from queuespine.connection import ConnectionProvider, create_client, is_memory_url
from queuespine.errors import BrokerConnectionError, MissingConnectionError, UnsupportedBrokerError
from queuespine.models import JobOptions


def _failing_client(*_args):
    client = MagicMock()
    client.ping = AsyncMock(side_effect=RedisConnectionError("refused"))
    client.aclose = AsyncMock()
    return client


class TestCreateClient:
    def test_unsupported_scheme(self):
        with pytest.raises(UnsupportedBrokerError, match="amqp"):
            create_client("amqp://localhost")

    def test_memory_url_detection(self):
        assert is_memory_url("memory://x")
        assert not is_memory_url("redis://localhost:6379/0")

    def test_redis_client_is_lazy(self):
        # No I/O happens until the first command
        client = create_client("redis://localhost:6399/0")
        assert client is not None


class TestConnectionProvider:
    @pytest.mark.asyncio
    async def test_get_is_cached(self, memory_url):
        provider = ConnectionProvider(memory_url)
        first = await provider.get()
        assert await provider.get() is first
        assert provider.connected
        await provider.reset()

    @pytest.mark.asyncio
    async def test_concurrent_get_creates_one_handle(self, memory_url):
        calls = []

        def factory(url):
            calls.append(url)
            return create_client(url)

        provider = ConnectionProvider(memory_url, client_factory=factory)
        brokers = await asyncio.gather(*(provider.get() for _ in range(10)))

        assert len(calls) == 1
        assert all(b is brokers[0] for b in brokers)
        await provider.reset()

    @pytest.mark.asyncio
    async def test_missing_connection(self):
        provider = ConnectionProvider(settings=QueueSettings(connection=None))
        with pytest.raises(MissingConnectionError):
            await provider.get()

    @pytest.mark.asyncio
    async def test_unreachable_is_not_cached(self):
        provider = ConnectionProvider("redis://unreachable:6379/0", client_factory=_failing_client)

        with pytest.raises(BrokerConnectionError):
            await provider.get()
        assert not provider.connected

    @pytest.mark.asyncio
    async def test_reset_reconnects(self, memory_url):
        provider = ConnectionProvider(memory_url)
        first = await provider.get()
        await provider.reset()
        assert not provider.connected

        second = await provider.get()
        assert second is not first
        await provider.reset()

    @pytest.mark.asyncio
    async def test_reset_without_connection(self):
        await ConnectionProvider("memory://never").reset()

    @pytest.mark.asyncio
    async def test_memory_url_shared_between_providers(self, memory_url):
        one = ConnectionProvider(memory_url)
        two = ConnectionProvider(memory_url)

        await (await one.get()).enqueue("q", "t", {"n": 1}, JobOptions(job_id="shared"))
        job = await (await two.get()).fetch("q")

        assert job is not None
        assert job.id == "shared"
        await one.reset()
        await two.reset()

    @pytest.mark.asyncio
    async def test_settings_apply_to_broker(self, memory_url):
        settings = QueueSettings(connection=memory_url, key_prefix="custom")
        provider = ConnectionProvider(settings=settings)
        broker = await provider.get()
        assert broker.keys("q").wait == "custom:q:wait"
        await provider.reset()
