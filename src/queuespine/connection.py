"""Connection Provider: one shared, lazily-created broker handle.

Supported URL schemes
---------------------
==================  ========================================  ==============
Scheme              Example                                   Backend
==================  ========================================  ==============
``redis``           ``redis://localhost:6379/0``              Redis
``rediss``          ``rediss://cache.example.com:6380/0``     Redis over TLS
``unix``            ``unix:///var/run/redis.sock``            Redis socket
``memory``          ``memory://`` or ``memory://tests``       fakeredis
==================  ========================================  ==============

``memory://`` URLs need the ``memory`` extra (``pip install queuespine[memory]``).
Every provider in the process that uses the same ``memory://name`` URL talks
to the same fake server, so a second provider sees the jobs and recurring
registrations left by the first (useful for simulating a restart in tests).

Usage
-----
::

    provider = ConnectionProvider("redis://localhost:6379/0")
    broker = await provider.get()      # created and pinged once
    await broker.enqueue("email", "email.welcome", {"userId": "1"})
    await provider.reset()             # closes; next get() reconnects
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any
from urllib.parse import urlparse

from queuespine.broker import RedisBroker, Retention
from queuespine.config import QueueSettings, get_settings
from queuespine.errors import (
    BrokerConnectionError,
    MissingConnectionError,
    UnsupportedBrokerError,
)
from queuespine.logging import get_logger

__all__ = ["ConnectionProvider", "ClientFactory", "create_client", "is_memory_url"]

logger = get_logger(__name__)

ClientFactory = Callable[[str], Any]

_REDIS_SCHEMES = ("redis", "rediss", "unix")

# memory:// name -> fakeredis.FakeServer
_memory_servers: dict[str, Any] = {}


def is_memory_url(url: str) -> bool:
    return urlparse(url).scheme == "memory"


def _memory_client(url: str) -> Any:
    try:
        import fakeredis
    except ImportError as e:
        raise UnsupportedBrokerError(
            "memory:// URLs require fakeredis. Install queuespine[memory].",
            context={"url": url},
            cause=e,
        ) from e

    parsed = urlparse(url)
    name = (parsed.netloc + parsed.path).strip("/") or "default"
    server = _memory_servers.get(name)
    if server is None:
        server = _memory_servers[name] = fakeredis.FakeServer()
    return fakeredis.FakeAsyncRedis(server=server, decode_responses=True)


def create_client(url: str) -> Any:
    """Create a ``redis.asyncio`` client for ``url`` (no I/O yet)."""
    scheme = urlparse(url).scheme
    if scheme == "memory":
        return _memory_client(url)
    if scheme in _REDIS_SCHEMES:
        import redis.asyncio as aioredis

        return aioredis.from_url(url, decode_responses=True)
    raise UnsupportedBrokerError(
        f"Unsupported broker URL scheme: {scheme or url!r}",
        context={"url": url, "supported": [*_REDIS_SCHEMES, "memory"]},
    )


class ConnectionProvider:
    """Owns the single broker handle shared by producers and consumers.

    ``get()`` creates the handle at most once even when called concurrently;
    a failed connect is not cached, so the next ``get()`` tries again.
    """

    def __init__(
        self,
        url: str | None = None,
        *,
        settings: QueueSettings | None = None,
        client_factory: ClientFactory | None = None,
    ) -> None:
        self._url = url
        self._settings = settings
        self._client_factory = client_factory or create_client
        self._broker: RedisBroker | None = None
        self._lock = asyncio.Lock()

    @property
    def settings(self) -> QueueSettings:
        return self._settings or get_settings()

    @property
    def url(self) -> str | None:
        return self._url or self.settings.connection

    @property
    def connected(self) -> bool:
        return self._broker is not None

    async def get(self) -> RedisBroker:
        """Return the shared broker, connecting on first use."""
        if self._broker is not None:
            return self._broker

        async with self._lock:
            if self._broker is not None:
                return self._broker

            url = self.url
            if not url:
                raise MissingConnectionError(
                    "No broker connection configured. "
                    "Call configure(connection=...) or set QUEUESPINE_CONNECTION."
                )

            broker = self._build(url)
            try:
                await broker.connect()
            except BrokerConnectionError:
                await broker.close()
                raise

            logger.debug("connection.opened", url=_redact(url))
            self._broker = broker
            return broker

    def _build(self, url: str) -> RedisBroker:
        settings = self.settings
        return RedisBroker(
            self._client_factory(url),
            prefix=settings.key_prefix,
            blocking=not is_memory_url(url),
            remove_on_complete=Retention(
                settings.remove_on_complete_age_seconds, settings.remove_on_complete_count
            ),
            remove_on_fail=Retention(
                settings.remove_on_fail_age_seconds, settings.remove_on_fail_count
            ),
            lock_duration_ms=int(settings.lock_duration_seconds * 1000),
            max_stalled_count=settings.max_stalled_count,
        )

    async def reset(self) -> None:
        """Close and forget the handle; the next ``get()`` reconnects."""
        async with self._lock:
            broker, self._broker = self._broker, None
        if broker is not None:
            await broker.close()
            logger.debug("connection.closed")


def _redact(url: str) -> str:
    parsed = urlparse(url)
    if parsed.password:
        return url.replace(f":{parsed.password}@", ":***@")
    return url
