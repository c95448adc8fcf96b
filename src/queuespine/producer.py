"""Queue-bound producer handle."""

from __future__ import annotations

from typing import Any

from queuespine.connection import ConnectionProvider
from queuespine.models import EnqueuedJob, JobOptions, RecurringJob

__all__ = ["QueueProducer"]


class QueueProducer:
    """Enqueues jobs and manages recurring registrations on one queue.

    Holds no connection of its own; every call goes through the shared
    :class:`ConnectionProvider`.
    """

    def __init__(self, queue: str, connection: ConnectionProvider) -> None:
        self.queue = queue
        self._connection = connection

    async def enqueue(
        self, name: str, data: Any, options: JobOptions | None = None
    ) -> EnqueuedJob:
        broker = await self._connection.get()
        return await broker.enqueue(self.queue, name, data, options)

    async def list_recurring(self) -> list[RecurringJob]:
        broker = await self._connection.get()
        return await broker.list_recurring(self.queue)

    async def remove_recurring(self, key: str) -> bool:
        broker = await self._connection.get()
        return await broker.remove_recurring(self.queue, key)

    async def add_recurring(
        self,
        name: str,
        data: Any,
        pattern: str,
        *,
        tz: str | None = None,
        job_id: str | None = None,
        options: JobOptions | None = None,
    ) -> RecurringJob:
        broker = await self._connection.get()
        return await broker.add_recurring(
            self.queue, name, data, pattern, tz=tz, job_id=job_id, options=options
        )

    async def counts(self) -> dict[str, int]:
        broker = await self._connection.get()
        return await broker.counts(self.queue)

    def __repr__(self) -> str:
        return f"QueueProducer(queue={self.queue!r})"
