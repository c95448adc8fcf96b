"""Per-Queue Consumer: a concurrency-bounded pull loop over one queue.

WHY
───
Each queue gets its own consumer with its own ``asyncio.Semaphore`` so a
slow or saturated queue never starves another queue's throughput.

ARCHITECTURE
────────────
::

    QueueConsumer("email", connection, process, on_failed, concurrency=5)
      ├── .start()    ─ spawn the pull loop on the running event loop
      ├── .close()    ─ stop pulling, wait for in-flight jobs
      └── .stats      ─ ConsumerStats (processed / completed / failed)

    pull loop:  acquire slot → broker.fetch() → spawn job → (slot released
                when the job finishes)
    job:        process(job) ─ ok ──→ broker.complete(job)
                             └ err ─→ broker.fail(job) → on_failed(job, err)
                (claim lock renewed every lock_duration / 2 while it runs)
    sweep:      every stalled_interval → broker.recover_stalled()
                (re-queues jobs whose consumer died mid-handler)

A failing job, a failing ``on_failed`` callback or a broker hiccup is
logged and never ends the loop or affects sibling jobs.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from queuespine.logging import LogContext, get_logger
from queuespine.models import Job

if TYPE_CHECKING:
    from queuespine.broker import RedisBroker
    from queuespine.connection import ConnectionProvider

__all__ = ["QueueConsumer", "ConsumerStats", "ProcessFn", "FailedFn"]

logger = get_logger(__name__)

ProcessFn = Callable[[Job], Awaitable[Any]]
FailedFn = Callable[[Job, BaseException, bool], Awaitable[None]]


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class ConsumerStats:
    """Counters for one consumer."""

    queue: str
    concurrency: int
    processed: int = 0
    completed: int = 0
    failed: int = 0
    active: int = 0
    fetch_errors: int = 0
    recovered: int = 0
    started_at: datetime | None = field(default=None)

    def to_dict(self) -> dict[str, Any]:
        return {
            "queue": self.queue,
            "concurrency": self.concurrency,
            "processed": self.processed,
            "completed": self.completed,
            "failed": self.failed,
            "active": self.active,
            "fetch_errors": self.fetch_errors,
            "recovered": self.recovered,
            "started_at": self.started_at.isoformat() if self.started_at else None,
        }


class QueueConsumer:
    """Pull loop for one queue with at most ``concurrency`` jobs in flight."""

    def __init__(
        self,
        queue: str,
        connection: ConnectionProvider,
        process: ProcessFn,
        on_failed: FailedFn | None = None,
        *,
        concurrency: int = 5,
        poll_interval: float = 1.0,
        lock_duration: float = 30.0,
        stalled_interval: float = 30.0,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.queue = queue
        self.concurrency = concurrency
        self._connection = connection
        self._process = process
        self._on_failed = on_failed
        self._poll_interval = poll_interval
        self._lock_duration = lock_duration
        self._stalled_interval = stalled_interval
        self._semaphore = asyncio.Semaphore(concurrency)
        self._loop_task: asyncio.Task[None] | None = None
        self._stalled_task: asyncio.Task[None] | None = None
        self._jobs: set[asyncio.Task[None]] = set()
        self._closing = False
        self.stats = ConsumerStats(queue=queue, concurrency=concurrency)

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def start(self) -> None:
        """Spawn the pull loop. Must be called from a running event loop."""
        if self.running:
            return
        self._closing = False
        self.stats.started_at = _utcnow()
        loop = asyncio.get_running_loop()
        self._loop_task = loop.create_task(self._run(), name=f"queuespine-consumer-{self.queue}")
        self._stalled_task = loop.create_task(
            self._check_stalled(), name=f"queuespine-stalled-{self.queue}"
        )
        logger.debug("consumer.started", queue=self.queue, concurrency=self.concurrency)

    async def close(self) -> None:
        """Stop pulling new jobs and wait for in-flight jobs to finish."""
        self._closing = True
        stalled_task, self._stalled_task = self._stalled_task, None
        if stalled_task is not None:
            stalled_task.cancel()
            await asyncio.gather(stalled_task, return_exceptions=True)

        loop_task, self._loop_task = self._loop_task, None
        if loop_task is not None:
            # Let a pending fetch return on its own so no claimed job is dropped
            done, _ = await asyncio.wait({loop_task}, timeout=self._poll_interval * 2 + 1)
            if not done:
                loop_task.cancel()
                await asyncio.gather(loop_task, return_exceptions=True)

        if self._jobs:
            await asyncio.gather(*list(self._jobs), return_exceptions=True)
        logger.debug("consumer.closed", queue=self.queue, **self.stats.to_dict())

    async def _run(self) -> None:
        while not self._closing:
            await self._semaphore.acquire()
            if self._closing:
                self._semaphore.release()
                break

            try:
                broker = await self._connection.get()
                job = await broker.fetch(self.queue, timeout=self._poll_interval)
            except asyncio.CancelledError:
                self._semaphore.release()
                raise
            except Exception as e:
                self._semaphore.release()
                self.stats.fetch_errors += 1
                logger.warning("consumer.fetch_failed", queue=self.queue, error=str(e))
                await asyncio.sleep(self._poll_interval)
                continue

            if job is None:
                self._semaphore.release()
                continue

            task = asyncio.create_task(self._handle(broker, job))
            self._jobs.add(task)
            task.add_done_callback(self._jobs.discard)

    async def _check_stalled(self) -> None:
        while not self._closing:
            try:
                broker = await self._connection.get()
                recovered = await broker.recover_stalled(self.queue)
            except Exception as e:
                logger.warning("consumer.stalled_check_failed", queue=self.queue, error=str(e))
            else:
                self.stats.recovered += len(recovered)
            await asyncio.sleep(self._stalled_interval)

    async def _keep_lock(self, broker: RedisBroker, job: Job) -> None:
        while True:
            await asyncio.sleep(self._lock_duration / 2)
            try:
                if not await broker.extend_lock(job):
                    logger.warning("job.lock_lost")
                    return
            except Exception as e:
                logger.warning("consumer.lock_renew_failed", error=str(e))

    async def _process_locked(self, broker: RedisBroker, job: Job) -> None:
        renew = asyncio.create_task(self._keep_lock(broker, job))
        try:
            await self._process(job)
        finally:
            renew.cancel()
            await asyncio.gather(renew, return_exceptions=True)

    async def _handle(self, broker: RedisBroker, job: Job) -> None:
        self.stats.active += 1
        try:
            async with LogContext(queue=job.queue, task_id=job.name, job_id=job.id):
                try:
                    await self._process_locked(broker, job)
                except Exception as e:
                    await self._record_failure(broker, job, e)
                else:
                    await self._record_success(broker, job)
        finally:
            self.stats.active -= 1
            self.stats.processed += 1
            self._semaphore.release()

    async def _record_success(self, broker: RedisBroker, job: Job) -> None:
        self.stats.completed += 1
        try:
            await broker.complete(job)
        except Exception as e:
            logger.error("consumer.complete_failed", error=str(e))

    async def _record_failure(self, broker: RedisBroker, job: Job, error: Exception) -> None:
        self.stats.failed += 1
        will_retry = False
        try:
            will_retry = await broker.fail(job, error)
        except Exception as e:
            logger.error("consumer.fail_failed", error=str(e))

        if self._on_failed is None:
            return
        try:
            await self._on_failed(job, error, will_retry)
        except Exception as e:
            logger.error("consumer.on_failed_error", error=str(e))
