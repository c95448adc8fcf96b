"""Dispatch Engine: task registry, per-queue consumers and lifecycle.

Manifesto:
    A Worker is an explicitly constructed object owned by the host
    application. Tests and multi-tenant hosts build as many isolated
    workers as they need; the module-level default (``get_worker()``)
    exists only for the convenience declaration API.

Lifecycle::

    idle ──start()──▶ started ──stop()──▶ idle
      ▲                 │
      └──── start() may run again after stop()

``start()`` is idempotent and serialised by an ``asyncio.Lock``: any number
of concurrent callers (typically the first triggers of several tasks)
result in exactly one consumer per queue.

Dispatch::

    job.name ──registry──▶ TaskDefinition ──▶ handler(payload)
        │                                        │
        └─ unknown → UnknownTaskError            └─ raises → job.failed log
           (per-job failure, logged loudly)         + error_handler(err, payload)
                                                      (its own errors only logged)

Usage::

    worker = Worker(ConnectionProvider("redis://localhost:6379/0"))
    worker.register_task("email.welcome", "email", send_welcome)
    await worker.start()
    ...
    await worker.stop()

Tags:
    queuespine, worker, dispatch, lifecycle, per-queue-concurrency
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Callable, Coroutine
from typing import Any, TypeVar

from pydantic import BaseModel

from queuespine.config import QueueSettings, get_settings
from queuespine.connection import ConnectionProvider
from queuespine.consumer import QueueConsumer
from queuespine.errors import UnknownTaskError
from queuespine.logging import get_logger
from queuespine.models import Job
from queuespine.producer import QueueProducer
from queuespine.registry import ErrorHandler, Handler, TaskDefinition, TaskRegistry

__all__ = ["Worker", "get_worker", "set_worker", "reset_worker"]

logger = get_logger(__name__)

StartHook = Callable[[], Any]
T = TypeVar("T")


async def _call(func: Callable, *args: Any) -> Any:
    """Await coroutine functions; run plain functions in a worker thread."""
    if inspect.iscoroutinefunction(func):
        return await func(*args)
    result = await asyncio.to_thread(func, *args)
    if inspect.isawaitable(result):
        return await result
    return result


class Worker:
    """Process-level dispatch engine for a set of queues.

    Args:
        connection: Shared broker handle provider. Built from ``settings``
            when omitted.
        settings: Overrides the process settings for this worker.
        registry: Task registry; a fresh one is created when omitted.
    """

    def __init__(
        self,
        connection: ConnectionProvider | None = None,
        *,
        settings: QueueSettings | None = None,
        registry: TaskRegistry | None = None,
    ) -> None:
        self._settings = settings
        self._connection = connection or ConnectionProvider(settings=settings)
        self._registry = registry or TaskRegistry(
            default_concurrency=self.settings.default_concurrency
        )
        self._consumers: dict[str, QueueConsumer] = {}
        self._producers: dict[str, QueueProducer] = {}
        self._started = False
        self._start_lock = asyncio.Lock()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._starting: asyncio.Task[None] | None = None
        self._stopping = False
        self._background: set[asyncio.Future[Any]] = set()
        self._start_hooks: list[StartHook] = []
        self._schedules: dict[str, Any] = {}

    # ── Properties ──────────────────────────────────────────────────

    @property
    def settings(self) -> QueueSettings:
        return self._settings or get_settings()

    @property
    def connection(self) -> ConnectionProvider:
        return self._connection

    @property
    def registry(self) -> TaskRegistry:
        return self._registry

    @property
    def started(self) -> bool:
        return self._started

    @property
    def queues(self) -> list[str]:
        """Queues with a live consumer."""
        return list(self._consumers)

    # ── Registration ────────────────────────────────────────────────

    def register_task(
        self,
        id: str,
        queue: str,
        handler: Handler,
        error_handler: ErrorHandler | None = None,
        concurrency: int | None = None,
        payload_model: type[BaseModel] | None = None,
    ) -> TaskDefinition:
        """Register (or replace) a task. No I/O.

        When the worker is already started and ``queue`` has no consumer
        yet, one is created so late-declared tasks are still served.
        """
        definition = self._registry.register(
            TaskDefinition(
                id=id,
                queue=queue,
                handler=handler,
                error_handler=error_handler,
                concurrency=concurrency,
                payload_model=payload_model,
            )
        )
        logger.debug("task.registered", task_id=id, queue=queue)

        if self._started and queue not in self._consumers:
            self._spawn_consumer(queue)
        return definition

    def on_start(self, hook: StartHook) -> None:
        """Run ``hook`` (sync or async) once, the next time the worker starts."""
        self._start_hooks.append(hook)

    def track_schedule(self, task_id: str, handle: Any) -> Any:
        """Record the latest scheduled declaration for ``task_id``.

        Returns the declaration it replaces, if any.
        """
        previous = self._schedules.get(task_id)
        self._schedules[task_id] = handle
        return previous

    def producer(self, queue: str) -> QueueProducer:
        """Return the cached producer for ``queue``."""
        producer = self._producers.get(queue)
        if producer is None:
            producer = self._producers[queue] = QueueProducer(queue, self._connection)
        return producer

    # ── Lifecycle ───────────────────────────────────────────────────

    async def start(self) -> None:
        """Connect and bring up one consumer per registered queue.

        Raises:
            MissingConnectionError: No broker URL configured.
            BrokerConnectionError: Broker unreachable; the worker stays idle.
        """
        if self._started:
            return

        async with self._start_lock:
            if self._started:
                return

            await self._connection.get()
            self._loop = asyncio.get_running_loop()
            for queue in self._registry.queues():
                self._spawn_consumer(queue)
            self._started = True

        logger.info("worker.started", queues=self.queues)
        self._run_start_hooks()

    def ensure_started(self) -> asyncio.Task[None] | None:
        """Start in the background without waiting (fire-and-forget).

        Failures are logged as ``worker.start_failed``. Returns the pending
        start task, or None if already started or no loop is running.
        """
        if self._started or self._stopping:
            return None
        if self._starting is not None and not self._starting.done():
            return self._starting
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return None

        self._starting = loop.create_task(self._start_logged())
        self._track(self._starting)
        return self._starting

    async def _start_logged(self) -> None:
        try:
            await self.start()
        except Exception as e:
            logger.error("worker.start_failed", error=str(e), error_type=type(e).__name__)

    async def stop(self) -> None:
        """Close every consumer, release the connection and return to idle.

        A pending background start is cancelled and pending background work
        (start hooks, schedule installs) is awaited first, so nothing started
        before ``stop()`` can bring the worker back up after it returns.
        Waits for in-flight handlers. Safe to call when never started.
        """
        self._stopping = True
        try:
            starting, self._starting = self._starting, None
            if starting is not None and not starting.done():
                starting.cancel()

            current = asyncio.current_task()
            pending = [t for t in self._background if t is not current]
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

            async with self._start_lock:
                consumers, self._consumers = list(self._consumers.values()), {}
                was_started, self._started = self._started, False
                await asyncio.gather(*(c.close() for c in consumers), return_exceptions=True)
                await self._connection.reset()
        finally:
            self._stopping = False

        if was_started or consumers:
            logger.info("worker.stopped", queues=[c.queue for c in consumers])

    def health(self) -> dict[str, Any]:
        """Lifecycle state and per-queue consumer stats."""
        return {
            "started": self._started,
            "tasks": len(self._registry),
            "queues": {name: c.stats.to_dict() for name, c in self._consumers.items()},
        }

    # ── Internals ───────────────────────────────────────────────────

    def _spawn_consumer(self, queue: str) -> QueueConsumer:
        consumer = QueueConsumer(
            queue,
            self._connection,
            self._dispatch,
            self._handle_failure,
            concurrency=self._registry.concurrency_for(queue),
            poll_interval=self.settings.poll_interval_seconds,
            lock_duration=self.settings.lock_duration_seconds,
            stalled_interval=self.settings.stalled_interval_seconds,
        )
        self._consumers[queue] = consumer

        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is not None and running is self._loop:
            consumer.start()
        elif self._loop is not None:
            self._loop.call_soon_threadsafe(consumer.start)
        return consumer

    def _run_start_hooks(self) -> None:
        hooks, self._start_hooks = self._start_hooks, []
        for hook in hooks:
            self._track(asyncio.ensure_future(_call(hook)))

    def spawn(self, coro: Coroutine[Any, Any, T], *, name: str | None = None) -> asyncio.Task[T]:
        """Run ``coro`` as background work that ``stop()`` waits for."""
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._track(task)
        return task

    def _track(self, task: asyncio.Future[Any]) -> None:
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _dispatch(self, job: Job) -> Any:
        definition = self._registry.get(job.name)
        if definition is None:
            logger.error("job.unknown_task", known_tasks=self._registry.ids())
            raise UnknownTaskError(job.name, queue=job.queue, known=self._registry.ids())

        payload = definition.parse_payload(job.data)
        return await _call(definition.handler, payload)

    async def _handle_failure(self, job: Job, error: BaseException, will_retry: bool) -> None:
        logger.error(
            "job.failed",
            error=str(error),
            error_type=type(error).__name__,
            attempt=job.attempts_made,
            will_retry=will_retry,
        )

        definition = self._registry.get(job.name)
        if definition is None or definition.error_handler is None:
            return
        try:
            await _call(definition.error_handler, error, job.data)
        except Exception as e:
            logger.error("on_error.failed", error=str(e), error_type=type(e).__name__)

    def __repr__(self) -> str:
        state = "started" if self._started else "idle"
        return f"Worker({state}, tasks={len(self._registry)}, queues={self.queues})"


# === PROCESS DEFAULT ===

_default_worker: Worker | None = None


def get_worker() -> Worker:
    """Get the process default worker, creating it lazily."""
    global _default_worker
    if _default_worker is None:
        _default_worker = Worker()
    return _default_worker


def set_worker(worker: Worker) -> None:
    """Install ``worker`` as the process default."""
    global _default_worker
    _default_worker = worker


def reset_worker() -> None:
    """Forget the process default worker (for testing)."""
    global _default_worker
    _default_worker = None
