"""Task and ScheduledTask facades: the declaration API.

Usage::

    from queuespine import define_task, schedule_task, task

    welcome = define_task("email.welcome", send_welcome)   # queue "email"
    await welcome.trigger({"userId": "1"})

    @task("email.reset", concurrency=2)
    async def send_reset(payload):
        ...

    daily = schedule_task("reports.daily", "0 9 * * *", build_report, tz="Europe/London")
    await daily.wait_installed()       # optional: observe the install outcome

Declaring a task only registers it with the worker (no I/O). Triggering
enqueues a job and starts the worker in the background. Declaring a
scheduled task replaces any recurring job already installed under its id,
so re-running the declaration on every process start never piles up
parallel schedules.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping
from typing import Any

from pydantic import BaseModel

from queuespine.config import QueueSettings, get_settings
from queuespine.errors import ScheduleError
from queuespine.logging import get_logger
from queuespine.models import EnqueuedJob, JobOptions, RecurringJob, generate_job_id
from queuespine.registry import ErrorHandler, Handler, TaskDefinition
from queuespine.schedules import validate_cron, validate_timezone
from queuespine.worker import Worker, get_worker

__all__ = [
    "Task",
    "ScheduledTask",
    "resolve_queue",
    "define_task",
    "schedule_task",
    "start_worker",
    "stop_worker",
    "task",
    "scheduled",
]

logger = get_logger(__name__)

NAMESPACE_SEPARATOR = "."


def resolve_queue(
    task_id: str, queue: str | None = None, settings: QueueSettings | None = None
) -> str:
    """Effective queue for a task.

    Explicit ``queue`` wins; else the part of ``task_id`` before its first
    ``.``; else the configured default queue.

    >>> resolve_queue("email.welcome")
    'email'
    >>> resolve_queue("cleanup", settings=QueueSettings(default_queue="misc"))
    'misc'
    """
    if queue:
        return queue
    prefix, sep, _ = task_id.partition(NAMESPACE_SEPARATOR)
    if sep and prefix:
        return prefix
    return (settings or get_settings()).default_queue


class Task:
    """Trigger handle for a declared one-shot task."""

    def __init__(
        self,
        id: str,
        run: Handler,
        *,
        queue: str | None = None,
        on_error: ErrorHandler | None = None,
        concurrency: int | None = None,
        payload_model: type[BaseModel] | None = None,
        worker: Worker | None = None,
    ) -> None:
        self._worker = worker or get_worker()
        self.id = id
        self.queue = resolve_queue(id, queue, self._worker.settings)
        self.definition: TaskDefinition = self._worker.register_task(
            id,
            self.queue,
            run,
            error_handler=on_error,
            concurrency=concurrency,
            payload_model=payload_model,
        )

    @property
    def worker(self) -> Worker:
        return self._worker

    async def trigger(
        self,
        payload: Any = None,
        options: JobOptions | Mapping[str, Any] | None = None,
        **kwargs: Any,
    ) -> EnqueuedJob:
        """Enqueue one job; resolves once the broker has accepted it.

        ``options`` (and keyword options) are merged over a freshly
        generated job id, so re-triggering never collides unless ``job_id``
        is passed explicitly. Recognised options: ``job_id``/``jobId``,
        ``delay`` (ms), ``attempts`` and ``backoff``.

        Raises:
            PayloadValidationError: Payload does not match ``payload_model``.
            BrokerConnectionError: Broker unreachable. Not retried here.
        """
        data = self.definition.dump_payload(payload)
        job_options = self._job_options(options, kwargs)

        self._worker.ensure_started()
        return await self._worker.producer(self.queue).enqueue(self.id, data, job_options)

    def _job_options(
        self, options: JobOptions | Mapping[str, Any] | None, overrides: Mapping[str, Any]
    ) -> JobOptions:
        merged: dict[str, Any] = {"job_id": generate_job_id(self.id)}
        if isinstance(options, JobOptions):
            merged.update({k: v for k, v in options.to_dict().items() if v is not None})
        elif options:
            merged.update(options)
        merged.update(overrides)
        return JobOptions.from_mapping(merged)

    def __repr__(self) -> str:
        return f"Task(id={self.id!r}, queue={self.queue!r})"


class ScheduledTask:
    """Handle for a declared recurring task. It has no public trigger.

    Construction validates the cron pattern and timezone, registers the
    task and starts reconcile-and-install: immediately in the background
    when an event loop is running, otherwise when the worker next starts.
    The outcome is observable through :meth:`wait_installed`, ``installed``
    and ``error``; failures are also logged as ``schedule.install_failed``.
    Each occurrence carries ``payload``, ``{}`` when omitted.
    """

    def __init__(
        self,
        id: str,
        cron: str,
        run: Handler,
        *,
        queue: str | None = None,
        on_error: ErrorHandler | None = None,
        tz: str | None = None,
        concurrency: int | None = None,
        payload: Any = None,
        worker: Worker | None = None,
    ) -> None:
        self._worker = worker or get_worker()
        self.id = id
        self.cron = validate_cron(cron)
        self.tz = validate_timezone(tz)
        self.payload = {} if payload is None else payload
        self.queue = resolve_queue(id, queue, self._worker.settings)
        self.definition: TaskDefinition = self._worker.register_task(
            id,
            self.queue,
            run,
            error_handler=on_error,
            concurrency=concurrency,
        )

        self._recurring: RecurringJob | None = None
        self._error: BaseException | None = None
        self._reconcile_task: asyncio.Task[None] | None = None
        self._superseded = False

        previous = self._worker.track_schedule(id, self)
        self._previous: ScheduledTask | None = previous
        if previous is not None:
            previous._superseded = True

        try:
            asyncio.get_running_loop()
        except RuntimeError:
            self._worker.on_start(self._install_on_start)
        else:
            self._schedule()

    @property
    def worker(self) -> Worker:
        return self._worker

    @property
    def installed(self) -> bool:
        return self._recurring is not None

    @property
    def error(self) -> BaseException | None:
        return self._error

    @property
    def recurring(self) -> RecurringJob | None:
        """The recurring registration this declaration installed."""
        return self._recurring

    async def wait_installed(self) -> RecurringJob:
        """Wait for reconcile-and-install and return the installed entry.

        Raises:
            ScheduleError: The install failed, or a later declaration of
                the same id replaced this one before it ran.
        """
        await self._schedule()
        if self._error is not None:
            if isinstance(self._error, ScheduleError):
                raise self._error
            raise ScheduleError(
                f"Failed to install schedule for {self.id}: {self._error}",
                context={"task_id": self.id, "queue": self.queue},
                cause=self._error,
            ) from self._error
        if self._recurring is None:
            raise ScheduleError(
                f"Schedule for {self.id} was superseded by a later declaration",
                context={"task_id": self.id, "queue": self.queue},
            )
        return self._recurring

    def _schedule(self) -> asyncio.Task[None]:
        if self._reconcile_task is None:
            self._reconcile_task = self._worker.spawn(
                self._reconcile(), name=f"queuespine-schedule-{self.id}"
            )
        return self._reconcile_task

    async def _install_on_start(self) -> None:
        await self._schedule()

    async def _reconcile(self) -> None:
        if self._previous is not None and self._previous._reconcile_task is not None:
            await self._previous._reconcile_task
        self._previous = None
        if self._superseded:
            return

        try:
            self._worker.ensure_started()
            producer = self._worker.producer(self.queue)

            for entry in await producer.list_recurring():
                if entry.id == self.id or entry.name == self.id:
                    await producer.remove_recurring(entry.key)
                    logger.debug(
                        "schedule.removed", task_id=self.id, pattern=entry.pattern, tz=entry.tz
                    )

            self._recurring = await producer.add_recurring(
                self.id, self.payload, self.cron, tz=self.tz, job_id=self.id
            )
        except Exception as e:
            self._error = e
            logger.error(
                "schedule.install_failed",
                task_id=self.id,
                queue=self.queue,
                cron=self.cron,
                error=str(e),
                error_type=type(e).__name__,
            )
        else:
            logger.info(
                "schedule.installed",
                task_id=self.id,
                queue=self.queue,
                cron=self.cron,
                tz=self.tz,
                next_ms=self._recurring.next_ms,
            )

    def __repr__(self) -> str:
        return f"ScheduledTask(id={self.id!r}, cron={self.cron!r}, queue={self.queue!r})"


# === DECLARATION API (process default worker) ===


def define_task(
    id: str,
    run: Handler,
    *,
    queue: str | None = None,
    on_error: ErrorHandler | None = None,
    concurrency: int | None = None,
    payload_model: type[BaseModel] | None = None,
    worker: Worker | None = None,
) -> Task:
    """Declare a one-shot task and return its trigger handle."""
    return Task(
        id,
        run,
        queue=queue,
        on_error=on_error,
        concurrency=concurrency,
        payload_model=payload_model,
        worker=worker,
    )


def schedule_task(
    id: str,
    cron: str,
    run: Handler,
    *,
    queue: str | None = None,
    on_error: ErrorHandler | None = None,
    tz: str | None = None,
    concurrency: int | None = None,
    payload: Any = None,
    worker: Worker | None = None,
) -> ScheduledTask:
    """Declare a recurring task. Installation runs in the background."""
    return ScheduledTask(
        id,
        cron,
        run,
        queue=queue,
        on_error=on_error,
        tz=tz,
        concurrency=concurrency,
        payload=payload,
        worker=worker,
    )


async def start_worker(worker: Worker | None = None) -> Worker:
    """Start the worker eagerly instead of on first trigger."""
    worker = worker or get_worker()
    await worker.start()
    return worker


async def stop_worker(worker: Worker | None = None) -> None:
    await (worker or get_worker()).stop()


def task(id: str, **kwargs: Any) -> Callable[[Handler], Task]:
    """Decorator form of :func:`define_task`.

    Example:
        >>> @task("email.welcome")
        ... async def send_welcome(payload):
        ...     ...
        >>> await send_welcome.trigger({"userId": "1"})
    """

    def decorator(func: Handler) -> Task:
        return define_task(id, func, **kwargs)

    return decorator


def scheduled(id: str, cron: str, **kwargs: Any) -> Callable[[Handler], ScheduledTask]:
    """Decorator form of :func:`schedule_task`."""

    def decorator(func: Handler) -> ScheduledTask:
        return schedule_task(id, cron, func, **kwargs)

    return decorator
