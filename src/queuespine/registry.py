"""Task Registry: task id → (queue, handler, error handler, concurrency).

Manifesto:
    Declaring a task must be cheap, synchronous and free of I/O so that
    modules can declare many tasks at import time in any order. The
    registry is that in-memory map. It validates handler shapes when a
    task is registered, so a bad declaration fails at startup instead of
    on the first delivered job.

ARCHITECTURE
────────────
::

    TaskRegistry
      ├── .register(definition)     ─ upsert (last write wins)
      ├── .get(task_id)             ─ lookup, None if unknown
      ├── .has(task_id)             ─ existence check
      ├── .queues()                 ─ distinct queue names (QueueBinding)
      ├── .concurrency_for(queue)   ─ per-queue in-flight limit
      └── .definitions(queue=None)  ─ registered definitions

    TaskDefinition (frozen)
      ├── handler(payload)          ─ coroutine function or plain function
      ├── error_handler(err, data)  ─ optional, same shapes
      └── .parse_payload(data)      ─ optional pydantic model validation

Tags:
    queuespine, registry, task-definition, typed-handlers
"""

from __future__ import annotations

import inspect
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from queuespine.errors import PayloadValidationError, TaskDefinitionError

__all__ = ["TaskDefinition", "TaskRegistry", "Handler", "ErrorHandler"]

Handler = Callable[[Any], Any]
ErrorHandler = Callable[[BaseException, Any], Any]


def _check_arity(func: Callable, nargs: int, what: str, task_id: str) -> None:
    if not callable(func):
        raise TaskDefinitionError(
            f"{what} for task {task_id!r} is not callable", context={"task_id": task_id}
        )
    try:
        sig = inspect.signature(func)
    except (TypeError, ValueError):
        return  # builtins and C callables without introspectable signatures
    try:
        sig.bind(*([None] * nargs))
    except TypeError as e:
        raise TaskDefinitionError(
            f"{what} for task {task_id!r} must accept {nargs} positional argument(s): {e}",
            context={"task_id": task_id, "signature": str(sig)},
            cause=e,
        ) from e


@dataclass(frozen=True)
class TaskDefinition:
    """A registered task. Immutable once created."""

    id: str
    queue: str
    handler: Handler
    error_handler: ErrorHandler | None = None
    concurrency: int | None = None
    payload_model: type[BaseModel] | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.id, str) or not self.id.strip():
            raise TaskDefinitionError("Task id must be a non-empty string")
        if not isinstance(self.queue, str) or not self.queue.strip():
            raise TaskDefinitionError(
                f"Queue for task {self.id!r} must be a non-empty string",
                context={"task_id": self.id},
            )
        _check_arity(self.handler, 1, "Handler", self.id)
        if self.error_handler is not None:
            _check_arity(self.error_handler, 2, "Error handler", self.id)
        if self.concurrency is not None and (
            isinstance(self.concurrency, bool)
            or not isinstance(self.concurrency, int)
            or self.concurrency < 1
        ):
            raise TaskDefinitionError(
                f"Concurrency for task {self.id!r} must be a positive integer",
                context={"task_id": self.id, "concurrency": self.concurrency},
            )
        if self.payload_model is not None and not (
            isinstance(self.payload_model, type) and issubclass(self.payload_model, BaseModel)
        ):
            raise TaskDefinitionError(
                f"payload_model for task {self.id!r} must be a pydantic BaseModel subclass",
                context={"task_id": self.id},
            )

    @property
    def is_async(self) -> bool:
        return inspect.iscoroutinefunction(self.handler)

    def parse_payload(self, payload: Any) -> Any:
        """Validate ``payload`` against the payload model, if any.

        Returns the model instance, or ``payload`` unchanged when the task
        declares no model.
        """
        if self.payload_model is None:
            return payload
        if isinstance(payload, self.payload_model):
            return payload
        try:
            return self.payload_model.model_validate(payload)
        except PydanticValidationError as e:
            raise PayloadValidationError(
                f"Invalid payload for task {self.id}: {e.error_count()} error(s)",
                context={"task_id": self.id, "errors": e.errors(include_url=False)},
                cause=e,
            ) from e

    def dump_payload(self, payload: Any) -> Any:
        """Validate ``payload`` and return its JSON-ready form for enqueueing."""
        parsed = self.parse_payload(payload)
        if isinstance(parsed, BaseModel):
            return parsed.model_dump(mode="json")
        return parsed


class TaskRegistry:
    """In-memory task registry.

    Mutations are serialised with a lock; reads take a snapshot.

    Example:
        >>> registry = TaskRegistry()
        >>> registry.register(TaskDefinition("email.welcome", "email", send_welcome))
        >>> registry.queues()
        ['email']
    """

    def __init__(self, default_concurrency: int = 5):
        self._definitions: dict[str, TaskDefinition] = {}
        self._lock = threading.Lock()
        self.default_concurrency = default_concurrency

    def register(self, definition: TaskDefinition) -> TaskDefinition:
        """Add or replace the definition for ``definition.id``."""
        with self._lock:
            self._definitions[definition.id] = definition
        return definition

    def get(self, task_id: str) -> TaskDefinition | None:
        return self._definitions.get(task_id)

    def has(self, task_id: str) -> bool:
        return task_id in self._definitions

    def ids(self) -> list[str]:
        return sorted(self._definitions)

    def definitions(self, queue: str | None = None) -> list[TaskDefinition]:
        with self._lock:
            snapshot = list(self._definitions.values())
        if queue is None:
            return snapshot
        return [d for d in snapshot if d.queue == queue]

    def queues(self) -> list[str]:
        """Distinct queue names, in order of first registration."""
        return list(dict.fromkeys(d.queue for d in self.definitions()))

    def concurrency_for(self, queue: str) -> int:
        """In-flight limit for ``queue``.

        The smallest explicit concurrency among the queue's tasks, since
        they share one consumer; otherwise ``default_concurrency``.
        """
        explicit = [d.concurrency for d in self.definitions(queue) if d.concurrency is not None]
        return min(explicit) if explicit else self.default_concurrency

    def __len__(self) -> int:
        return len(self._definitions)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._definitions
