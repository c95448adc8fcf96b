"""
Structured error types for queuespine.

Every error raised by the engine carries a category, a retry hint and a small
context dict so it can be logged as structured data without string parsing.

Manifesto:
    - **Typed Error Hierarchy:** one class per failure domain
    - **Explicit Retry Semantics:** each error knows if it's retryable
    - **Error Chaining:** the original exception is kept as ``cause``

Architecture:
    ::

        ┌──────────────────────────────────────────────────────────────┐
        │                      QueueSpineError                          │
        │          (category, retryable, context, cause)                │
        ├──────────────────────────────────────────────────────────────┤
        │  ConfigError               BrokerError (CONNECTIVITY)         │
        │  (CONFIG)                     │                               │
        │     │                      BrokerConnectionError (retryable)  │
        │  MissingConnectionError                                       │
        │  UnsupportedBrokerError    UnknownTaskError (ROUTING)         │
        │                            ScheduleError (SCHEDULE)           │
        │  ValidationError              │                               │
        │  (VALIDATION)              InvalidCronError                   │
        │     │                                                         │
        │  TaskDefinitionError                                        │
        │  PayloadValidationError                                       │
        └──────────────────────────────────────────────────────────────┘

    Handler errors are not wrapped: whatever the task raises is what the
    consumer records as the job failure and passes to ``on_error``.

Tags:
    error-handling, exception-hierarchy, retry-logic, queuespine
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Standard error categories for classification and routing."""

    CONFIG = "CONFIG"                # No/invalid connection settings
    CONNECTIVITY = "CONNECTIVITY"    # Broker unreachable
    ROUTING = "ROUTING"              # Job names an unregistered task
    HANDLER = "HANDLER"              # Task logic raised
    SCHEDULE = "SCHEDULE"            # Recurring-job reconcile/install
    VALIDATION = "VALIDATION"        # Bad task definition or payload
    INTERNAL = "INTERNAL"            # Bugs, unexpected state


class QueueSpineError(Exception):
    """Base exception for all queuespine errors.

    Subclasses set ``default_category`` and ``default_retryable``.

    Example:
        >>> err = BrokerConnectionError("Redis unreachable").with_context(queue="email")
        >>> err.to_dict()["context"]
        {'queue': 'email'}
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        context: dict[str, Any] | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.context: dict[str, Any] = dict(context or {})
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> QueueSpineError:
        """Add context to this error (fluent API)."""
        self.context.update(kwargs)
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result: dict[str, Any] = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        if self.context:
            result["context"] = dict(self.context)
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# CONFIGURATION ERRORS (never retryable)
# =============================================================================


class ConfigError(QueueSpineError):
    """Invalid or missing configuration."""

    default_category = ErrorCategory.CONFIG
    default_retryable = False


class MissingConnectionError(ConfigError):
    """A connection-dependent operation ran with no broker URL configured."""

    pass


class UnsupportedBrokerError(ConfigError):
    """Broker URL scheme is unknown or its optional extra is not installed."""

    pass


# =============================================================================
# CONNECTIVITY ERRORS (retryable)
# =============================================================================


class BrokerError(QueueSpineError):
    """The broker rejected or failed a request."""

    default_category = ErrorCategory.CONNECTIVITY
    default_retryable = False


class BrokerConnectionError(BrokerError):
    """The broker could not be reached or dropped the connection."""

    default_retryable = True


# =============================================================================
# ROUTING ERRORS
# =============================================================================


class UnknownTaskError(QueueSpineError):
    """A delivered job names a task id with no registered handler.

    Usually a deploy-ordering bug: a consumer is running code that has not
    declared the task its producers are using.
    """

    default_category = ErrorCategory.ROUTING
    default_retryable = False

    def __init__(self, task_id: str, *, queue: str | None = None, known: list[str] | None = None):
        super().__init__(
            f"No handler for task: {task_id}",
            context={"task_id": task_id, "queue": queue, "known_tasks": known or []},
        )
        self.task_id = task_id


# =============================================================================
# SCHEDULE ERRORS
# =============================================================================


class ScheduleError(QueueSpineError):
    """Recurring schedule could not be reconciled or installed."""

    default_category = ErrorCategory.SCHEDULE
    default_retryable = False


class InvalidCronError(ScheduleError):
    """Cron pattern or timezone is malformed."""

    default_category = ErrorCategory.VALIDATION


# =============================================================================
# VALIDATION ERRORS
# =============================================================================


class ValidationError(QueueSpineError):
    """Input did not pass validation."""

    default_category = ErrorCategory.VALIDATION
    default_retryable = False


class TaskDefinitionError(ValidationError):
    """Task declaration is malformed (id, handler shape, concurrency)."""

    pass


class PayloadValidationError(ValidationError):
    """Payload does not match the task's declared payload model."""

    pass


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================


def is_retryable(error: BaseException) -> bool:
    """Check if an error is retryable."""
    if isinstance(error, QueueSpineError):
        return error.retryable
    return isinstance(error, (ConnectionError, TimeoutError))


__all__ = [
    "ErrorCategory",
    "QueueSpineError",
    "ConfigError",
    "MissingConnectionError",
    "UnsupportedBrokerError",
    "BrokerError",
    "BrokerConnectionError",
    "UnknownTaskError",
    "ScheduleError",
    "InvalidCronError",
    "ValidationError",
    "TaskDefinitionError",
    "PayloadValidationError",
    "is_retryable",
]
