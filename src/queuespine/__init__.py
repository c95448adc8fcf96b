"""queuespine: declare background tasks and run them from a Redis-backed queue.

Quick start::

    from queuespine import configure, define_task, schedule_task

    configure(connection="redis://localhost:6379/0")

    async def send_welcome(payload):
        ...

    welcome = define_task("email.welcome", send_welcome)
    await welcome.trigger({"userId": "1"})

    schedule_task("reports.daily", "0 9 * * *", build_report)
"""

from queuespine.config import QueueSettings, configure, get_settings, reset_settings
from queuespine.connection import ConnectionProvider
from queuespine.errors import (
    BrokerConnectionError,
    BrokerError,
    ConfigError,
    ErrorCategory,
    InvalidCronError,
    MissingConnectionError,
    PayloadValidationError,
    QueueSpineError,
    ScheduleError,
    TaskDefinitionError,
    UnknownTaskError,
    UnsupportedBrokerError,
    ValidationError,
)
from queuespine.models import Backoff, EnqueuedJob, Job, JobOptions, RecurringJob
from queuespine.registry import TaskDefinition, TaskRegistry
from queuespine.task import (
    ScheduledTask,
    Task,
    define_task,
    resolve_queue,
    schedule_task,
    scheduled,
    start_worker,
    stop_worker,
    task,
)
from queuespine.worker import Worker, get_worker, reset_worker, set_worker

__version__ = "0.1.0"

__all__ = [
    # Config
    "QueueSettings",
    "configure",
    "get_settings",
    "reset_settings",
    # Declaration API
    "Task",
    "ScheduledTask",
    "define_task",
    "schedule_task",
    "task",
    "scheduled",
    "resolve_queue",
    "start_worker",
    "stop_worker",
    # Engine
    "Worker",
    "get_worker",
    "set_worker",
    "reset_worker",
    "ConnectionProvider",
    "TaskDefinition",
    "TaskRegistry",
    # Models
    "Backoff",
    "EnqueuedJob",
    "Job",
    "JobOptions",
    "RecurringJob",
    # Errors
    "QueueSpineError",
    "ErrorCategory",
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
    "__version__",
]
