"""Job, option and recurring-schedule records exchanged with the broker."""

from __future__ import annotations

import random
import string
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Literal

_BASE36 = string.digits + string.ascii_lowercase

BackoffType = Literal["fixed", "exponential"]


def now_ms() -> int:
    """Current epoch time in milliseconds."""
    return int(time.time() * 1000)


def generate_job_id(task_id: str) -> str:
    """Build a fresh job id: ``{task_id}-{epoch_ms}-{random base36}``.

    Re-triggering a task never collides unless the caller passes an explicit
    ``job_id``.
    """
    suffix = "".join(random.choices(_BASE36, k=11))
    return f"{task_id}-{now_ms()}-{suffix}"


@dataclass(frozen=True)
class Backoff:
    """Retry delay policy applied by the broker between failed attempts.

    Delay:
        fixed       → ``delay_ms``
        exponential → ``delay_ms * 2 ** (attempts_made - 1)``
    """

    type: BackoffType = "fixed"
    delay_ms: int = 0

    @classmethod
    def coerce(cls, value: Backoff | Mapping[str, Any] | int | None) -> Backoff | None:
        """Build a Backoff from an int (fixed ms), a mapping or a Backoff."""
        if value is None or isinstance(value, Backoff):
            return value
        if isinstance(value, bool):
            raise TypeError("backoff must be an int, a mapping or a Backoff")
        if isinstance(value, int):
            return cls(type="fixed", delay_ms=value)
        if isinstance(value, Mapping):
            kind = value.get("type", "fixed")
            if kind not in ("fixed", "exponential"):
                raise ValueError(f"Unknown backoff type: {kind!r}")
            delay = value.get("delay", value.get("delay_ms", 0))
            return cls(type=kind, delay_ms=int(delay))
        raise TypeError("backoff must be an int, a mapping or a Backoff")

    def delay_for(self, attempts_made: int) -> int:
        """Delay in ms before the retry that follows ``attempts_made`` failures."""
        if self.type == "exponential":
            return self.delay_ms * 2 ** max(attempts_made - 1, 0)
        return self.delay_ms

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "delay": self.delay_ms}


@dataclass(frozen=True)
class JobOptions:
    """Per-job options handed to the broker verbatim.

    Attributes:
        job_id: Idempotency key. An enqueue with an existing id is a no-op.
        delay_ms: Milliseconds before the job becomes eligible.
        attempts: Maximum delivery attempts (1 = no retry).
        backoff: Delay policy between attempts.
        extra: Options this engine does not interpret, stored as-is.
    """

    job_id: str | None = None
    delay_ms: int = 0
    attempts: int = 1
    backoff: Backoff | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    _ALIASES = {"jobId": "job_id", "delay": "delay_ms"}

    @classmethod
    def from_mapping(cls, options: Mapping[str, Any] | JobOptions | None) -> JobOptions:
        """Normalise a caller's option bag.

        Recognises ``job_id`` (or ``jobId``), ``delay`` (or ``delay_ms``),
        ``attempts`` and ``backoff``; anything else lands in ``extra``.
        """
        if options is None:
            return cls()
        if isinstance(options, JobOptions):
            return options

        known: dict[str, Any] = {}
        extra: dict[str, Any] = {}
        for key, value in options.items():
            name = cls._ALIASES.get(key, key)
            if name in ("job_id", "delay_ms", "attempts", "backoff"):
                known[name] = value
            elif name == "extra" and isinstance(value, Mapping):
                extra.update(value)
            else:
                extra[key] = value

        attempts = 1 if known.get("attempts") is None else int(known["attempts"])
        if attempts < 1:
            raise ValueError("attempts must be >= 1")
        delay_ms = 0 if known.get("delay_ms") is None else int(known["delay_ms"])
        if delay_ms < 0:
            raise ValueError("delay must be >= 0")

        return cls(
            job_id=known.get("job_id"),
            delay_ms=delay_ms,
            attempts=attempts,
            backoff=Backoff.coerce(known.get("backoff")),
            extra=extra,
        )

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "job_id": self.job_id,
            "delay": self.delay_ms,
            "attempts": self.attempts,
        }
        if self.backoff is not None:
            result["backoff"] = self.backoff.to_dict()
        if self.extra:
            result["extra"] = dict(self.extra)
        return result


@dataclass
class Job:
    """One delivered instance of a task's work."""

    id: str
    queue: str
    name: str
    data: Any
    options: JobOptions = field(default_factory=JobOptions)
    attempts_made: int = 0
    timestamp_ms: int = 0
    repeat_key: str | None = None
    lock_token: str | None = None

    @property
    def task_id(self) -> str:
        """The task identifier this job is routed by."""
        return self.name

    @property
    def attempt(self) -> int:
        """1-based number of the delivery attempt in progress."""
        return self.attempts_made + 1


@dataclass(frozen=True)
class EnqueuedJob:
    """Acknowledgement that the broker durably accepted a job."""

    id: str
    queue: str
    name: str
    delay_ms: int = 0
    duplicate: bool = False


@dataclass(frozen=True)
class RecurringJob:
    """A recurring job registration installed in the broker."""

    key: str
    name: str
    id: str
    pattern: str
    tz: str | None
    next_ms: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "name": self.name,
            "id": self.id,
            "pattern": self.pattern,
            "tz": self.tz,
            "next": self.next_ms,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> RecurringJob:
        return cls(
            key=data["key"],
            name=data["name"],
            id=data["id"],
            pattern=data["pattern"],
            tz=data.get("tz"),
            next_ms=int(data["next"]),
        )
