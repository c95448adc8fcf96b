"""
Redis-backed queue store.

Manifesto:
    The dispatch engine does not implement a queue. It orchestrates calls to
    a durable store that already provides at-least-once delivery, delayed
    and retried jobs, and recurring-job registrations. ``RedisBroker`` is
    that store: a thin layer of key conventions over ``redis.asyncio``.

Key layout (per queue, under ``{prefix}:{queue}``)::

    :wait        LIST   job ids ready to run (LPUSH in, RIGHT out → FIFO)
    :active      LIST   job ids claimed by a consumer
    :delayed     ZSET   job id → epoch ms when it becomes eligible
    :completed   ZSET   job id → finished epoch ms (retention-trimmed)
    :failed      ZSET   job id → finished epoch ms (retention-trimmed)
    :stalled     SET    active ids seen by the last stalled-job sweep
    :repeat      HASH   recurring key → JSON registration
    :job:{id}    HASH   name, data, opts, attempts_made, timestamp, ...
    :job:{id}:lock  STRING  claim token, expires after the lock duration

Delivery:
    ``fetch()`` promotes due delayed jobs, then moves one id from ``wait``
    to ``active``. A job whose id is already known is never added twice, so
    explicit job ids double as idempotency keys. Failed jobs go back to
    ``delayed`` (or ``wait``) until their ``attempts`` are exhausted.

    A claim holds a lock that the consumer renews while the handler runs.
    ``recover_stalled()`` moves active ids whose lock has expired (their
    consumer crashed or lost its connection) back to ``wait``. An id must be
    seen unlocked by two consecutive sweeps, so a claim racing a sweep is
    never mistaken for a stalled one. A job that stalls more than
    ``max_stalled_count`` times is failed instead.

    In memory mode (fakeredis) blocking reads do not yield to the event
    loop, so ``fetch()`` reads without blocking and sleeps instead.

Tags:
    queuespine, broker, redis, queue-store, at-least-once
"""

from __future__ import annotations

import asyncio
import json
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, replace
from typing import Any

from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from queuespine.errors import BrokerConnectionError, BrokerError, PayloadValidationError
from queuespine.logging import get_logger
from queuespine.models import EnqueuedJob, Job, JobOptions, RecurringJob, now_ms
from queuespine.schedules import next_fire_ms, recurring_key, validate_cron, validate_timezone

__all__ = ["RedisBroker", "Retention", "QueueKeys", "repeat_job_id"]

logger = get_logger(__name__)


@dataclass(frozen=True)
class Retention:
    """How many finished job records to keep, and for how long."""

    age_seconds: int
    count: int


@dataclass(frozen=True)
class QueueKeys:
    """Redis key names for one queue."""

    prefix: str
    queue: str

    @property
    def base(self) -> str:
        return f"{self.prefix}:{self.queue}"

    @property
    def wait(self) -> str:
        return f"{self.base}:wait"

    @property
    def active(self) -> str:
        return f"{self.base}:active"

    @property
    def delayed(self) -> str:
        return f"{self.base}:delayed"

    @property
    def completed(self) -> str:
        return f"{self.base}:completed"

    @property
    def failed(self) -> str:
        return f"{self.base}:failed"

    @property
    def stalled(self) -> str:
        return f"{self.base}:stalled"

    @property
    def repeat(self) -> str:
        return f"{self.base}:repeat"

    def job(self, job_id: str) -> str:
        return f"{self.base}:job:{job_id}"

    def lock(self, job_id: str) -> str:
        return f"{self.base}:job:{job_id}:lock"


def repeat_job_id(key: str, fire_ms: int) -> str:
    """Job id of the occurrence of recurring ``key`` due at ``fire_ms``."""
    return f"repeat:{key}:{fire_ms}"


class RedisBroker:
    """Queue store over a ``redis.asyncio.Redis`` client.

    The client must be created with ``decode_responses=True``.

    Example::

        import redis.asyncio as aioredis

        broker = RedisBroker(aioredis.from_url("redis://localhost:6379/0", decode_responses=True))
        await broker.connect()
        ack = await broker.enqueue("email", "email.welcome", {"userId": "1"}, JobOptions())
        job = await broker.fetch("email", timeout=1.0)
        await broker.complete(job)
    """

    PROMOTE_BATCH = 100

    def __init__(
        self,
        client: Any,
        *,
        prefix: str = "queuespine",
        blocking: bool = True,
        remove_on_complete: Retention = Retention(age_seconds=100, count=100),
        remove_on_fail: Retention = Retention(age_seconds=500, count=500),
        lock_duration_ms: int = 30_000,
        max_stalled_count: int = 1,
    ) -> None:
        self._client = client
        self._prefix = prefix
        self._blocking = blocking
        self._remove_on_complete = remove_on_complete
        self._remove_on_fail = remove_on_fail
        self._lock_duration_ms = lock_duration_ms
        self._max_stalled_count = max_stalled_count

    @property
    def client(self) -> Any:
        return self._client

    def keys(self, queue: str) -> QueueKeys:
        return QueueKeys(self._prefix, queue)

    @asynccontextmanager
    async def _translate(self, operation: str, queue: str | None = None) -> AsyncIterator[None]:
        """Re-raise redis errors as queuespine broker errors."""
        try:
            yield
        except (RedisConnectionError, RedisTimeoutError, OSError) as e:
            raise BrokerConnectionError(
                f"Broker unreachable during {operation}: {e}",
                context={"operation": operation, "queue": queue},
                cause=e,
            ) from e
        except RedisError as e:
            raise BrokerError(
                f"Broker {operation} failed: {e}",
                context={"operation": operation, "queue": queue},
                cause=e,
            ) from e

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    async def connect(self) -> None:
        """Check the broker is reachable."""
        async with self._translate("connect"):
            await self._client.ping()

    async def close(self) -> None:
        """Close the underlying client and its connection pool."""
        try:
            await self._client.aclose()
        except RedisError as e:
            logger.warning("broker.close_failed", error=str(e))

    # ------------------------------------------------------------------ #
    # Producing
    # ------------------------------------------------------------------ #

    async def enqueue(
        self,
        queue: str,
        name: str,
        data: Any,
        options: JobOptions | None = None,
    ) -> EnqueuedJob:
        """Add a job; resolves once Redis has stored it.

        An existing job with the same id is left untouched and the returned
        acknowledgement has ``duplicate=True``.
        """
        options = options or JobOptions()
        job_id = options.job_id or uuid.uuid4().hex
        return await self._add_job(queue, job_id, name, data, options)

    async def _add_job(
        self,
        queue: str,
        job_id: str,
        name: str,
        data: Any,
        options: JobOptions,
        *,
        repeat_key: str | None = None,
        delay_ms: int | None = None,
    ) -> EnqueuedJob:
        keys = self.keys(queue)
        job_key = keys.job(job_id)
        delay = options.delay_ms if delay_ms is None else max(delay_ms, 0)

        try:
            encoded = json.dumps(data)
        except (TypeError, ValueError) as e:
            raise PayloadValidationError(
                f"Payload for {name} is not JSON-serializable: {e}",
                context={"task_id": name, "queue": queue},
                cause=e,
            ) from e

        async with self._translate("enqueue", queue):
            created = await self._client.hsetnx(job_key, "name", name)
            if not created:
                logger.debug("job.duplicate", queue=queue, job_id=job_id, task_id=name)
                return EnqueuedJob(id=job_id, queue=queue, name=name, delay_ms=delay, duplicate=True)

            now = now_ms()
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.hset(
                    job_key,
                    mapping={
                        "data": encoded,
                        "opts": json.dumps(options.to_dict()),
                        "attempts_made": 0,
                        "timestamp": now,
                        "repeat_key": repeat_key or "",
                    },
                )
                if delay > 0:
                    pipe.zadd(keys.delayed, {job_id: now + delay})
                else:
                    pipe.lpush(keys.wait, job_id)
                await pipe.execute()

        return EnqueuedJob(id=job_id, queue=queue, name=name, delay_ms=delay)

    # ------------------------------------------------------------------ #
    # Consuming
    # ------------------------------------------------------------------ #

    async def fetch(self, queue: str, timeout: float = 0.0) -> Job | None:
        """Claim the next ready job, waiting up to ``timeout`` seconds."""
        keys = self.keys(queue)

        async with self._translate("fetch", queue):
            await self._promote_delayed(keys)

            job_id = await self._client.lmove(keys.wait, keys.active, "RIGHT", "LEFT")
            if job_id is None and timeout > 0:
                if self._blocking:
                    job_id = await self._client.blmove(
                        keys.wait, keys.active, timeout, "RIGHT", "LEFT"
                    )
                else:
                    await asyncio.sleep(timeout)
            if job_id is None:
                return None

            raw = await self._client.hgetall(keys.job(job_id))
            if not raw or "name" not in raw:
                # Record trimmed or removed while queued
                await self._client.lrem(keys.active, 1, job_id)
                return None

            job = self._job_from_hash(queue, job_id, raw)
            job.lock_token = uuid.uuid4().hex
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.set(keys.lock(job_id), job.lock_token, px=self._lock_duration_ms)
                pipe.srem(keys.stalled, job_id)
                pipe.hset(keys.job(job_id), "processed_on", now_ms())
                await pipe.execute()

            if job.repeat_key:
                await self._schedule_next(queue, job)

        return job

    async def _promote_delayed(self, keys: QueueKeys) -> int:
        due = await self._client.zrangebyscore(
            keys.delayed, "-inf", now_ms(), start=0, num=self.PROMOTE_BATCH
        )
        promoted = 0
        for job_id in due:
            # ZREM decides the winner when several consumers promote at once
            if await self._client.zrem(keys.delayed, job_id):
                await self._client.lpush(keys.wait, job_id)
                promoted += 1
        return promoted

    def _job_from_hash(self, queue: str, job_id: str, raw: dict[str, str]) -> Job:
        return Job(
            id=job_id,
            queue=queue,
            name=raw["name"],
            data=json.loads(raw.get("data", "null")),
            options=JobOptions.from_mapping(json.loads(raw.get("opts", "{}"))),
            attempts_made=int(raw.get("attempts_made", 0)),
            timestamp_ms=int(raw.get("timestamp", 0)),
            repeat_key=raw.get("repeat_key") or None,
        )

    async def extend_lock(self, job: Job) -> bool:
        """Renew the claim lock on ``job``.

        Returns:
            False if the lock expired or now belongs to another claim.
        """
        keys = self.keys(job.queue)
        async with self._translate("extend_lock", job.queue):
            if not await self._owns_lock(keys, job):
                return False
            return bool(await self._client.pexpire(keys.lock(job.id), self._lock_duration_ms))

    async def _owns_lock(self, keys: QueueKeys, job: Job) -> bool:
        return job.lock_token is not None and (
            await self._client.get(keys.lock(job.id)) == job.lock_token
        )

    async def complete(self, job: Job) -> None:
        """Mark a claimed job as completed."""
        keys = self.keys(job.queue)
        finished = now_ms()
        async with self._translate("complete", job.queue):
            owned = await self._owns_lock(keys, job)
            async with self._client.pipeline(transaction=True) as pipe:
                if owned:
                    pipe.delete(keys.lock(job.id))
                pipe.lrem(keys.active, 1, job.id)
                pipe.zadd(keys.completed, {job.id: finished})
                pipe.hset(keys.job(job.id), "finished_on", finished)
                await pipe.execute()
            await self._trim(keys, keys.completed, self._remove_on_complete)

    async def fail(self, job: Job, error: BaseException) -> bool:
        """Mark a claimed job as failed.

        Applies the job's ``attempts`` and ``backoff`` options.

        Returns:
            True if the job was re-queued for another attempt.
        """
        keys = self.keys(job.queue)
        job_key = keys.job(job.id)
        reason = f"{type(error).__name__}: {error}"

        async with self._translate("fail", job.queue):
            owned = await self._owns_lock(keys, job)
            attempts_made = int(await self._client.hincrby(job_key, "attempts_made", 1))
            will_retry = attempts_made < job.options.attempts
            now = now_ms()

            async with self._client.pipeline(transaction=True) as pipe:
                if owned:
                    pipe.delete(keys.lock(job.id))
                pipe.lrem(keys.active, 1, job.id)
                pipe.hset(job_key, "failed_reason", reason)
                if will_retry:
                    backoff = job.options.backoff
                    delay = backoff.delay_for(attempts_made) if backoff else 0
                    if delay > 0:
                        pipe.zadd(keys.delayed, {job.id: now + delay})
                    else:
                        pipe.lpush(keys.wait, job.id)
                else:
                    pipe.zadd(keys.failed, {job.id: now})
                    pipe.hset(job_key, "finished_on", now)
                await pipe.execute()

            if not will_retry:
                await self._trim(keys, keys.failed, self._remove_on_fail)

        job.attempts_made = attempts_made
        return will_retry

    async def _trim(self, keys: QueueKeys, finished_key: str, retention: Retention) -> None:
        cutoff = now_ms() - retention.age_seconds * 1000
        stale = set(await self._client.zrangebyscore(finished_key, "-inf", cutoff))

        total = await self._client.zcard(finished_key)
        overflow = total - retention.count
        if overflow > 0:
            stale.update(await self._client.zrange(finished_key, 0, overflow - 1))

        if not stale:
            return
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.zrem(finished_key, *stale)
            pipe.delete(*(keys.job(job_id) for job_id in stale))
            await pipe.execute()

    async def recover_stalled(self, queue: str) -> list[str]:
        """Re-queue claimed jobs whose consumer stopped renewing the lock.

        Ids flagged by the previous sweep that are still active and unlocked
        go back to the head of ``wait``, or to ``failed`` once they have
        stalled more than ``max_stalled_count`` times. Every id now active is
        then flagged for the next sweep.

        Returns:
            Ids moved back to ``wait``.
        """
        keys = self.keys(queue)
        requeued: list[str] = []
        failed = False

        async with self._translate("recover_stalled", queue):
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.smembers(keys.stalled)
                pipe.delete(keys.stalled)
                flagged, _ = await pipe.execute()

            for job_id in flagged:
                if await self._client.exists(keys.lock(job_id)):
                    continue
                # LREM decides the winner when several consumers sweep at once
                if not await self._client.lrem(keys.active, 1, job_id):
                    continue

                job_key = keys.job(job_id)
                if not await self._client.exists(job_key):
                    continue
                stalled = int(await self._client.hincrby(job_key, "stalled_count", 1))
                if stalled > self._max_stalled_count:
                    now = now_ms()
                    async with self._client.pipeline(transaction=True) as pipe:
                        pipe.zadd(keys.failed, {job_id: now})
                        pipe.hset(
                            job_key,
                            mapping={
                                "failed_reason": "job stalled more than allowable limit",
                                "finished_on": now,
                            },
                        )
                        await pipe.execute()
                    failed = True
                    logger.warning("job.stalled", queue=queue, job_id=job_id, will_retry=False)
                else:
                    await self._client.rpush(keys.wait, job_id)
                    requeued.append(job_id)
                    logger.warning("job.stalled", queue=queue, job_id=job_id, will_retry=True)

            active = await self._client.lrange(keys.active, 0, -1)
            if active:
                await self._client.sadd(keys.stalled, *active)
            if failed:
                await self._trim(keys, keys.failed, self._remove_on_fail)

        return requeued

    # ------------------------------------------------------------------ #
    # Recurring jobs
    # ------------------------------------------------------------------ #

    async def list_recurring(self, queue: str) -> list[RecurringJob]:
        """Recurring registrations on ``queue``, soonest first."""
        keys = self.keys(queue)
        async with self._translate("list_recurring", queue):
            raw = await self._client.hgetall(keys.repeat)
        entries = [RecurringJob.from_dict(json.loads(value)) for value in raw.values()]
        return sorted(entries, key=lambda entry: entry.next_ms)

    async def remove_recurring(self, queue: str, key: str) -> bool:
        """Remove a recurring registration and its pending occurrence."""
        keys = self.keys(queue)
        async with self._translate("remove_recurring", queue):
            raw = await self._client.hget(keys.repeat, key)
            if raw is None:
                return False
            entry = RecurringJob.from_dict(json.loads(raw))
            pending_id = repeat_job_id(key, entry.next_ms)

            async with self._client.pipeline(transaction=True) as pipe:
                pipe.hdel(keys.repeat, key)
                pipe.zrem(keys.delayed, pending_id)
                pipe.lrem(keys.wait, 0, pending_id)
                pipe.delete(keys.job(pending_id))
                await pipe.execute()

        logger.debug("recurring.removed", queue=queue, key=key)
        return True

    async def add_recurring(
        self,
        queue: str,
        name: str,
        data: Any,
        pattern: str,
        tz: str | None = None,
        job_id: str | None = None,
        options: JobOptions | None = None,
    ) -> RecurringJob:
        """Register a recurring job and queue its first occurrence."""
        pattern = validate_cron(pattern)
        tz = validate_timezone(tz)
        job_id = job_id or name
        options = options or JobOptions()

        key = recurring_key(name, job_id, pattern, tz)
        first = next_fire_ms(pattern, tz)
        entry = RecurringJob(key=key, name=name, id=job_id, pattern=pattern, tz=tz, next_ms=first)

        keys = self.keys(queue)
        async with self._translate("add_recurring", queue):
            await self._client.hset(keys.repeat, key, json.dumps(entry.to_dict()))
        await self._add_job(
            queue,
            repeat_job_id(key, first),
            name,
            data,
            replace(options, job_id=None, delay_ms=0),
            repeat_key=key,
            delay_ms=first - now_ms(),
        )
        return entry

    async def _schedule_next(self, queue: str, job: Job) -> None:
        keys = self.keys(queue)
        raw = await self._client.hget(keys.repeat, job.repeat_key)
        if raw is None:
            return  # registration was removed

        entry = RecurringJob.from_dict(json.loads(raw))
        following = next_fire_ms(entry.pattern, entry.tz, after_ms=max(now_ms(), entry.next_ms))
        entry = replace(entry, next_ms=following)
        await self._client.hset(keys.repeat, entry.key, json.dumps(entry.to_dict()))
        await self._add_job(
            queue,
            repeat_job_id(entry.key, following),
            entry.name,
            job.data,
            job.options,
            repeat_key=entry.key,
            delay_ms=following - now_ms(),
        )

    # ------------------------------------------------------------------ #
    # Introspection
    # ------------------------------------------------------------------ #

    async def counts(self, queue: str) -> dict[str, int]:
        """Number of jobs per state on ``queue``."""
        keys = self.keys(queue)
        async with self._translate("counts", queue):
            async with self._client.pipeline(transaction=False) as pipe:
                pipe.llen(keys.wait)
                pipe.zcard(keys.delayed)
                pipe.llen(keys.active)
                pipe.zcard(keys.completed)
                pipe.zcard(keys.failed)
                waiting, delayed, active, completed, failed = await pipe.execute()
        return {
            "waiting": waiting,
            "delayed": delayed,
            "active": active,
            "completed": completed,
            "failed": failed,
        }

    async def get_job(self, queue: str, job_id: str) -> dict[str, Any] | None:
        """Stored record of a job, with ``data`` and ``opts`` decoded."""
        keys = self.keys(queue)
        async with self._translate("get_job", queue):
            raw = await self._client.hgetall(keys.job(job_id))
        if not raw:
            return None
        record: dict[str, Any] = dict(raw)
        record["data"] = json.loads(raw.get("data", "null"))
        record["opts"] = json.loads(raw.get("opts", "{}"))
        record["attempts_made"] = int(raw.get("attempts_made", 0))
        return record
