"""Tests for queuespine.broker: RedisBroker over fakeredis.

Covers enqueue/fetch/complete/fail, idempotent job ids, delayed jobs,
retry with backoff, retention trimming, recurring registrations and
redis error translation.
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import fakeredis
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError

from queuespine.broker import RedisBroker, Retention, repeat_job_id
from queuespine.errors import BrokerConnectionError, BrokerError, PayloadValidationError
from queuespine.models import Backoff, JobOptions


class TestEnqueueAndFetch:
    @pytest.mark.asyncio
    async def test_roundtrip(self, broker):
        ack = await broker.enqueue("email", "email.welcome", {"userId": "1"}, JobOptions(job_id="j1"))
        assert ack.id == "j1"
        assert ack.queue == "email"
        assert ack.duplicate is False

        job = await broker.fetch("email")
        assert job is not None
        assert job.id == "j1"
        assert job.name == "email.welcome"
        assert job.data == {"userId": "1"}
        assert job.attempts_made == 0
        assert job.timestamp_ms > 0

    @pytest.mark.asyncio
    async def test_empty_queue(self, broker):
        assert await broker.fetch("email") is None

    @pytest.mark.asyncio
    async def test_empty_queue_waits_for_timeout(self, broker):
        loop = asyncio.get_running_loop()
        started = loop.time()
        assert await broker.fetch("email", timeout=0.05) is None
        assert loop.time() - started >= 0.04

    @pytest.mark.asyncio
    async def test_fifo(self, broker):
        for i in range(3):
            await broker.enqueue("q", "t", i, JobOptions(job_id=f"j{i}"))
        ids = [(await broker.fetch("q")).id for _ in range(3)]
        assert ids == ["j0", "j1", "j2"]

    @pytest.mark.asyncio
    async def test_queues_are_separate(self, broker):
        await broker.enqueue("a", "t", 1)
        assert await broker.fetch("b") is None
        assert await broker.fetch("a") is not None

    @pytest.mark.asyncio
    async def test_generated_id_without_job_id(self, broker):
        ack = await broker.enqueue("q", "t", None)
        assert ack.id

    @pytest.mark.asyncio
    async def test_options_stored_with_job(self, broker):
        options = JobOptions(job_id="j", attempts=3, backoff=Backoff("exponential", 10))
        await broker.enqueue("q", "t", {}, options)
        job = await broker.fetch("q")
        assert job.options.attempts == 3
        assert job.options.backoff == Backoff("exponential", 10)

    @pytest.mark.asyncio
    async def test_fetch_claims_job(self, broker):
        await broker.enqueue("q", "t", {})
        await broker.fetch("q")
        counts = await broker.counts("q")
        assert counts["waiting"] == 0
        assert counts["active"] == 1


class TestIdempotentJobId:
    @pytest.mark.asyncio
    async def test_duplicate_is_noop(self, broker):
        first = await broker.enqueue("q", "t", {"n": 1}, JobOptions(job_id="same"))
        second = await broker.enqueue("q", "t", {"n": 2}, JobOptions(job_id="same"))

        assert first.duplicate is False
        assert second.duplicate is True
        assert (await broker.counts("q"))["waiting"] == 1
        assert (await broker.get_job("q", "same"))["data"] == {"n": 1}


class TestDelayed:
    @pytest.mark.asyncio
    async def test_not_fetched_before_due(self, broker):
        ack = await broker.enqueue("q", "t", {}, JobOptions(delay_ms=60_000))
        assert ack.delay_ms == 60_000
        assert await broker.fetch("q") is None
        assert (await broker.counts("q"))["delayed"] == 1

    @pytest.mark.asyncio
    async def test_promoted_when_due(self, broker):
        await broker.enqueue("q", "t", {}, JobOptions(job_id="later", delay_ms=5))
        await asyncio.sleep(0.02)
        job = await broker.fetch("q")
        assert job is not None
        assert job.id == "later"


class TestComplete:
    @pytest.mark.asyncio
    async def test_complete(self, broker):
        await broker.enqueue("q", "t", {}, JobOptions(job_id="j"))
        job = await broker.fetch("q")
        await broker.complete(job)

        counts = await broker.counts("q")
        assert counts["active"] == 0
        assert counts["completed"] == 1
        assert "finished_on" in await broker.get_job("q", "j")

    @pytest.mark.asyncio
    async def test_retention_count(self):
        client = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)
        broker = RedisBroker(client, blocking=False, remove_on_complete=Retention(100, 2))

        for i in range(3):
            await broker.enqueue("q", "t", i, JobOptions(job_id=f"j{i}"))
            await broker.complete(await broker.fetch("q"))

        assert (await broker.counts("q"))["completed"] == 2
        assert await broker.get_job("q", "j0") is None
        assert await broker.get_job("q", "j2") is not None


class TestFail:
    @pytest.mark.asyncio
    async def test_single_attempt_fails_permanently(self, broker):
        await broker.enqueue("q", "t", {}, JobOptions(job_id="j"))
        job = await broker.fetch("q")

        will_retry = await broker.fail(job, ValueError("boom"))

        assert will_retry is False
        assert job.attempts_made == 1
        counts = await broker.counts("q")
        assert counts["failed"] == 1
        assert counts["active"] == 0
        assert (await broker.get_job("q", "j"))["failed_reason"] == "ValueError: boom"

    @pytest.mark.asyncio
    async def test_retry_until_attempts_exhausted(self, broker):
        await broker.enqueue("q", "t", {}, JobOptions(job_id="j", attempts=2))

        job = await broker.fetch("q")
        assert await broker.fail(job, RuntimeError("1")) is True
        assert (await broker.counts("q"))["waiting"] == 1

        job = await broker.fetch("q")
        assert job.attempts_made == 1
        assert job.attempt == 2
        assert await broker.fail(job, RuntimeError("2")) is False
        assert (await broker.counts("q"))["failed"] == 1

    @pytest.mark.asyncio
    async def test_retry_with_backoff_is_delayed(self, broker):
        options = JobOptions(job_id="j", attempts=3, backoff=Backoff("fixed", 60_000))
        await broker.enqueue("q", "t", {}, options)
        job = await broker.fetch("q")

        assert await broker.fail(job, RuntimeError("x")) is True
        counts = await broker.counts("q")
        assert counts["delayed"] == 1
        assert counts["waiting"] == 0


def _short_lock_broker(**kwargs) -> RedisBroker:
    client = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)
    return RedisBroker(client, blocking=False, lock_duration_ms=20, **kwargs)


class TestClaimLock:
    @pytest.mark.asyncio
    async def test_fetch_takes_lock(self, broker):
        await broker.enqueue("q", "t", {}, JobOptions(job_id="j"))
        job = await broker.fetch("q")

        assert job.lock_token
        assert await broker.client.get(broker.keys("q").lock("j")) == job.lock_token

    @pytest.mark.asyncio
    async def test_extend_lock(self, broker):
        await broker.enqueue("q", "t", {}, JobOptions(job_id="j"))
        job = await broker.fetch("q")

        assert await broker.extend_lock(job) is True
        await broker.complete(job)
        assert await broker.extend_lock(job) is False
        assert await broker.client.exists(broker.keys("q").lock("j")) == 0

    @pytest.mark.asyncio
    async def test_extend_fails_after_expiry(self):
        broker = _short_lock_broker()
        await broker.enqueue("q", "t", {}, JobOptions(job_id="j"))
        job = await broker.fetch("q")
        await asyncio.sleep(0.05)

        assert await broker.extend_lock(job) is False

    @pytest.mark.asyncio
    async def test_fail_releases_lock(self, broker):
        await broker.enqueue("q", "t", {}, JobOptions(job_id="j", attempts=2))
        job = await broker.fetch("q")
        await broker.fail(job, RuntimeError("x"))

        assert await broker.client.exists(broker.keys("q").lock("j")) == 0


class TestStalledRecovery:
    @pytest.mark.asyncio
    async def test_abandoned_claim_is_requeued(self):
        broker = _short_lock_broker()
        await broker.enqueue("email", "email.welcome", {"userId": "1"}, JobOptions(job_id="j1"))
        assert (await broker.fetch("email")).id == "j1"
        # The claiming consumer dies without completing the job

        assert await broker.recover_stalled("email") == []
        await asyncio.sleep(0.05)
        assert await broker.recover_stalled("email") == ["j1"]

        counts = await broker.counts("email")
        assert counts["active"] == 0
        assert counts["waiting"] == 1
        redelivered = await broker.fetch("email")
        assert redelivered.id == "j1"
        assert redelivered.data == {"userId": "1"}

    @pytest.mark.asyncio
    async def test_recovered_job_is_next_in_line(self):
        broker = _short_lock_broker()
        await broker.enqueue("q", "t", {}, JobOptions(job_id="stalled"))
        await broker.fetch("q")
        await broker.enqueue("q", "t", {}, JobOptions(job_id="fresh"))

        await broker.recover_stalled("q")
        await asyncio.sleep(0.05)
        await broker.recover_stalled("q")

        assert (await broker.fetch("q")).id == "stalled"

    @pytest.mark.asyncio
    async def test_locked_claim_is_left_alone(self, broker):
        await broker.enqueue("q", "t", {}, JobOptions(job_id="j"))
        await broker.fetch("q")

        assert await broker.recover_stalled("q") == []
        assert await broker.recover_stalled("q") == []
        assert (await broker.counts("q"))["active"] == 1

    @pytest.mark.asyncio
    async def test_claim_after_sweep_is_not_stalled(self):
        broker = _short_lock_broker()
        await broker.enqueue("q", "t", {}, JobOptions(job_id="j"))
        await broker.fetch("q")
        await broker.recover_stalled("q")
        await asyncio.sleep(0.05)
        await broker.recover_stalled("q")

        # Re-claimed by a live consumer before the next sweep
        job = await broker.fetch("q")
        assert await broker.recover_stalled("q") == []
        await broker.complete(job)
        assert (await broker.counts("q"))["completed"] == 1

    @pytest.mark.asyncio
    async def test_stalled_too_often_fails(self):
        broker = _short_lock_broker(max_stalled_count=0)
        await broker.enqueue("q", "t", {}, JobOptions(job_id="j"))
        await broker.fetch("q")

        await broker.recover_stalled("q")
        await asyncio.sleep(0.05)
        assert await broker.recover_stalled("q") == []

        counts = await broker.counts("q")
        assert counts["failed"] == 1
        assert counts["waiting"] == 0
        assert "stalled" in (await broker.get_job("q", "j"))["failed_reason"]


class TestPayload:
    @pytest.mark.asyncio
    async def test_unserializable_payload(self, broker):
        with pytest.raises(PayloadValidationError):
            await broker.enqueue("q", "t", {"when": object()}, JobOptions(job_id="bad"))
        assert await broker.get_job("q", "bad") is None


class TestRecurring:
    @pytest.mark.asyncio
    async def test_add_and_list(self, broker):
        entry = await broker.add_recurring("reports", "reports.daily", None, "0 9 * * *")

        assert entry.id == "reports.daily"
        assert entry.name == "reports.daily"
        assert await broker.list_recurring("reports") == [entry]
        assert (await broker.counts("reports"))["delayed"] == 1

    @pytest.mark.asyncio
    async def test_remove(self, broker):
        entry = await broker.add_recurring(
            "reports", "reports.daily", None, "0 9 * * *", tz="Europe/London"
        )

        assert await broker.remove_recurring("reports", entry.key) is True
        assert await broker.list_recurring("reports") == []
        assert (await broker.counts("reports"))["delayed"] == 0
        assert await broker.get_job("reports", repeat_job_id(entry.key, entry.next_ms)) is None

    @pytest.mark.asyncio
    async def test_remove_unknown(self, broker):
        assert await broker.remove_recurring("reports", "nope") is False

    @pytest.mark.asyncio
    async def test_fetch_schedules_next_occurrence(self, broker):
        entry = await broker.add_recurring(
            "reports", "reports.daily", {"format": "pdf"}, "0 9 * * *"
        )
        occurrence = repeat_job_id(entry.key, entry.next_ms)
        # Make the pending occurrence due now
        await broker.client.zadd(broker.keys("reports").delayed, {occurrence: 0})

        job = await broker.fetch("reports")

        assert job.id == occurrence
        assert job.name == "reports.daily"
        assert job.data == {"format": "pdf"}
        assert job.repeat_key == entry.key
        (updated,) = await broker.list_recurring("reports")
        assert updated.next_ms > entry.next_ms
        assert (await broker.counts("reports"))["delayed"] == 1

    @pytest.mark.asyncio
    async def test_removed_schedule_stops(self, broker):
        entry = await broker.add_recurring("reports", "reports.daily", None, "0 9 * * *")
        occurrence = repeat_job_id(entry.key, entry.next_ms)
        await broker.client.zadd(broker.keys("reports").delayed, {occurrence: 0})
        await broker.client.hdel(broker.keys("reports").repeat, entry.key)

        job = await broker.fetch("reports")

        assert job is not None
        assert (await broker.counts("reports"))["delayed"] == 0


class TestErrorTranslation:
    @pytest.mark.asyncio
    async def test_connection_error(self):
        client = MagicMock()
        client.ping = AsyncMock(side_effect=RedisConnectionError("refused"))
        broker = RedisBroker(client)

        with pytest.raises(BrokerConnectionError) as exc_info:
            await broker.connect()
        assert exc_info.value.retryable is True
        assert isinstance(exc_info.value.cause, RedisConnectionError)

    @pytest.mark.asyncio
    async def test_other_redis_error(self):
        client = MagicMock()
        client.hgetall = AsyncMock(side_effect=ResponseError("WRONGTYPE"))
        broker = RedisBroker(client)

        with pytest.raises(BrokerError) as exc_info:
            await broker.list_recurring("q")
        assert not isinstance(exc_info.value, BrokerConnectionError)
        assert exc_info.value.context["operation"] == "list_recurring"
