"""
Unit tests — DocumentProcessingQueue

Covers:
  - Job ids and serialisation
  - Backend selection: Redis when PING succeeds, in-process deque otherwise
  - Consumers: handler dispatch, retry with exponential delay, drop after
    max_attempts, idempotent start, self-healing on Redis connection loss or
    repeated Redis errors, malformed queue items dropped
  - Stats / clear / close

Redis is a MagicMock over a Python list (LPUSH at the head, BRPOP from the tail).
"""

from __future__ import annotations

import asyncio
import json
import re
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError

from knowledge_ingest.workers.queue import (
    MAX_CONSECUTIVE_ERRORS,
    QUEUE_KEY,
    DocumentProcessingQueue,
    Job,
    new_job_id,
)
from tests.conftest import wait_for


def _redis_mock() -> MagicMock:
    store: list[str] = []

    async def lpush(key, value):
        store.insert(0, value)
        return len(store)

    async def brpop(key, timeout=0):
        if store:
            return key, store.pop()
        await asyncio.sleep(0.01)
        return None

    async def llen(key):
        return len(store)

    async def delete(key):
        store.clear()
        return 1

    redis = MagicMock()
    redis.store = store
    redis.ping = AsyncMock(return_value=True)
    redis.lpush = AsyncMock(side_effect=lpush)
    redis.brpop = AsyncMock(side_effect=brpop)
    redis.llen = AsyncMock(side_effect=llen)
    redis.delete = AsyncMock(side_effect=delete)
    redis.aclose = AsyncMock()
    return redis


# ─────────────────────────────────────────────────────────────────────────────
# Jobs
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.queue
class TestJob:

    def test_job_id_format(self):
        assert re.fullmatch(r"process-document-\d{13}-[a-z0-9]{7}", new_job_id("process-document"))

    def test_job_ids_are_unique(self):
        assert len({new_job_id("x") for _ in range(200)}) == 200

    def test_json_payload(self):
        job = Job(id="j-1", type="process-document", data={"documentId": "d1"}, timestamp=1700000000000)
        payload = json.loads(job.to_json())
        assert payload == {
            "id": "j-1", "type": "process-document", "data": {"documentId": "d1"},
            "timestamp": 1700000000000, "attempts": 0, "max_attempts": 3,
        }
        assert Job.from_json(job.to_json()) == job

    def test_last_attempt(self):
        job = Job(id="j", type="t", data={}, timestamp=0, attempts=2, max_attempts=3)
        assert not job.is_last_attempt
        job.attempts = 3
        assert job.is_last_attempt


# ─────────────────────────────────────────────────────────────────────────────
# Producer side
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.queue
class TestEnqueue:

    async def test_without_redis_uses_memory(self):
        queue = DocumentProcessingQueue(None)

        await queue.add_job("process-document", {"documentId": "d1"})

        assert not queue.redis_configured
        assert await queue.get_queue_stats() == {"pending": 1, "processing": 0, "redis_available": False}

    async def test_with_redis_pushes_to_list(self):
        redis = _redis_mock()
        queue = DocumentProcessingQueue(redis_client=redis)

        job_id = await queue.add_job("process-document", {"documentId": "d1"}, max_attempts=5)

        redis.lpush.assert_awaited_once()
        assert redis.lpush.await_args.args[0] == QUEUE_KEY
        stored = json.loads(redis.store[0])
        assert stored["id"] == job_id
        assert stored["attempts"] == 0
        assert stored["max_attempts"] == 5
        assert await queue.get_queue_stats() == {"pending": 1, "processing": 0, "redis_available": True}

    async def test_unreachable_redis_falls_back_to_memory(self):
        redis = _redis_mock()
        redis.ping.side_effect = RedisConnectionError("Connection refused")
        queue = DocumentProcessingQueue(redis_client=redis)

        await queue.add_job("process-document", {"documentId": "d1"})

        redis.lpush.assert_not_awaited()
        assert await queue.get_queue_stats() == {"pending": 1, "processing": 0, "redis_available": False}

    async def test_clear_queue(self):
        redis = _redis_mock()
        queue = DocumentProcessingQueue(redis_client=redis)
        await queue.add_job("a", {})
        redis.ping.side_effect = RedisConnectionError("down")
        await queue.add_job("b", {})
        redis.ping.side_effect = None

        await queue.clear_queue()

        assert redis.store == []
        assert (await queue.get_queue_stats())["pending"] == 0


# ─────────────────────────────────────────────────────────────────────────────
# Consumer side
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.queue
@pytest.mark.usefixtures("fast_polling")
class TestConsumers:

    async def test_memory_jobs_are_handled(self):
        queue = DocumentProcessingQueue(None, max_concurrent=2)
        handled: list[str] = []

        async def handler(job: Job) -> None:
            handled.append(job.data["n"])

        for n in ("a", "b", "c"):
            await queue.add_job("t", {"n": n})
        await queue.process_jobs(handler)
        await wait_for(lambda: len(handled) == 3)
        await queue.close()

        assert sorted(handled) == ["a", "b", "c"]

    async def test_redis_jobs_are_handled(self):
        redis = _redis_mock()
        queue = DocumentProcessingQueue(redis_client=redis, max_concurrent=1)
        handled: list[Job] = []

        async def handler(job: Job) -> None:
            handled.append(job)

        await queue.process_jobs(handler)
        job_id = await queue.add_job("t", {"n": 1})
        await wait_for(lambda: len(handled) == 1)
        await queue.close()

        assert handled[0].id == job_id
        assert handled[0].attempts == 1
        redis.aclose.assert_awaited_once()

    async def test_process_jobs_is_idempotent(self):
        queue = DocumentProcessingQueue(None, max_concurrent=3)
        handler = AsyncMock()

        await queue.process_jobs(handler)
        workers = list(queue._workers)
        await queue.process_jobs(AsyncMock())

        assert queue._workers == workers
        assert len(workers) == 3
        await queue.close()

    async def test_failed_job_retried_with_backoff_then_dropped(self):
        queue = DocumentProcessingQueue(None, max_concurrent=1, retry_delay=0.01)
        attempts: list[int] = []

        async def handler(job: Job) -> None:
            attempts.append(job.attempts)
            raise RuntimeError("boom")

        with patch.object(queue, "_schedule_retry", wraps=queue._schedule_retry) as schedule:
            await queue.add_job("t", {}, max_attempts=3)
            await queue.process_jobs(handler)
            await wait_for(lambda: len(attempts) == 3)
            await asyncio.sleep(0.1)

        assert attempts == [1, 2, 3]
        assert [c.args[1] for c in schedule.call_args_list] == [0.01, 0.02]
        assert (await queue.get_queue_stats())["pending"] == 0
        await queue.close()

    async def test_job_succeeds_on_a_later_attempt(self):
        queue = DocumentProcessingQueue(None, max_concurrent=1, retry_delay=0.01)
        attempts: list[int] = []

        async def handler(job: Job) -> None:
            attempts.append(job.attempts)
            if job.attempts < 2:
                raise RuntimeError("transient")

        await queue.add_job("t", {})
        await queue.process_jobs(handler)
        await wait_for(lambda: attempts == [1, 2])
        await asyncio.sleep(0.05)
        await queue.close()

        assert attempts == [1, 2]

    async def test_consumer_switches_to_memory_on_connection_loss(self):
        redis = _redis_mock()
        redis.brpop.side_effect = RedisConnectionError("Connection closed by server.")
        queue = DocumentProcessingQueue(redis_client=redis, max_concurrent=1)
        handled: list[Job] = []

        async def handler(job: Job) -> None:
            handled.append(job)

        await queue.process_jobs(handler)
        await wait_for(lambda: redis.brpop.await_count >= 1)

        redis.ping.side_effect = RedisConnectionError("Connection refused")
        await queue.add_job("t", {"n": 1})
        await wait_for(lambda: len(handled) == 1)
        await queue.close()

        assert redis.brpop.await_count == 1

    async def test_malformed_redis_item_is_dropped(self):
        redis = _redis_mock()
        redis.store.extend(['{"type": "t"}', "not json"])
        queue = DocumentProcessingQueue(redis_client=redis, max_concurrent=1)
        handled: list[Job] = []

        async def handler(job: Job) -> None:
            handled.append(job)

        await queue.process_jobs(handler)
        job_id = await queue.add_job("t", {"n": 1})
        await wait_for(lambda: len(handled) == 1)

        assert handled[0].id == job_id
        assert redis.store == []
        assert not any(worker.done() for worker in queue._workers)
        await queue.close()

    async def test_consumer_abandons_redis_after_repeated_errors(self):
        redis = _redis_mock()
        redis.brpop.side_effect = RedisError("READONLY You can't write against a read only replica.")
        queue = DocumentProcessingQueue(redis_client=redis, max_concurrent=1)
        handled: list[Job] = []

        async def handler(job: Job) -> None:
            handled.append(job)

        await queue.process_jobs(handler)
        await wait_for(lambda: redis.brpop.await_count >= MAX_CONSECUTIVE_ERRORS)
        await asyncio.sleep(0.05)
        assert redis.brpop.await_count == MAX_CONSECUTIVE_ERRORS

        redis.ping.side_effect = RedisConnectionError("Connection refused")
        await queue.add_job("t", {"n": 1})
        await wait_for(lambda: len(handled) == 1)
        await queue.close()

        assert redis.brpop.await_count == MAX_CONSECUTIVE_ERRORS

    async def test_consumer_stays_on_redis_below_error_threshold(self):
        redis = _redis_mock()
        list_brpop = redis.brpop.side_effect
        failures = MAX_CONSECUTIVE_ERRORS - 1
        calls = 0

        async def flaky_brpop(key, timeout=0):
            nonlocal calls
            calls += 1
            if calls <= failures:
                raise RedisError("LOADING Redis is loading the dataset in memory")
            return await list_brpop(key, timeout)

        redis.brpop.side_effect = flaky_brpop
        queue = DocumentProcessingQueue(redis_client=redis, max_concurrent=1)
        handled: list[Job] = []

        async def handler(job: Job) -> None:
            handled.append(job)

        await queue.process_jobs(handler)
        await wait_for(lambda: redis.brpop.await_count > failures)
        job_id = await queue.add_job("t", {"n": 1})
        await wait_for(lambda: len(handled) == 1)
        await queue.close()

        assert handled[0].id == job_id
        assert redis.store == []
        redis.lpush.assert_awaited_once()

    async def test_stats_count_in_flight_jobs(self):
        queue = DocumentProcessingQueue(None, max_concurrent=1)
        release = asyncio.Event()

        async def handler(job: Job) -> None:
            await release.wait()

        await queue.add_job("t", {})
        await queue.process_jobs(handler)
        await wait_for(lambda: queue._processing == 1)

        assert await queue.get_queue_stats() == {"pending": 0, "processing": 1, "redis_available": False}
        release.set()
        await wait_for(lambda: queue._processing == 0)
        await queue.close()
