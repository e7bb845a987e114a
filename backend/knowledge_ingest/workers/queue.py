"""
Document Processing Queue
═════════════════════════

Best-effort job queue with two interchangeable backends:

  Redis list "document-queue"   LPUSH on enqueue, BRPOP (1s timeout) to consume
  in-process deque              used whenever Redis is unreachable

Backend selection happens per call: `add_job()` pushes to Redis when a PING
succeeds, otherwise appends to the deque. Consumers self-heal: after
MAX_CONSECUTIVE_ERRORS Redis errors in a row, or on a connection-loss error,
a consumer abandons Redis for good and keeps draining the deque. Redis-backed
consumers also drain the deque whenever BRPOP comes back empty, so jobs
queued during an outage are never stranded.

Failed jobs are re-enqueued after retry_delay × 2^(attempts−1) until
max_attempts, then dropped. Marking the owning document failed is the
handler's job, not the queue's (see services/orchestrator.py).

Nothing here is durable beyond Redis' own persistence; outcomes live in the
document table.
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
import string
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from typing import Any, Awaitable, Callable

from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

QUEUE_KEY               = "document-queue"
BRPOP_TIMEOUT           = 1      # seconds
FALLBACK_POLL_INTERVAL  = 0.5    # seconds between polls of an empty deque
MAX_CONSECUTIVE_ERRORS  = 5
REDIS_ERROR_BACKOFF     = 1.0    # seconds after a non-fatal Redis error

_ID_ALPHABET = string.ascii_lowercase + string.digits

JobHandler = Callable[["Job"], Awaitable[Any]]


# ---------------------------------------------------------------------------
# Job
# ---------------------------------------------------------------------------

def new_job_id(job_type: str) -> str:
    """<type>-<epoch ms>-<7 random base36 chars>"""
    suffix = "".join(random.choices(_ID_ALPHABET, k=7))
    return f"{job_type}-{int(time.time() * 1000)}-{suffix}"


@dataclass
class Job:
    id:           str
    type:         str
    data:         dict[str, Any]
    timestamp:    int
    attempts:     int = 0
    max_attempts: int = 3

    @property
    def is_last_attempt(self) -> bool:
        return self.attempts >= self.max_attempts

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw: str | bytes) -> "Job":
        payload = json.loads(raw)
        return cls(
            id=payload["id"],
            type=payload["type"],
            data=payload.get("data") or {},
            timestamp=payload.get("timestamp", 0),
            attempts=payload.get("attempts", 0),
            max_attempts=payload.get("max_attempts", 3),
        )


def _is_connection_loss(exc: BaseException) -> bool:
    if isinstance(exc, (RedisConnectionError, ConnectionRefusedError)):
        return True
    message = str(exc)
    return "Connection closed" in message or "ECONNREFUSED" in message


# ---------------------------------------------------------------------------
# Queue
# ---------------------------------------------------------------------------

@dataclass
class _Consumer:
    worker_id: int
    use_redis: bool = True
    consecutive_errors: int = 0


class DocumentProcessingQueue:
    """
    Constructed once per process (see services/orchestrator.py) and passed
    down explicitly; there is no module-level instance.
    """

    def __init__(
        self,
        redis_url:      str | None = None,
        *,
        max_concurrent: int = 20,
        retry_delay:    float = 1.0,
        max_retries:    int = 3,
        redis_client:   Redis | None = None,
    ) -> None:
        self._redis_url = redis_url or None
        self._redis: Redis | None = redis_client
        self.max_concurrent = max(1, max_concurrent)
        self.retry_delay = retry_delay
        self.max_retries = max_retries

        self._fallback: deque[Job] = deque()
        self._processing = 0
        self._processing_started = False
        self._stopping = False
        self._handler: JobHandler | None = None
        self._workers: list[asyncio.Task] = []
        self._retry_tasks: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Backend
    # ------------------------------------------------------------------

    @property
    def redis_configured(self) -> bool:
        return self._redis is not None or self._redis_url is not None

    async def _get_redis(self) -> Redis | None:
        """The Redis client if it answers a PING right now, else None."""
        if self._redis is None:
            if self._redis_url is None:
                return None
            self._redis = Redis.from_url(self._redis_url, decode_responses=True)
        try:
            await self._redis.ping()
            return self._redis
        except (RedisError, OSError) as exc:
            logger.warning("Redis unavailable | error=%s", exc)
            return None

    async def is_redis_available(self) -> bool:
        return await self._get_redis() is not None

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    async def add_job(self, job_type: str, data: dict[str, Any], max_attempts: int | None = None) -> str:
        job = Job(
            id=new_job_id(job_type),
            type=job_type,
            data=data,
            timestamp=int(time.time() * 1000),
            max_attempts=max_attempts or self.max_retries,
        )
        await self._enqueue(job)
        return job.id

    async def _enqueue(self, job: Job) -> None:
        redis = await self._get_redis()
        if redis is not None:
            try:
                await redis.lpush(QUEUE_KEY, job.to_json())
                logger.debug("Job queued | job=%s backend=redis attempts=%d", job.id, job.attempts)
                return
            except (RedisError, OSError) as exc:
                logger.warning("Redis enqueue failed, using in-process queue | job=%s error=%s", job.id, exc)
        self._fallback.append(job)
        logger.debug("Job queued | job=%s backend=memory attempts=%d", job.id, job.attempts)

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    async def process_jobs(self, handler: JobHandler) -> None:
        """Start the consumer loops. A second call while running is a no-op."""
        if self._processing_started:
            return
        self._processing_started = True
        self._stopping = False
        self._handler = handler
        self._workers = [
            asyncio.create_task(self._consume(_Consumer(worker_id=i)), name=f"document-queue-{i}")
            for i in range(self.max_concurrent)
        ]
        logger.info("Queue consumers started | workers=%d", self.max_concurrent)

    async def _consume(self, consumer: _Consumer) -> None:
        while not self._stopping:
            job = await self._next_job(consumer)
            if job is not None:
                await self._execute(job)

    async def _next_job(self, consumer: _Consumer) -> Job | None:
        if consumer.use_redis:
            redis = await self._get_redis()
            if redis is None:
                self._abandon_redis(consumer, "unreachable")
                return None
            try:
                item = await redis.brpop(QUEUE_KEY, timeout=BRPOP_TIMEOUT)
                consumer.consecutive_errors = 0
            except (RedisError, OSError) as exc:
                consumer.consecutive_errors += 1
                logger.warning(
                    "Queue consumer error | worker=%d errors=%d error=%s",
                    consumer.worker_id, consumer.consecutive_errors, exc,
                )
                if consumer.consecutive_errors >= MAX_CONSECUTIVE_ERRORS or _is_connection_loss(exc):
                    self._abandon_redis(consumer, str(exc))
                else:
                    await asyncio.sleep(REDIS_ERROR_BACKOFF)
                return None
            if item is not None:
                return self._decode(item[1])
            return self._pop_fallback()

        job = self._pop_fallback()
        if job is None:
            await asyncio.sleep(FALLBACK_POLL_INTERVAL)
        return job

    @staticmethod
    def _decode(raw: str | bytes) -> Job | None:
        """Malformed items are logged and dropped; the consumer keeps running."""
        try:
            return Job.from_json(raw)
        except (ValueError, KeyError, TypeError) as exc:
            logger.error("Dropping malformed queue item | item=%.200r error=%s", raw, exc)
            return None

    def _abandon_redis(self, consumer: _Consumer, reason: str) -> None:
        consumer.use_redis = False
        logger.warning(
            "Queue consumer switching to in-process queue | worker=%d reason=%s",
            consumer.worker_id, reason,
        )

    def _pop_fallback(self) -> Job | None:
        try:
            return self._fallback.popleft()
        except IndexError:
            return None

    async def _execute(self, job: Job) -> None:
        assert self._handler is not None
        job.attempts += 1
        self._processing += 1
        t0 = time.monotonic()
        try:
            await self._handler(job)
            logger.info(
                "Job done | job=%s attempts=%d elapsed_ms=%.0f",
                job.id, job.attempts, (time.monotonic() - t0) * 1000,
            )
        except Exception as exc:
            if job.attempts < job.max_attempts:
                delay = self.retry_delay * (2 ** (job.attempts - 1))
                logger.warning(
                    "Job failed, retrying | job=%s attempt=%d/%d delay=%.1fs error=%s",
                    job.id, job.attempts, job.max_attempts, delay, exc,
                )
                self._schedule_retry(job, delay)
            else:
                logger.error(
                    "Job permanently failed | job=%s attempts=%d error=%s",
                    job.id, job.attempts, exc,
                )
        finally:
            self._processing -= 1

    def _schedule_retry(self, job: Job, delay: float) -> None:
        async def _later() -> None:
            await asyncio.sleep(delay)
            await self._enqueue(job)

        task = asyncio.create_task(_later())
        self._retry_tasks.add(task)
        task.add_done_callback(self._retry_tasks.discard)

    # ------------------------------------------------------------------
    # Introspection / maintenance
    # ------------------------------------------------------------------

    async def get_queue_stats(self) -> dict[str, Any]:
        redis = await self._get_redis()
        pending = len(self._fallback)
        if redis is not None:
            try:
                pending += await redis.llen(QUEUE_KEY)
            except (RedisError, OSError) as exc:
                logger.warning("Queue stats: Redis LLEN failed | error=%s", exc)
        return {
            "pending": pending,
            "processing": self._processing,
            "redis_available": redis is not None,
        }

    async def clear_queue(self) -> None:
        redis = await self._get_redis()
        if redis is not None:
            await redis.delete(QUEUE_KEY)
        self._fallback.clear()
        logger.info("Queue cleared")

    async def close(self) -> None:
        """Stop consumers, cancel pending retries and release the Redis connection."""
        self._stopping = True
        tasks = [*self._workers, *self._retry_tasks]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._workers = []
        self._processing_started = False
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
