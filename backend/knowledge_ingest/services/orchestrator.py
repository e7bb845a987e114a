"""
Processing Orchestrator — tiered dispatch of document batches
═════════════════════════════════════════════════════════════

Tiers, best first:

  EXTERNAL_DISPATCHER   Celery, when CELERY_BROKER_URL is set. One task per
                        document; the broker handles concurrency and retry.
  DISTRIBUTED_QUEUE     DocumentProcessingQueue on Redis, when Redis answers.
                        One job per document, consumers started in the
                        background.
  IN_PROCESS            InProcessScheduler: sequential batches, staggered
                        starts, a counting semaphore per batch. Always
                        available.

A tier is skipped when unavailable, or when it fails before accepting any
document; if it fails part-way, only the documents it did not accept move on
to the next tier.

Every document failure is contained at the document boundary: it ends up in
the document's processing_status / processing_error and never propagates to
the caller of `process_batch()`, which is fire-and-forget.

Scheduler sizing (KB_CONFIG_*):
  with Redis     concurrency_limit, batch_size, delays as configured
  without Redis  concurrency and batch size halved, delays doubled
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from knowledge_ingest.core.config import Settings
from knowledge_ingest.core.errors import DocumentNotFoundError, DocumentStateError
from knowledge_ingest.processing.processor import DocumentProcessor, build_document_processor
from knowledge_ingest.schemas.documents import DocumentJobData, ProcessingStatus
from knowledge_ingest.workers.queue import DocumentProcessingQueue, Job

logger = logging.getLogger(__name__)

JOB_TYPE = "process-document"

# Documents a job may fail before it has claimed them
_UNCLAIMED_STATUSES = (ProcessingStatus.PENDING, ProcessingStatus.PROCESSING)

ExternalDispatch = Callable[[DocumentJobData], Awaitable[None]]


# ---------------------------------------------------------------------------
# Tiers and sizing
# ---------------------------------------------------------------------------

class ProcessingTier(str, Enum):
    EXTERNAL_DISPATCHER = "external-dispatcher"
    DISTRIBUTED_QUEUE   = "redis"
    IN_PROCESS          = "in-process"


@dataclass(frozen=True)
class SchedulerConfig:
    max_concurrent_documents: int
    batch_size:               int
    delay_between_batches:    float   # seconds
    delay_between_documents:  float   # seconds, multiplied by the index in the batch


def queue_config(settings: Settings) -> SchedulerConfig:
    return SchedulerConfig(
        max_concurrent_documents=settings.kb_config_concurrency_limit,
        batch_size=settings.kb_config_batch_size,
        delay_between_batches=settings.kb_config_delay_between_batches,
        delay_between_documents=settings.kb_config_delay_between_documents,
    )


def in_process_config(settings: Settings) -> SchedulerConfig:
    """Single-process sizing: half the concurrency and batch size, twice the delays."""
    base = queue_config(settings)
    return SchedulerConfig(
        max_concurrent_documents=max(1, base.max_concurrent_documents // 2),
        batch_size=max(1, base.batch_size // 2),
        delay_between_batches=base.delay_between_batches * 2,
        delay_between_documents=base.delay_between_documents * 2,
    )


class PartialDispatchError(Exception):
    """A tier accepted the first `submitted` documents and then failed."""

    def __init__(self, submitted: int, cause: BaseException) -> None:
        super().__init__(f"dispatch failed after {submitted} documents: {cause}")
        self.submitted = submitted
        self.cause = cause


# ---------------------------------------------------------------------------
# In-process scheduler
# ---------------------------------------------------------------------------

class InProcessScheduler:

    def __init__(self, processor: DocumentProcessor, config: SchedulerConfig) -> None:
        self._processor = processor
        self.config = config

    async def run(self, jobs: list[DocumentJobData]) -> dict[str, int]:
        cfg = self.config
        batches = [jobs[i:i + cfg.batch_size] for i in range(0, len(jobs), cfg.batch_size)]
        succeeded = failed = 0

        for batch_idx, batch in enumerate(batches):
            # One semaphore per batch; batches never share slots
            semaphore = asyncio.Semaphore(cfg.max_concurrent_documents)
            results = await asyncio.gather(
                *(self._run_one(job, index, semaphore) for index, job in enumerate(batch)),
                return_exceptions=True,
            )
            for job, result in zip(batch, results):
                if result is True:
                    succeeded += 1
                else:
                    failed += 1
                    if isinstance(result, BaseException):
                        logger.error("Scheduler task crashed | doc=%s error=%s", job.document_id, result)

            logger.info(
                "Batch done | batch=%d/%d size=%d succeeded=%d failed=%d",
                batch_idx + 1, len(batches), len(batch), succeeded, failed,
            )
            if batch_idx < len(batches) - 1:
                await asyncio.sleep(cfg.delay_between_batches)

        return {"succeeded": succeeded, "failed": failed}

    async def _run_one(self, job: DocumentJobData, index: int, semaphore: asyncio.Semaphore) -> bool:
        if index:
            await asyncio.sleep(index * self.config.delay_between_documents)
        async with semaphore:
            return await self._processor.process_safely(
                job.document_id, job.knowledge_base_id, job.doc_data, job.processing_options,
            )


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class DocumentProcessingOrchestrator:
    """
    The one entry point the application uses to start processing.
    Built once (see `build_orchestrator`) and injected; owns the queue.
    """

    def __init__(
        self,
        settings:  Settings,
        processor: DocumentProcessor,
        queue:     DocumentProcessingQueue,
        external_dispatch: ExternalDispatch | None = None,
    ) -> None:
        self._settings = settings
        self._processor = processor
        self.queue = queue
        self._external_dispatch = external_dispatch
        self._background: set[asyncio.Task] = set()
        self._dispatchers: dict[ProcessingTier, Callable[[list[DocumentJobData]], Awaitable[None]]] = {
            ProcessingTier.EXTERNAL_DISPATCHER: self._dispatch_external,
            ProcessingTier.DISTRIBUTED_QUEUE:   self._dispatch_queue,
            ProcessingTier.IN_PROCESS:          self._dispatch_in_process,
        }

    @property
    def processor(self) -> DocumentProcessor:
        return self._processor

    # ------------------------------------------------------------------
    # Tier selection
    # ------------------------------------------------------------------

    async def available_tiers(self) -> list[ProcessingTier]:
        tiers: list[ProcessingTier] = []
        if self._external_dispatch is not None:
            tiers.append(ProcessingTier.EXTERNAL_DISPATCHER)
        if self.queue.redis_configured and await self.queue.is_redis_available():
            tiers.append(ProcessingTier.DISTRIBUTED_QUEUE)
        tiers.append(ProcessingTier.IN_PROCESS)
        return tiers

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def process_batch(self, jobs: list[DocumentJobData]) -> ProcessingTier | None:
        """
        Hand `jobs` to the best tier that accepts them. Returns the tier that
        took the last document (None for an empty batch). Never raises.
        """
        if not jobs:
            return None

        remaining = list(jobs)
        for tier in await self.available_tiers():
            try:
                await self._dispatchers[tier](remaining)
                logger.info("Batch dispatched | tier=%s documents=%d", tier.value, len(remaining))
                return tier
            except PartialDispatchError as exc:
                logger.warning(
                    "Tier partially failed | tier=%s submitted=%d remaining=%d error=%s",
                    tier.value, exc.submitted, len(remaining) - exc.submitted, exc.cause,
                )
                remaining = remaining[exc.submitted:]
            except Exception as exc:
                logger.warning("Tier unavailable | tier=%s error=%s", tier.value, exc)

        # Only reachable if the in-process tier itself could not start
        logger.error("No tier accepted the batch | documents=%d", len(remaining))
        for job in remaining:
            await self._processor.record_failure(
                job.document_id, "No processing tier available", statuses=_UNCLAIMED_STATUSES,
            )
        return None

    # ------------------------------------------------------------------
    # Tier implementations
    # ------------------------------------------------------------------

    async def _dispatch_external(self, jobs: list[DocumentJobData]) -> None:
        assert self._external_dispatch is not None
        for submitted, job in enumerate(jobs):
            try:
                await self._external_dispatch(job)
            except Exception as exc:
                if submitted == 0:
                    raise
                raise PartialDispatchError(submitted, exc) from exc

    async def _dispatch_queue(self, jobs: list[DocumentJobData]) -> None:
        for submitted, job in enumerate(jobs):
            try:
                await self.queue.add_job(
                    JOB_TYPE,
                    job.model_dump(mode="json"),
                    max_attempts=self._settings.kb_config_max_attempts,
                )
            except Exception as exc:
                if submitted == 0:
                    raise
                raise PartialDispatchError(submitted, exc) from exc
        await self.queue.process_jobs(self.handle_job)

    async def _dispatch_in_process(self, jobs: list[DocumentJobData]) -> None:
        scheduler = InProcessScheduler(self._processor, in_process_config(self._settings))
        self._spawn(scheduler.run(jobs))

    # ------------------------------------------------------------------
    # Queue job handler
    # ------------------------------------------------------------------

    async def handle_job(self, job: Job) -> None:
        """Raises to make the queue retry; marks the document failed on the last attempt."""
        try:
            data = DocumentJobData.model_validate(job.data)
        except ValidationError as exc:
            document_id = _job_document_id(job)
            logger.error("Invalid job payload | job=%s doc=%s error=%s", job.id, document_id, exc)
            if job.is_last_attempt and document_id is not None:
                await self._processor.record_failure(
                    document_id,
                    f"Invalid processing job payload: {exc.error_count()} validation error(s)",
                    statuses=_UNCLAIMED_STATUSES,
                )
            raise

        try:
            await self._processor.process(
                data.document_id, data.knowledge_base_id, data.doc_data, data.processing_options,
            )
        except (DocumentNotFoundError, DocumentStateError) as exc:
            logger.warning("Job skipped | job=%s doc=%s reason=%s", job.id, data.document_id, exc)
        except Exception as exc:
            if job.is_last_attempt:
                await self._processor.record_failure(data.document_id, exc)
            raise

    # ------------------------------------------------------------------
    # Background work
    # ------------------------------------------------------------------

    def run_in_background(self, coro: Awaitable[Any]) -> asyncio.Task:
        return self._spawn(coro)

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def wait_idle(self) -> None:
        """Wait for every background task started so far (shutdown, tests)."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def get_queue_stats(self) -> dict[str, Any]:
        return await self.queue.get_queue_stats()

    async def close(self) -> None:
        for task in list(self._background):
            task.cancel()
        await asyncio.gather(*list(self._background), return_exceptions=True)
        await self.queue.close()


def _job_document_id(job: Job) -> str | None:
    """Best-effort document id from a job payload that failed validation."""
    if not isinstance(job.data, dict):
        return None
    document_id = job.data.get("document_id") or job.data.get("documentId")
    return document_id if isinstance(document_id, str) else None


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------

async def celery_dispatch(job: DocumentJobData) -> None:
    """Publish one knowledge.process_document task. apply_async blocks, so run it in a thread."""
    from knowledge_ingest.workers.tasks import process_document

    loop = asyncio.get_running_loop()
    await loop.run_in_executor(
        None,
        lambda: process_document.apply_async(
            kwargs={
                "document_id":        job.document_id,
                "knowledge_base_id":  job.knowledge_base_id,
                "doc_data":           job.doc_data.model_dump(mode="json"),
                "processing_options": job.processing_options.model_dump(mode="json"),
            },
        ),
    )
    logger.info("Processing task published | doc=%s kb=%s", job.document_id, job.knowledge_base_id)


def build_orchestrator(
    settings:        Settings,
    session_factory: async_sessionmaker[AsyncSession],
) -> DocumentProcessingOrchestrator:
    cfg = queue_config(settings)
    queue = DocumentProcessingQueue(
        settings.redis_url or None,
        max_concurrent=cfg.max_concurrent_documents,
        retry_delay=settings.kb_config_min_timeout,
        max_retries=settings.kb_config_max_attempts,
    )
    return DocumentProcessingOrchestrator(
        settings=settings,
        processor=build_document_processor(settings, session_factory),
        queue=queue,
        external_dispatch=celery_dispatch if settings.celery_broker_url else None,
    )
