"""
Celery Tasks — Document Processing

Task: knowledge.process_document
  Runs DocumentProcessor for one document inside the worker.
  Retries up to KB_CONFIG_MAX_ATTEMPTS total attempts with exponential
  countdown (KB_CONFIG_MIN_TIMEOUT × KB_CONFIG_RETRY_FACTOR^n, capped at
  KB_CONFIG_MAX_TIMEOUT). The document is marked failed only when the last
  attempt fails; earlier failures leave it in `processing` for the retry.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from celery import Task
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from knowledge_ingest.core.config import get_settings
from knowledge_ingest.core.errors import DocumentNotFoundError, DocumentStateError
from knowledge_ingest.workers.celery_app import celery_app

logger = logging.getLogger(__name__)

_settings = get_settings()


# ---------------------------------------------------------------------------
# Async task helper
# Run async coroutines inside Celery's synchronous task context.
# ---------------------------------------------------------------------------

def run_async(coro):
    """Execute an async coroutine from a synchronous Celery task."""
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)

    # Called from inside a loop (eager mode, tests): run on a private loop
    import concurrent.futures
    with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
        return pool.submit(asyncio.run, coro).result()


def retry_countdown(retries: int) -> float:
    """Delay before retry number retries+1."""
    s = _settings
    return min(s.kb_config_min_timeout * (s.kb_config_retry_factor ** retries), s.kb_config_max_timeout)


# ---------------------------------------------------------------------------
# Main processing task
# ---------------------------------------------------------------------------

@celery_app.task(
    name="knowledge.process_document",
    bind=True,
    max_retries=max(_settings.kb_config_max_attempts - 1, 0),
    acks_late=True,
    reject_on_worker_lost=True,
    soft_time_limit=_settings.kb_config_max_duration,
    time_limit=_settings.kb_config_max_duration + 60,
)
def process_document(
    self: Task,
    *,
    document_id:        str,
    knowledge_base_id:  str,
    doc_data:           dict[str, Any],
    processing_options: dict[str, Any],
) -> dict[str, Any]:
    final_attempt = self.request.retries >= self.max_retries
    try:
        return run_async(
            _process_document_async(
                document_id=document_id,
                knowledge_base_id=knowledge_base_id,
                doc_data=doc_data,
                processing_options=processing_options,
                final_attempt=final_attempt,
            )
        )
    except (DocumentNotFoundError, DocumentStateError) as exc:
        logger.warning("Task skipped | doc=%s reason=%s", document_id, exc)
        return {"status": "skipped", "reason": str(exc)}
    except Exception as exc:
        if final_attempt:
            raise
        countdown = retry_countdown(self.request.retries)
        logger.warning(
            "Task retry | doc=%s attempt=%d countdown=%.1fs error=%s",
            document_id, self.request.retries + 1, countdown, exc,
        )
        raise self.retry(exc=exc, countdown=countdown)


async def _process_document_async(
    *,
    document_id:        str,
    knowledge_base_id:  str,
    doc_data:           dict[str, Any],
    processing_options: dict[str, Any],
    final_attempt:      bool,
) -> dict[str, Any]:
    """Async implementation; owns a short-lived engine for this task's event loop."""
    from knowledge_ingest.db.session import create_worker_engine
    from knowledge_ingest.processing.processor import build_document_processor
    from knowledge_ingest.schemas.documents import ProcessingOptions, SourceDocument

    engine = create_worker_engine()
    try:
        sessions = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
        processor = build_document_processor(_settings, sessions)
        try:
            result = await processor.process(
                document_id,
                knowledge_base_id,
                SourceDocument.model_validate(doc_data),
                ProcessingOptions.model_validate(processing_options),
            )
        except (DocumentNotFoundError, DocumentStateError):
            raise
        except Exception as exc:
            if final_attempt:
                await processor.record_failure(document_id, exc)
            raise
        return {"status": "completed", **result.metadata}
    finally:
        await engine.dispose()
