"""
Celery Application Factory

The external task dispatcher tier. When CELERY_BROKER_URL is set, the
orchestrator hands each document to a Celery worker and the broker's own
infrastructure takes care of concurrency and redelivery.

Queue topology:
  knowledge.documents   — document processing pipeline

Task payloads carry only identifiers, processing options and the source
file reference; file bytes never travel through the broker.
"""

from __future__ import annotations

import logging

from celery import Celery
from celery.signals import task_failure, task_postrun, task_prerun
from kombu import Exchange, Queue

from knowledge_ingest.core.config import get_settings

logger = logging.getLogger(__name__)

DOCUMENTS_QUEUE = "knowledge.documents"

TASK_QUEUES = (
    Queue(
        DOCUMENTS_QUEUE,
        exchange=Exchange("knowledge", type="direct", durable=True),
        routing_key=DOCUMENTS_QUEUE,
        durable=True,
    ),
)

TASK_ROUTES = {
    "knowledge.process_document": {"queue": DOCUMENTS_QUEUE},
}


# ---------------------------------------------------------------------------
# Celery app factory
# ---------------------------------------------------------------------------

def create_celery_app() -> Celery:
    settings = get_settings()
    app = Celery("knowledge_ingest")

    app.conf.update(
        # --- Broker / Backend ---
        broker_url=settings.celery_broker_url or None,
        result_backend=settings.celery_result_backend or None,

        # --- Serialization (reject non-JSON messages) ---
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
        event_serializer="json",

        # --- Queues ---
        task_queues=TASK_QUEUES,
        task_routes=TASK_ROUTES,
        task_default_queue=DOCUMENTS_QUEUE,

        # --- Reliability ---
        task_acks_late=True,           # ack only after task completes
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,

        # --- Timeouts ---
        task_soft_time_limit=settings.kb_config_max_duration,
        task_time_limit=settings.kb_config_max_duration + 60,

        # --- Result TTL ---
        result_expires=3600,   # state is tracked in the document table, not Celery results

        timezone="UTC",
        enable_utc=True,

        # --- Worker ---
        worker_concurrency=settings.kb_config_concurrency_limit,
        worker_max_tasks_per_child=200,
    )

    app.autodiscover_tasks(["knowledge_ingest.workers"])
    return app


celery_app = create_celery_app()


# ---------------------------------------------------------------------------
# Celery signals: structured task logging
# ---------------------------------------------------------------------------

@task_prerun.connect
def on_task_prerun(task_id, task, args, kwargs, **_):
    logger.info(
        "Task start | task_id=%s task=%s doc=%s kb=%s",
        task_id, task.name,
        kwargs.get("document_id", "?"),
        kwargs.get("knowledge_base_id", "?"),
    )


@task_postrun.connect
def on_task_postrun(task_id, task, args, kwargs, retval, state, **_):
    logger.info(
        "Task end | task_id=%s task=%s state=%s doc=%s",
        task_id, task.name, state, kwargs.get("document_id", "?"),
    )


@task_failure.connect
def on_task_failure(task_id, exception, args, kwargs, traceback, einfo, **_):
    logger.error(
        "Task failed | task_id=%s doc=%s error=%s",
        task_id, kwargs.get("document_id", "?"), exception,
    )
