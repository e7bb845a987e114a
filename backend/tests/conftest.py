"""
Root conftest.py — Shared fixtures for ALL tests (unit + integration)

Fixture hierarchy (all function-scoped):
  settings         : Settings with every tier disabled and short timeouts
  db_engine        : SQLite database (aiosqlite) in tmp_path, schema created
  session_factory  : async_sessionmaker bound to db_engine
  embeddings       : FakeEmbeddingClient — deterministic vectors, no network
  processor        : DocumentProcessor with the real extractor + chunker
  orchestrator     : DocumentProcessingOrchestrator, in-process tier only
  service          : DocumentService bound to one session

Environment strategy:
  - Tests never touch PostgreSQL, Redis, a Celery broker, S3 or OpenAI.
  - Documents point at `data:` URIs so the real extraction chain runs
    entirely in-process (file-parser tier).
  - OCR / storage / HTTP collaborators are injected mocks where a test needs them.

How to run:
  pytest                           # all tests
  pytest -m unit                   # unit tests only
  pytest -m integration            # API tests (still no external services)
"""

from __future__ import annotations

import asyncio
import base64
import os
import time
from typing import Any, Callable
from unittest.mock import patch

import pytest
import pytest_asyncio

# ─────────────────────────────────────────────────────────────────────────────
# Patch settings BEFORE any package imports so modules read test config
# ─────────────────────────────────────────────────────────────────────────────

os.environ.setdefault("DATABASE_URL",          "sqlite+aiosqlite://")
os.environ.setdefault("AWS_REGION",            "us-east-1")
os.environ.setdefault("AWS_ACCESS_KEY_ID",     "test")
os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "test")
os.environ.setdefault("S3_BUCKET",             "test-bucket")
os.environ.setdefault("OPENAI_API_KEY",        "sk-test-key")
os.environ.setdefault("CELERY_BROKER_URL",     "")
os.environ.setdefault("REDIS_URL",             "")
os.environ.setdefault("APP_ENV",               "development")

from sqlalchemy import select  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402

from knowledge_ingest.core.config import Settings  # noqa: E402
from knowledge_ingest.core.errors import EmbeddingError  # noqa: E402
from knowledge_ingest.models.documents import Base, Document, Embedding  # noqa: E402
from knowledge_ingest.processing.extractor import ContentExtractor  # noqa: E402
from knowledge_ingest.processing.processor import DocumentProcessor  # noqa: E402
from knowledge_ingest.schemas.documents import ProcessingOptions, SourceDocument  # noqa: E402
from knowledge_ingest.services.documents import DocumentService  # noqa: E402
from knowledge_ingest.services.orchestrator import DocumentProcessingOrchestrator  # noqa: E402
from knowledge_ingest.workers.queue import DocumentProcessingQueue  # noqa: E402

KB_ID = "kb-test-001"

SAMPLE_TEXT = (
    "Quarterly report.\n\n"
    "Revenue grew in every region this quarter. The northern region led growth, "
    "followed closely by the coastal offices. Costs were flat.\n\n"
    "Hiring slowed in the second month. Attrition stayed below the annual target, "
    "and the onboarding backlog was cleared before the end of the period.\n\n"
    "Outlook: the team expects steady demand, with risks concentrated in supply "
    "lead times and currency movements."
)


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

def text_data_uri(text: str) -> str:
    return "data:text/plain;base64," + base64.b64encode(text.encode("utf-8")).decode("ascii")


def source_for(text: str = SAMPLE_TEXT, filename: str = "report.txt") -> SourceDocument:
    return SourceDocument(filename=filename, file_url=text_data_uri(text), file_size=len(text), mime_type="text/plain")


SMALL_CHUNKS = ProcessingOptions(chunk_size=32, chunk_overlap=4, min_characters_per_chunk=1)


async def wait_for(predicate: Callable[[], Any], timeout: float = 5.0, interval: float = 0.02) -> None:
    """Poll `predicate` (sync or async) until truthy or fail after `timeout`."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        result = predicate()
        if asyncio.iscoroutine(result):
            result = await result
        if result:
            return
        await asyncio.sleep(interval)
    raise AssertionError("condition not met within timeout")


class FakeEmbeddingClient:
    """Deterministic stand-in for EmbeddingClient."""

    model = "text-embedding-3-small"

    def __init__(self, fail: bool = False, delay: float = 0.0) -> None:
        self.fail = fail
        self.delay = delay
        self.calls: list[list[str]] = []

    async def generate_embeddings(self, texts):
        self.calls.append(list(texts))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise EmbeddingError("Embedding API error: 503", status_code=503)
        return [[float(i), 0.5, 0.25] for i, _ in enumerate(texts)]


# ─────────────────────────────────────────────────────────────────────────────
# Fixtures
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        database_url="sqlite+aiosqlite://",
        openai_api_key="sk-test-key",
        redis_url="",
        celery_broker_url="",
        kb_config_max_duration=30,
        kb_config_min_timeout=0.01,
        kb_config_max_timeout=0.05,
        kb_config_delay_between_batches=0.0,
        kb_config_delay_between_documents=0.0,
        dead_process_threshold=150,
    )


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'knowledge.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=db_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest.fixture
def embeddings() -> FakeEmbeddingClient:
    return FakeEmbeddingClient()


@pytest.fixture
def processor(settings, session_factory, embeddings) -> DocumentProcessor:
    return DocumentProcessor(
        settings=settings,
        session_factory=session_factory,
        extractor=ContentExtractor(settings),
        embeddings=embeddings,
    )


@pytest.fixture
def make_document(session_factory):
    """Insert a Document row; returns its id."""

    async def _make(text: str = SAMPLE_TEXT, **overrides) -> str:
        values = {
            "knowledge_base_id": KB_ID,
            "filename": "report.txt",
            "file_url": text_data_uri(text),
            "file_size": len(text),
            "mime_type": "text/plain",
            "processing_status": "pending",
            "enabled": True,
        }
        values.update(overrides)
        async with session_factory() as session:
            async with session.begin():
                document = Document(**values)
                session.add(document)
            return document.id

    return _make


@pytest.fixture
def fetch_document(session_factory):
    async def _fetch(document_id: str) -> Document:
        async with session_factory() as session:
            return await session.get(Document, document_id)

    return _fetch


@pytest.fixture
def fetch_chunks(session_factory):
    async def _fetch(document_id: str) -> list[Embedding]:
        async with session_factory() as session:
            result = await session.execute(
                select(Embedding).where(Embedding.document_id == document_id).order_by(Embedding.chunk_index)
            )
            return list(result.scalars().all())

    return _fetch


@pytest_asyncio.fixture
async def orchestrator(settings, processor):
    orchestrator = DocumentProcessingOrchestrator(
        settings=settings,
        processor=processor,
        queue=DocumentProcessingQueue(None),
    )
    yield orchestrator
    await orchestrator.close()


@pytest_asyncio.fixture
async def service(session_factory, orchestrator, settings):
    async with session_factory() as session:
        yield DocumentService(db=session, orchestrator=orchestrator, settings=settings)


@pytest.fixture
def fast_polling():
    """Shrink the in-process queue's idle poll so consumer tests stay quick."""
    with patch("knowledge_ingest.workers.queue.FALLBACK_POLL_INTERVAL", 0.01), \
         patch("knowledge_ingest.workers.queue.REDIS_ERROR_BACKOFF", 0.01):
        yield
