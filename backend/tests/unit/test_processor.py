"""
Unit tests — DocumentProcessor against a real (SQLite) schema

Covers:
  - Successful run: counters, chunk rows, tag copy, processing method
  - Failures leave no partial chunk set; process_safely records them
  - Overall timeout
  - Re-processing replaces the previous chunk generation
  - State guards: completed / missing / superseded documents
  - Failure recording limited to the allowed source states
"""

from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import update

from knowledge_ingest.core.errors import (
    DocumentNotFoundError,
    DocumentStateError,
    EmbeddingError,
    ProcessingTimeoutError,
)
from knowledge_ingest.models.documents import Document
from knowledge_ingest.processing.extractor import ContentExtractor
from knowledge_ingest.processing.processor import DocumentProcessor
from knowledge_ingest.schemas.documents import ProcessingStatus
from tests.conftest import (
    KB_ID,
    SAMPLE_TEXT,
    SMALL_CHUNKS,
    FakeEmbeddingClient,
    source_for,
    wait_for,
)


def _processor(settings, session_factory, embeddings) -> DocumentProcessor:
    return DocumentProcessor(
        settings=settings,
        session_factory=session_factory,
        extractor=ContentExtractor(settings),
        embeddings=embeddings,
    )


async def _set_status(session_factory, document_id: str, status: str) -> None:
    async with session_factory() as session:
        async with session.begin():
            await session.execute(
                update(Document).where(Document.id == document_id).values(processing_status=status)
            )


@pytest.mark.unit
@pytest.mark.processing
class TestProcessSuccess:

    async def test_completed_with_counters(self, processor, make_document, fetch_document, fetch_chunks):
        doc_id = await make_document()

        result = await processor.process(doc_id, KB_ID, source_for(), SMALL_CHUNKS)

        document = await fetch_document(doc_id)
        chunks = await fetch_chunks(doc_id)
        assert document.processing_status == "completed"
        assert document.processing_error is None
        assert document.processing_started_at is not None
        assert document.processing_completed_at is not None
        assert document.chunk_count == len(chunks) == len(result.chunks) > 1
        assert document.token_count == sum(c.token_count for c in chunks)
        assert document.character_count == len(SAMPLE_TEXT)
        assert result.metadata["processing_method"] == "file-parser"
        assert result.metadata["chunk_count"] == len(chunks)

    async def test_chunk_rows_mirror_chunker_output(self, processor, make_document, fetch_chunks):
        doc_id = await make_document()
        result = await processor.process(doc_id, KB_ID, source_for(), SMALL_CHUNKS)

        rows = await fetch_chunks(doc_id)
        assert [r.chunk_index for r in rows] == list(range(len(rows)))
        for row, chunk in zip(rows, result.chunks):
            assert row.content == chunk.content
            assert row.chunk_hash == chunk.chunk_hash
            assert (row.start_offset, row.end_offset) == (chunk.start_offset, chunk.end_offset)
            assert row.content == SAMPLE_TEXT[row.start_offset:row.end_offset]
            assert row.knowledge_base_id == KB_ID
            assert row.embedding_model == "text-embedding-3-small"
            assert row.embedding == [float(row.chunk_index), 0.5, 0.25]

    async def test_document_tags_copied_to_chunks(self, processor, make_document, fetch_chunks):
        doc_id = await make_document(tag1="finance", tag3="2024")
        await processor.process(doc_id, KB_ID, source_for(), SMALL_CHUNKS)

        rows = await fetch_chunks(doc_id)
        assert rows
        assert all(r.tag1 == "finance" and r.tag3 == "2024" and r.tag2 is None for r in rows)

    async def test_reprocessing_replaces_previous_chunks(
        self, processor, session_factory, make_document, fetch_document, fetch_chunks,
    ):
        doc_id = await make_document()
        await processor.process(doc_id, KB_ID, source_for(), SMALL_CHUNKS)
        first = await fetch_chunks(doc_id)

        # A crashed run is re-delivered while the document is still processing
        await _set_status(session_factory, doc_id, "processing")
        await processor.process(doc_id, KB_ID, source_for(), SMALL_CHUNKS)

        second = await fetch_chunks(doc_id)
        assert len(second) == len(first)
        assert [c.chunk_hash for c in second] == [c.chunk_hash for c in first]
        assert (await fetch_document(doc_id)).chunk_count == len(second)


@pytest.mark.unit
@pytest.mark.processing
class TestProcessFailure:

    async def test_embedding_failure_leaves_no_chunks(
        self, settings, session_factory, make_document, fetch_document, fetch_chunks,
    ):
        processor = _processor(settings, session_factory, FakeEmbeddingClient(fail=True))
        doc_id = await make_document()

        with pytest.raises(EmbeddingError):
            await processor.process(doc_id, KB_ID, source_for(), SMALL_CHUNKS)

        assert (await fetch_document(doc_id)).processing_status == "processing"
        assert await fetch_chunks(doc_id) == []

    async def test_process_safely_records_failure(
        self, settings, session_factory, make_document, fetch_document, fetch_chunks,
    ):
        processor = _processor(settings, session_factory, FakeEmbeddingClient(fail=True))
        doc_id = await make_document()

        ok = await processor.process_safely(doc_id, KB_ID, source_for(), SMALL_CHUNKS)

        document = await fetch_document(doc_id)
        assert ok is False
        assert document.processing_status == "failed"
        assert "503" in document.processing_error
        assert document.processing_completed_at is not None
        assert document.chunk_count == 0
        assert await fetch_chunks(doc_id) == []

    async def test_blank_content_fails_document(self, processor, make_document, fetch_document):
        doc_id = await make_document()

        ok = await processor.process_safely(doc_id, KB_ID, source_for(text="   \n"), SMALL_CHUNKS)

        document = await fetch_document(doc_id)
        assert ok is False
        assert document.processing_status == "failed"
        assert "No content extracted" in document.processing_error

    async def test_overall_timeout(self, settings, session_factory, make_document, fetch_document):
        fast_settings = settings.model_copy(update={"kb_config_max_duration": 0.05})
        processor = _processor(fast_settings, session_factory, FakeEmbeddingClient(delay=1.0))
        doc_id = await make_document()

        with pytest.raises(ProcessingTimeoutError):
            await processor.process(doc_id, KB_ID, source_for(), SMALL_CHUNKS)

        ok = await processor.process_safely(doc_id, KB_ID, source_for(), SMALL_CHUNKS)
        document = await fetch_document(doc_id)
        assert ok is False
        assert document.processing_status == "failed"
        assert "timed out" in document.processing_error


@pytest.mark.unit
@pytest.mark.processing
class TestProcessStateGuards:

    async def test_completed_document_is_not_reprocessed(self, processor, make_document, fetch_chunks, embeddings):
        doc_id = await make_document()
        await processor.process(doc_id, KB_ID, source_for(), SMALL_CHUNKS)
        before = await fetch_chunks(doc_id)
        calls = len(embeddings.calls)

        with pytest.raises(DocumentStateError):
            await processor.process(doc_id, KB_ID, source_for(), SMALL_CHUNKS)

        assert len(embeddings.calls) == calls
        assert [c.id for c in await fetch_chunks(doc_id)] == [c.id for c in before]

    async def test_missing_document(self, processor):
        with pytest.raises(DocumentNotFoundError):
            await processor.process("no-such-doc", KB_ID, source_for(), SMALL_CHUNKS)

    async def test_soft_deleted_document_is_missing(self, processor, make_document):
        from knowledge_ingest.models.documents import utcnow

        doc_id = await make_document(deleted_at=utcnow())
        with pytest.raises(DocumentNotFoundError):
            await processor.process(doc_id, KB_ID, source_for(), SMALL_CHUNKS)

    async def test_superseded_run_discards_results(
        self, settings, session_factory, make_document, fetch_document, fetch_chunks,
    ):
        processor = _processor(settings, session_factory, FakeEmbeddingClient(delay=0.3))
        doc_id = await make_document()

        task = asyncio.create_task(processor.process_safely(doc_id, KB_ID, source_for(), SMALL_CHUNKS))
        await wait_for(lambda: _status_is(fetch_document, doc_id, "processing"))
        # Dead-marked while the worker was still embedding
        await _set_status(session_factory, doc_id, "failed")

        assert await task is False
        assert (await fetch_document(doc_id)).processing_status == "failed"
        assert await fetch_chunks(doc_id) == []

    async def test_record_failure_only_from_processing(self, processor, make_document, fetch_document):
        doc_id = await make_document()
        await processor.process(doc_id, KB_ID, source_for(), SMALL_CHUNKS)

        await processor.record_failure(doc_id, RuntimeError("late failure"))

        document = await fetch_document(doc_id)
        assert document.processing_status == "completed"
        assert document.processing_error is None

    async def test_record_failure_from_pending_when_allowed(self, processor, make_document, fetch_document):
        doc_id = await make_document()

        await processor.record_failure(
            doc_id, "Invalid processing job payload", statuses=(ProcessingStatus.PENDING, ProcessingStatus.PROCESSING),
        )

        document = await fetch_document(doc_id)
        assert document.processing_status == "failed"
        assert document.processing_error == "Invalid processing job payload"


async def _status_is(fetch_document, document_id: str, status: str) -> bool:
    return (await fetch_document(document_id)).processing_status == status
