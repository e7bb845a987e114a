"""
Document Processor  —  one unit of work per document
════════════════════════════════════════════════════

  1. claim      pending|processing → processing, stamp processing_started_at
  2. extract    ContentExtractor fallback chain
  3. chunk      TextChunker with the caller's size / overlap / minimum
  4. embed      EmbeddingClient (no chunks → no call)
  5. tags       fresh read of the document's tag slots
  6. persist    ONE transaction: guard the claim, delete prior chunks,
                insert new chunks, write counters + completed

Steps 2–6 run under the overall KB_CONFIG_MAX_DURATION budget. Step 6 is
the only place chunk rows change, so an exception anywhere leaves the
previous chunk generation untouched.

`process()` raises on failure and leaves status handling to its caller:
queue / Celery handlers retry while attempts remain and call
`record_failure()` on the last one; `process_safely()` does both at once
for the in-process scheduler and the retry endpoint.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from knowledge_ingest.core.config import Settings
from knowledge_ingest.core.errors import (
    DocumentNotFoundError,
    DocumentStateError,
    ProcessingTimeoutError,
)
from knowledge_ingest.models.documents import Document, Embedding, utcnow
from knowledge_ingest.processing.chunking import TextChunk, TextChunker
from knowledge_ingest.processing.embeddings import EmbeddingClient
from knowledge_ingest.processing.extractor import ContentExtractor
from knowledge_ingest.schemas.documents import (
    DocumentTags,
    ProcessingOptions,
    ProcessingStatus,
    SourceDocument,
)

logger = logging.getLogger(__name__)


@dataclass
class ProcessingResult:
    chunks:   list[TextChunk]
    metadata: dict[str, Any] = field(default_factory=dict)


class DocumentProcessor:

    def __init__(
        self,
        settings:        Settings,
        session_factory: async_sessionmaker[AsyncSession],
        extractor:       ContentExtractor,
        embeddings:      EmbeddingClient,
        chunker_factory: Callable[[ProcessingOptions], TextChunker] | None = None,
    ) -> None:
        self._settings = settings
        self._sessions = session_factory
        self._extractor = extractor
        self._embeddings = embeddings
        self._chunker_factory = chunker_factory or _default_chunker

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def process(
        self,
        document_id:       str,
        knowledge_base_id: str,
        doc:               SourceDocument,
        options:           ProcessingOptions,
    ) -> ProcessingResult:
        t0 = time.monotonic()
        started_at = await self._claim(document_id)
        logger.info(
            "Processing | doc=%s kb=%s file=%s chunk_size=%d overlap=%d",
            document_id, knowledge_base_id, doc.filename, options.chunk_size, options.chunk_overlap,
        )

        timeout = self._settings.kb_config_max_duration
        try:
            result = await asyncio.wait_for(
                self._run(document_id, knowledge_base_id, doc, options, started_at),
                timeout=timeout,
            )
        except asyncio.TimeoutError as exc:
            raise ProcessingTimeoutError(timeout) from exc

        logger.info(
            "Processing complete | doc=%s chunks=%d tokens=%d method=%s elapsed_ms=%.0f",
            document_id, result.metadata["chunk_count"], result.metadata["token_count"],
            result.metadata["processing_method"], (time.monotonic() - t0) * 1000,
        )
        return result

    async def process_safely(
        self,
        document_id:       str,
        knowledge_base_id: str,
        doc:               SourceDocument,
        options:           ProcessingOptions,
    ) -> bool:
        """Run `process()`; on any failure record it on the document. Never raises."""
        try:
            await self.process(document_id, knowledge_base_id, doc, options)
            return True
        except DocumentStateError as exc:
            logger.warning("Processing skipped | doc=%s reason=%s", document_id, exc)
            return False
        except Exception as exc:
            logger.error("Processing failed | doc=%s error=%s", document_id, exc, exc_info=True)
            await self.record_failure(document_id, exc)
            return False

    async def record_failure(
        self,
        document_id: str,
        error:       BaseException | str,
        *,
        statuses:    tuple[ProcessingStatus, ...] = (ProcessingStatus.PROCESSING,),
    ) -> None:
        """processing → failed with the error message. Errors here are logged, not retried.

        `statuses` widens the allowed source states for jobs that never got to claim the document.
        """
        message = str(error) or type(error).__name__
        try:
            async with self._sessions() as session:
                async with session.begin():
                    await session.execute(
                        update(Document)
                        .where(
                            Document.id == document_id,
                            Document.processing_status.in_([status.value for status in statuses]),
                        )
                        .values(
                            processing_status=ProcessingStatus.FAILED.value,
                            processing_error=message,
                            processing_completed_at=utcnow(),
                        )
                    )
        except Exception as exc:
            logger.error(
                "Failed to record processing failure | doc=%s original_error=%s error=%s",
                document_id, message, exc,
            )

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _claim(self, document_id: str) -> datetime:
        """Step 1. Returns the processing_started_at stamp that owns this run."""
        started_at = utcnow()
        async with self._sessions() as session:
            async with session.begin():
                current = await session.scalar(
                    select(Document.processing_status).where(
                        Document.id == document_id,
                        Document.deleted_at.is_(None),
                    )
                )
                if current is None:
                    raise DocumentNotFoundError(document_id)
                if current not in (ProcessingStatus.PENDING.value, ProcessingStatus.PROCESSING.value):
                    raise DocumentStateError(
                        f"Document {document_id} is {current}; only pending or processing documents can be processed"
                    )
                await session.execute(
                    update(Document)
                    .where(Document.id == document_id)
                    .values(
                        processing_status=ProcessingStatus.PROCESSING.value,
                        processing_started_at=started_at,
                        processing_completed_at=None,
                        processing_error=None,
                    )
                )
        return started_at

    async def _run(
        self,
        document_id:       str,
        knowledge_base_id: str,
        doc:               SourceDocument,
        options:           ProcessingOptions,
        started_at:        datetime,
    ) -> ProcessingResult:
        # --- Step 2: extract -----------------------------------------------
        extraction = await self._extractor.extract(doc.file_url, doc.filename, doc.mime_type)
        content = extraction.content

        # --- Step 3: chunk -------------------------------------------------
        chunks = self._chunker_factory(options).chunk(content)

        # --- Step 4: embed -------------------------------------------------
        vectors = await self._embeddings.generate_embeddings([c.content for c in chunks])

        # --- Step 5: tags --------------------------------------------------
        tags = await self._read_tags(document_id)

        # --- Step 6: persist -----------------------------------------------
        token_count = sum(c.token_count for c in chunks)
        await self._persist(document_id, knowledge_base_id, chunks, vectors, tags, started_at,
                            token_count=token_count, character_count=len(content))

        return ProcessingResult(
            chunks=chunks,
            metadata={
                "filename":          doc.filename,
                "file_size":         doc.file_size,
                "mime_type":         doc.mime_type,
                "chunk_count":       len(chunks),
                "token_count":       token_count,
                "character_count":   len(content),
                "processing_method": extraction.processing_method,
                "cloud_url":         extraction.cloud_url,
            },
        )

    async def _read_tags(self, document_id: str) -> DocumentTags:
        async with self._sessions() as session:
            document = await session.get(Document, document_id)
            if document is None:
                raise DocumentNotFoundError(document_id)
            return DocumentTags.from_row(document)

    async def _persist(
        self,
        document_id:       str,
        knowledge_base_id: str,
        chunks:            list[TextChunk],
        vectors:           list[list[float]],
        tags:              DocumentTags,
        started_at:        datetime,
        *,
        token_count:       int,
        character_count:   int,
    ) -> None:
        async with self._sessions() as session:
            async with session.begin():
                # Guard: still ours (not dead-marked, deleted or re-claimed meanwhile)
                claimed = await session.execute(
                    update(Document)
                    .where(
                        Document.id == document_id,
                        Document.processing_status == ProcessingStatus.PROCESSING.value,
                        Document.processing_started_at == started_at,
                        Document.deleted_at.is_(None),
                    )
                    .values(
                        chunk_count=len(chunks),
                        token_count=token_count,
                        character_count=character_count,
                        processing_status=ProcessingStatus.COMPLETED.value,
                        processing_completed_at=utcnow(),
                        processing_error=None,
                    )
                )
                if claimed.rowcount != 1:
                    raise DocumentStateError(
                        f"Document {document_id} changed state while processing; results discarded"
                    )

                await session.execute(delete(Embedding).where(Embedding.document_id == document_id))

                tag_columns = tags.as_columns()
                session.add_all(
                    Embedding(
                        knowledge_base_id=knowledge_base_id,
                        document_id=document_id,
                        chunk_index=chunk.index,
                        chunk_hash=chunk.chunk_hash,
                        content=chunk.content,
                        content_length=len(chunk.content),
                        token_count=chunk.token_count,
                        embedding=vectors[chunk.index] if chunk.index < len(vectors) else None,
                        embedding_model=self._embeddings.model,
                        start_offset=chunk.start_offset,
                        end_offset=chunk.end_offset,
                        **tag_columns,
                    )
                    for chunk in chunks
                )


def _default_chunker(options: ProcessingOptions) -> TextChunker:
    return TextChunker(
        chunk_size=options.chunk_size,
        chunk_overlap=options.chunk_overlap,
        min_chunk_size=options.min_characters_per_chunk,
    )


def build_document_processor(
    settings:        Settings,
    session_factory: async_sessionmaker[AsyncSession],
) -> DocumentProcessor:
    """Wire the production collaborators (S3, OCR services, OpenAI) into a processor."""
    from knowledge_ingest.storage.s3 import S3StorageService

    return DocumentProcessor(
        settings=settings,
        session_factory=session_factory,
        extractor=ContentExtractor(settings, storage=S3StorageService(settings)),
        embeddings=EmbeddingClient(settings),
    )
