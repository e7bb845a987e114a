"""
Document Service — knowledge-base document records and lifecycle operations

Everything the containing application calls besides the processing
pipeline itself:

  create_document_records / create_single_document   pending rows + tag resolution
  process_documents_with_queue                        hand rows to the orchestrator
  get_documents / get_document                        read path
  bulk_document_operation / update_document /
  delete_document                                     direct mutations (never touch
                                                      processing_status)
  mark_document_as_failed_timeout                     dead-process detection
  retry_document_processing                           reset + re-run

Each operation runs in its own transaction and re-reads the document inside
it; nothing caches status across awaits.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import asc, delete, desc, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from knowledge_ingest.core.config import Settings
from knowledge_ingest.core.errors import DocumentNotFoundError, DocumentStateError
from knowledge_ingest.models.documents import (
    Document,
    Embedding,
    KnowledgeBaseTagDefinition,
    utcnow,
)
from knowledge_ingest.schemas.documents import (
    BulkOperationResult,
    BulkOperationType,
    DeadMarkResult,
    DocumentData,
    DocumentFilters,
    DocumentInput,
    DocumentJobData,
    DocumentListResponse,
    DocumentTags,
    DocumentUpdate,
    Pagination,
    ProcessingOptions,
    ProcessingStatus,
    RetryResult,
    SourceDocument,
)
from knowledge_ingest.services.orchestrator import DocumentProcessingOrchestrator, ProcessingTier

logger = logging.getLogger(__name__)

DEAD_PROCESS_ERROR = "Processing timed out - background process may have been terminated"

_SORT_COLUMNS = {
    "filename":          Document.filename,
    "file_size":         Document.file_size,
    "token_count":       Document.token_count,
    "chunk_count":       Document.chunk_count,
    "uploaded_at":       Document.uploaded_at,
    "processing_status": Document.processing_status,
}


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything we store is UTC
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def _source_of(document: Document) -> SourceDocument:
    return SourceDocument(
        filename=document.filename,
        file_url=document.file_url,
        file_size=document.file_size,
        mime_type=document.mime_type,
    )


class DocumentService:
    """One instance per request / unit of work, bound to a session."""

    def __init__(
        self,
        db:           AsyncSession,
        orchestrator: DocumentProcessingOrchestrator,
        settings:     Settings,
    ) -> None:
        self._db = db
        self._orchestrator = orchestrator
        self._settings = settings

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_document_records(
        self,
        documents:         list[DocumentInput],
        knowledge_base_id: str,
    ) -> list[DocumentData]:
        async with self._db.begin():
            rows: list[Document] = []
            for doc in documents:
                if doc.document_tags_data:
                    tags = await self.process_document_tags(knowledge_base_id, doc.document_tags_data)
                else:
                    tags = DocumentTags.from_row(doc)
                rows.append(Document(
                    knowledge_base_id=knowledge_base_id,
                    filename=doc.filename,
                    file_url=doc.file_url,
                    file_size=doc.file_size,
                    mime_type=doc.mime_type,
                    chunk_count=0,
                    token_count=0,
                    character_count=0,
                    processing_status=ProcessingStatus.PENDING.value,
                    processing_started_at=None,
                    processing_completed_at=None,
                    processing_error=None,
                    enabled=True,
                    uploaded_at=utcnow(),
                    **tags.as_columns(),
                ))
            self._db.add_all(rows)
            await self._db.flush()

        logger.info("Documents created | kb=%s count=%d", knowledge_base_id, len(rows))
        return [DocumentData.model_validate(row) for row in rows]

    async def create_single_document(self, document: DocumentInput, knowledge_base_id: str) -> DocumentData:
        created = await self.create_document_records([document], knowledge_base_id)
        return created[0]

    async def process_document_tags(self, knowledge_base_id: str, tags_json: str) -> DocumentTags:
        """
        Resolve `[{"tagName": ..., "value": ...}, ...]` to tag slots through the
        knowledge base's tag definitions. Malformed JSON yields empty tags;
        names without a definition are skipped.
        """
        try:
            items = json.loads(tags_json)
            if not isinstance(items, list):
                raise TypeError("tag data must be a JSON list")
        except (json.JSONDecodeError, TypeError) as exc:
            logger.warning("Tag data unparseable, ignoring tags | kb=%s error=%s", knowledge_base_id, exc)
            return DocumentTags()

        result = await self._db.execute(
            select(KnowledgeBaseTagDefinition.display_name, KnowledgeBaseTagDefinition.tag_slot)
            .where(KnowledgeBaseTagDefinition.knowledge_base_id == knowledge_base_id)
        )
        slots = {name: slot for name, slot in result.all()}

        tags = DocumentTags()
        for item in items:
            if not isinstance(item, dict):
                continue
            name = item.get("tagName") or item.get("tag_name")
            value = item.get("value")
            if not name or value is None or str(value).strip() == "":
                continue
            slot = slots.get(str(name).strip())
            if slot is None:
                logger.warning("No tag definition, skipping | kb=%s tag=%s", knowledge_base_id, name)
                continue
            tags = tags.with_slot(slot, str(value).strip())
        return tags

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    async def process_documents_with_queue(
        self,
        documents:         list[DocumentData],
        knowledge_base_id: str,
        options:           ProcessingOptions,
    ) -> ProcessingTier | None:
        jobs = [
            DocumentJobData(
                document_id=doc.id,
                knowledge_base_id=knowledge_base_id,
                doc_data=SourceDocument(
                    filename=doc.filename,
                    file_url=doc.file_url,
                    file_size=doc.file_size,
                    mime_type=doc.mime_type,
                ),
                processing_options=options,
            )
            for doc in documents
        ]
        return await self._orchestrator.process_batch(jobs)

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    async def get_documents(self, knowledge_base_id: str, filters: DocumentFilters) -> DocumentListResponse:
        conditions = [
            Document.knowledge_base_id == knowledge_base_id,
            Document.deleted_at.is_(None),
        ]
        if not filters.include_disabled:
            conditions.append(Document.enabled.is_(True))
        if filters.search:
            conditions.append(Document.filename.ilike(f"%{filters.search}%"))

        async with self._db.begin():
            total = await self._db.scalar(select(func.count()).select_from(Document).where(*conditions))
            result = await self._db.execute(
                select(Document)
                .where(*conditions)
                .order_by(*self._ordering(filters))
                .limit(filters.limit)
                .offset(filters.offset)
            )
            documents = [DocumentData.model_validate(row) for row in result.scalars().all()]
        total = total or 0

        return DocumentListResponse(
            documents=documents,
            pagination=Pagination(
                total=total,
                limit=filters.limit,
                offset=filters.offset,
                has_more=filters.offset + len(documents) < total,
            ),
        )

    async def get_document(self, knowledge_base_id: str, document_id: str) -> DocumentData:
        async with self._db.begin():
            return DocumentData.model_validate(await self._load(knowledge_base_id, document_id))

    @staticmethod
    def _ordering(filters: DocumentFilters) -> list:
        if not filters.sort_by:
            return [desc(Document.uploaded_at)]
        column = _SORT_COLUMNS[filters.sort_by]
        primary = asc(column) if filters.sort_order == "asc" else desc(column)
        secondary = desc(Document.uploaded_at) if filters.sort_by == "filename" else asc(Document.filename)
        return [primary, secondary]

    async def _load(self, knowledge_base_id: str, document_id: str) -> Document:
        document = await self._db.scalar(
            select(Document)
            .where(
                Document.id == document_id,
                Document.knowledge_base_id == knowledge_base_id,
                Document.deleted_at.is_(None),
            )
            .execution_options(populate_existing=True)
        )
        if document is None:
            raise DocumentNotFoundError(document_id)
        return document

    # ------------------------------------------------------------------
    # Direct mutations
    # ------------------------------------------------------------------

    async def bulk_document_operation(
        self,
        knowledge_base_id: str,
        operation:         BulkOperationType,
        document_ids:      list[str],
    ) -> BulkOperationResult:
        async with self._db.begin():
            result = await self._db.execute(
                select(Document.id).where(
                    Document.knowledge_base_id == knowledge_base_id,
                    Document.id.in_(document_ids),
                    Document.deleted_at.is_(None),
                )
            )
            valid_ids = list(result.scalars().all())
            if not valid_ids:
                raise DocumentNotFoundError(",".join(document_ids), "No valid documents found to update")
            if len(valid_ids) != len(set(document_ids)):
                logger.warning(
                    "Bulk operation on subset | kb=%s requested=%d found=%d",
                    knowledge_base_id, len(set(document_ids)), len(valid_ids),
                )

            updated: list[dict[str, Any]]
            if operation is BulkOperationType.DELETE:
                deleted_at = utcnow()
                await self._db.execute(
                    update(Document).where(Document.id.in_(valid_ids)).values(deleted_at=deleted_at)
                )
                updated = [{"id": doc_id, "deletedAt": deleted_at.isoformat()} for doc_id in valid_ids]
            else:
                enabled = operation is BulkOperationType.ENABLE
                await self._db.execute(
                    update(Document).where(Document.id.in_(valid_ids)).values(enabled=enabled)
                )
                updated = [{"id": doc_id, "enabled": enabled} for doc_id in valid_ids]

        logger.info(
            "Bulk operation | kb=%s op=%s count=%d", knowledge_base_id, operation.value, len(valid_ids),
        )
        return BulkOperationResult(success=True, success_count=len(valid_ids), updated_documents=updated)

    async def update_document(
        self,
        knowledge_base_id: str,
        document_id:       str,
        changes:           DocumentUpdate,
    ) -> DocumentData:
        async with self._db.begin():
            document = await self._load(knowledge_base_id, document_id)
            if changes.filename is not None:
                document.filename = changes.filename
            if changes.enabled is not None:
                document.enabled = changes.enabled
            if changes.tags is not None:
                tag_changes = changes.tags.model_dump(exclude_unset=True, by_alias=False)
                merged = DocumentTags.from_row(document).model_copy(update=tag_changes)
                for column, value in merged.as_columns().items():
                    setattr(document, column, value)
                # Chunks carry a copy of the tags; keep them in step
                await self._db.execute(
                    update(Embedding)
                    .where(Embedding.document_id == document_id)
                    .values(**merged.as_columns())
                )
            await self._db.flush()
            data = DocumentData.model_validate(document)

        logger.info("Document updated | doc=%s", document_id)
        return data

    async def delete_document(self, knowledge_base_id: str, document_id: str) -> dict[str, Any]:
        async with self._db.begin():
            document = await self._load(knowledge_base_id, document_id)
            document.deleted_at = utcnow()

        logger.info("Document deleted | doc=%s", document_id)
        return {"success": True, "message": "Document deleted successfully"}

    # ------------------------------------------------------------------
    # Liveness & retry
    # ------------------------------------------------------------------

    async def mark_document_as_failed_timeout(
        self,
        knowledge_base_id:     str,
        document_id:           str,
        processing_started_at: datetime | None = None,
    ) -> DeadMarkResult:
        """
        processing → failed for a document whose worker is presumed dead.
        The stored processing_started_at wins over the caller's value.
        """
        threshold = self._settings.dead_process_threshold
        async with self._db.begin():
            document = await self._load(knowledge_base_id, document_id)
            if document.processing_status != ProcessingStatus.PROCESSING.value:
                raise DocumentStateError("Document is not currently processing")

            started_at = document.processing_started_at or processing_started_at
            if started_at is None:
                raise DocumentStateError("Document has no processing start time")

            now = utcnow()
            duration = (now - _as_utc(started_at)).total_seconds()
            if duration <= threshold:
                raise DocumentStateError("Document has not been processing long enough to be considered dead")

            await self._db.execute(
                update(Document)
                .where(
                    Document.id == document_id,
                    Document.processing_status == ProcessingStatus.PROCESSING.value,
                )
                .values(
                    processing_status=ProcessingStatus.FAILED.value,
                    processing_error=DEAD_PROCESS_ERROR,
                    processing_completed_at=now,
                )
            )

        logger.warning(
            "Document marked dead | doc=%s processing_duration=%.0fs threshold=%ds",
            document_id, duration, threshold,
        )
        return DeadMarkResult(success=True, processing_duration=duration)

    async def retry_document_processing(
        self,
        knowledge_base_id: str,
        document_id:       str,
        doc_data:          SourceDocument | None = None,
    ) -> RetryResult:
        async with self._db.begin():
            document = await self._load(knowledge_base_id, document_id)
            if document.processing_status == ProcessingStatus.PROCESSING.value:
                raise DocumentStateError("Document is currently processing and cannot be retried")

            await self._db.execute(delete(Embedding).where(Embedding.document_id == document_id))
            await self._db.execute(
                update(Document)
                .where(Document.id == document_id)
                .values(
                    processing_status=ProcessingStatus.PENDING.value,
                    processing_started_at=None,
                    processing_completed_at=None,
                    processing_error=None,
                    chunk_count=0,
                    token_count=0,
                    character_count=0,
                )
            )
            source = doc_data or _source_of(document)

        self._orchestrator.run_in_background(
            self._orchestrator.processor.process_safely(
                document_id, knowledge_base_id, source, ProcessingOptions.for_retry(),
            )
        )
        logger.info("Document retry started | doc=%s", document_id)
        return RetryResult(
            success=True,
            status=ProcessingStatus.PENDING,
            message="Document retry processing started",
        )
