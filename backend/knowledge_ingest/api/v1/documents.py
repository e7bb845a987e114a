"""
Knowledge-base document routes — /api/v1/knowledge/{knowledge_base_id}/documents

  POST   /                create pending records, start processing (202)
  GET    /                list with search / sort / pagination
  GET    /queue/stats     job queue depth and backend
  POST   /bulk            enable | disable | delete many
  GET    /{document_id}   one document
  PATCH  /{document_id}   update fields / tags, or dead-mark, or retry
  DELETE /{document_id}   soft delete

Domain errors propagate to the handlers registered in main.py.
"""

from __future__ import annotations

import logging
from typing import Any, Literal, Optional

from fastapi import APIRouter, Query, status

from knowledge_ingest.api.dependencies import Documents, Orchestrator
from knowledge_ingest.schemas.documents import (
    BulkOperationRequest,
    BulkOperationResult,
    CreateDocumentsRequest,
    CreateDocumentsResponse,
    DocumentData,
    DocumentFilters,
    DocumentListResponse,
    DocumentUpdate,
    ErrorResponse,
    QueueStats,
    SortField,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/knowledge/{knowledge_base_id}/documents", tags=["Documents"])

_ERRORS = {
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
    422: {"model": ErrorResponse},
}


# ---------------------------------------------------------------------------
# POST /    register uploads and start processing
# ---------------------------------------------------------------------------

@router.post(
    "",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=CreateDocumentsResponse,
    summary="Create document records and start processing",
    responses=_ERRORS,
)
async def create_documents(
    knowledge_base_id: str,
    body:    CreateDocumentsRequest,
    service: Documents,
) -> CreateDocumentsResponse:
    """
    Rows are created as `pending` in one transaction, then handed to the
    orchestrator. Progress is observed by polling the documents.
    """
    created = await service.create_document_records(body.documents, knowledge_base_id)
    tier = await service.process_documents_with_queue(created, knowledge_base_id, body.processing_options)
    logger.info(
        "Documents accepted | kb=%s count=%d tier=%s",
        knowledge_base_id, len(created), tier.value if tier else "-",
    )
    return CreateDocumentsResponse(documents=created, processing_method=tier.value if tier else "none")


# ---------------------------------------------------------------------------
# GET /     list
# ---------------------------------------------------------------------------

@router.get("", response_model=DocumentListResponse, summary="List documents")
async def list_documents(
    knowledge_base_id: str,
    service:           Documents,
    include_disabled:  bool = False,
    search:            Optional[str] = None,
    limit:             int = Query(50, ge=1, le=500),
    offset:            int = Query(0, ge=0),
    sort_by:           Optional[SortField] = None,
    sort_order:        Literal["asc", "desc"] = "desc",
) -> DocumentListResponse:
    filters = DocumentFilters(
        include_disabled=include_disabled,
        search=search,
        limit=limit,
        offset=offset,
        sort_by=sort_by,
        sort_order=sort_order,
    )
    return await service.get_documents(knowledge_base_id, filters)


# ---------------------------------------------------------------------------
# GET /queue/stats
# ---------------------------------------------------------------------------

@router.get("/queue/stats", response_model=QueueStats, summary="Job queue statistics")
async def queue_stats(knowledge_base_id: str, orchestrator: Orchestrator) -> QueueStats:
    return QueueStats.model_validate(await orchestrator.get_queue_stats())


# ---------------------------------------------------------------------------
# POST /bulk
# ---------------------------------------------------------------------------

@router.post("/bulk", response_model=BulkOperationResult, summary="Bulk enable / disable / delete", responses=_ERRORS)
async def bulk_operation(
    knowledge_base_id: str,
    body:    BulkOperationRequest,
    service: Documents,
) -> BulkOperationResult:
    return await service.bulk_document_operation(knowledge_base_id, body.operation, body.document_ids)


# ---------------------------------------------------------------------------
# /{document_id}
# ---------------------------------------------------------------------------

@router.get("/{document_id}", response_model=DocumentData, summary="Get one document", responses=_ERRORS)
async def get_document(knowledge_base_id: str, document_id: str, service: Documents) -> DocumentData:
    return await service.get_document(knowledge_base_id, document_id)


@router.patch("/{document_id}", summary="Update, dead-mark or retry a document", responses=_ERRORS)
async def update_document(
    knowledge_base_id: str,
    document_id: str,
    body:    DocumentUpdate,
    service: Documents,
) -> dict[str, Any]:
    if body.mark_failed_due_to_timeout:
        result = await service.mark_document_as_failed_timeout(knowledge_base_id, document_id)
    elif body.retry_processing:
        result = await service.retry_document_processing(knowledge_base_id, document_id)
    else:
        result = await service.update_document(knowledge_base_id, document_id, body)
    return result.model_dump(mode="json", by_alias=True)


@router.delete("/{document_id}", summary="Soft-delete a document", responses=_ERRORS)
async def delete_document(knowledge_base_id: str, document_id: str, service: Documents) -> dict[str, Any]:
    return await service.delete_document(knowledge_base_id, document_id)
