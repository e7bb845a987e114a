"""
Knowledge-Base Documents — Pydantic Request/Response Schemas

Covers:
  - Upload descriptors handed over by the containing application
  - Processing options shared by every execution tier
  - The job payload carried by the Celery task and the Redis queue
  - List / update / bulk-operation / liveness / retry payloads
  - The uniform error envelope returned on every 4xx/5xx

Naming: Python attributes are snake_case; the camelCase aliases match the
JSON the rest of the application sends, and both are accepted on input.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _Schema(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Processing pipeline state machine
# ---------------------------------------------------------------------------

class ProcessingStatus(str, Enum):
    """
    Maps to document.processing_status.
    Transitions: pending → processing → completed | failed; retry resets failed → pending.
    """
    PENDING    = "pending"
    PROCESSING = "processing"
    COMPLETED  = "completed"
    FAILED     = "failed"


# ---------------------------------------------------------------------------
# Processing options
# ---------------------------------------------------------------------------

class ProcessingOptions(_Schema):
    """Chunking parameters. chunk_size / chunk_overlap are tokens, the minimum is characters."""
    chunk_size:               int = Field(1024, ge=1, description="Target chunk size in tokens")
    min_characters_per_chunk: int = Field(1, ge=1)
    recipe:                   str = "default"
    lang:                     str = "en"
    chunk_overlap:            int = Field(200, ge=0, description="Overlap between chunks in tokens")

    @classmethod
    def for_retry(cls) -> "ProcessingOptions":
        return cls(chunk_size=512, min_characters_per_chunk=24, recipe="default", lang="en", chunk_overlap=100)


# ---------------------------------------------------------------------------
# Tag slots
# ---------------------------------------------------------------------------

class DocumentTags(_Schema):
    """The seven tag slots of a document, as a fixed struct."""
    tag1: Optional[str] = None
    tag2: Optional[str] = None
    tag3: Optional[str] = None
    tag4: Optional[str] = None
    tag5: Optional[str] = None
    tag6: Optional[str] = None
    tag7: Optional[str] = None

    def get(self, slot: str) -> Optional[str]:
        if slot == "tag1":
            return self.tag1
        if slot == "tag2":
            return self.tag2
        if slot == "tag3":
            return self.tag3
        if slot == "tag4":
            return self.tag4
        if slot == "tag5":
            return self.tag5
        if slot == "tag6":
            return self.tag6
        if slot == "tag7":
            return self.tag7
        raise ValueError(f"Unknown tag slot: {slot}")

    def with_slot(self, slot: str, value: Optional[str]) -> "DocumentTags":
        if slot == "tag1":
            return self.model_copy(update={"tag1": value})
        if slot == "tag2":
            return self.model_copy(update={"tag2": value})
        if slot == "tag3":
            return self.model_copy(update={"tag3": value})
        if slot == "tag4":
            return self.model_copy(update={"tag4": value})
        if slot == "tag5":
            return self.model_copy(update={"tag5": value})
        if slot == "tag6":
            return self.model_copy(update={"tag6": value})
        if slot == "tag7":
            return self.model_copy(update={"tag7": value})
        raise ValueError(f"Unknown tag slot: {slot}")

    @classmethod
    def from_row(cls, row: Any) -> "DocumentTags":
        """Read the slots off a Document (or any object carrying tag1..tag7)."""
        return cls(
            tag1=row.tag1, tag2=row.tag2, tag3=row.tag3, tag4=row.tag4,
            tag5=row.tag5, tag6=row.tag6, tag7=row.tag7,
        )

    def as_columns(self) -> dict[str, Optional[str]]:
        """Column values for an INSERT / UPDATE of a document or embedding row."""
        return {
            "tag1": self.tag1, "tag2": self.tag2, "tag3": self.tag3, "tag4": self.tag4,
            "tag5": self.tag5, "tag6": self.tag6, "tag7": self.tag7,
        }

    def is_empty(self) -> bool:
        return all(value is None for value in self.as_columns().values())


# ---------------------------------------------------------------------------
# Upload descriptors
# ---------------------------------------------------------------------------

class DocumentInput(DocumentTags):
    """A file the containing application has already stored, ready to be registered."""
    filename:  str = Field(..., min_length=1)
    file_url:  str = Field(..., min_length=1, description="http(s) URL, data: URI or local path")
    file_size: int = Field(0, ge=0)
    mime_type: str = Field(..., min_length=1)
    document_tags_data: Optional[str] = Field(
        None,
        description='JSON list of {"tagName": ..., "value": ...}; takes precedence over tag1..tag7',
    )


class DocumentData(_Schema):
    """Document row as returned to callers."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    id:                str
    knowledge_base_id: str
    filename:          str
    file_url:          str
    file_size:         int
    mime_type:         str
    chunk_count:       int
    token_count:       int
    character_count:   int
    processing_status: ProcessingStatus
    processing_started_at:   Optional[datetime] = None
    processing_completed_at: Optional[datetime] = None
    processing_error:        Optional[str] = None
    enabled:           bool
    tag1: Optional[str] = None
    tag2: Optional[str] = None
    tag3: Optional[str] = None
    tag4: Optional[str] = None
    tag5: Optional[str] = None
    tag6: Optional[str] = None
    tag7: Optional[str] = None
    uploaded_at:       datetime


class SourceDocument(_Schema):
    """The subset of an upload the processor needs to fetch and describe the file."""
    filename:  str
    file_url:  str
    file_size: int = 0
    mime_type: str


class DocumentJobData(_Schema):
    """Payload of one document-processing job (Celery task kwargs / Redis job data)."""
    document_id:        str
    knowledge_base_id:  str
    doc_data:           SourceDocument
    processing_options: ProcessingOptions = Field(default_factory=ProcessingOptions)


# ---------------------------------------------------------------------------
# Listing
# ---------------------------------------------------------------------------

SortField = Literal["filename", "file_size", "token_count", "chunk_count", "uploaded_at", "processing_status"]


class DocumentFilters(_Schema):
    include_disabled: bool = False
    search:     Optional[str] = None
    limit:      int = Field(50, ge=1, le=500)
    offset:     int = Field(0, ge=0)
    sort_by:    Optional[SortField] = None
    sort_order: Literal["asc", "desc"] = "desc"


class Pagination(_Schema):
    total:    int
    limit:    int
    offset:   int
    has_more: bool


class DocumentListResponse(_Schema):
    documents:  list[DocumentData]
    pagination: Pagination


# ---------------------------------------------------------------------------
# Mutations
# ---------------------------------------------------------------------------

class DocumentUpdate(_Schema):
    """
    PATCH body. The two flags route to the liveness / retry operations and
    take precedence over field updates.
    """
    filename: Optional[str] = None
    enabled:  Optional[bool] = None
    tags:     Optional[DocumentTags] = None
    mark_failed_due_to_timeout: bool = False
    retry_processing:           bool = False


class BulkOperationType(str, Enum):
    ENABLE  = "enable"
    DISABLE = "disable"
    DELETE  = "delete"


class BulkOperationRequest(_Schema):
    operation:    BulkOperationType
    document_ids: list[str] = Field(..., min_length=1)


class BulkOperationResult(_Schema):
    success:           bool
    success_count:     int
    updated_documents: list[dict[str, Any]]


class CreateDocumentsRequest(_Schema):
    documents:          list[DocumentInput] = Field(..., min_length=1)
    processing_options: ProcessingOptions = Field(default_factory=ProcessingOptions)


class CreateDocumentsResponse(_Schema):
    documents:         list[DocumentData]
    processing_method: str = Field(..., description="Execution tier the batch was handed to")


class DeadMarkResult(_Schema):
    success:             bool
    processing_duration: float = Field(..., description="Seconds spent in processing before the mark")


class RetryResult(_Schema):
    success: bool
    status:  ProcessingStatus
    message: str


class QueueStats(_Schema):
    pending:          int
    processing:       int
    redis_available:  bool


# ---------------------------------------------------------------------------
# Error schemas
# ---------------------------------------------------------------------------

class ErrorDetail(BaseModel):
    """Single structured error — may appear in a list."""
    field:   str | None = Field(None, description="Request field that caused the error, if applicable")
    message: str
    code:    str        = Field(..., description="Machine-readable error code for client handling")


class ErrorResponse(BaseModel):
    """Uniform error envelope for all 4xx/5xx responses."""
    error_code: str               = Field(..., description="Stable machine-readable code")
    message:    str               = Field(..., description="Human-readable summary")
    details:    list[ErrorDetail] = Field(default_factory=list)
    request_id: str | None        = Field(None, description="Trace ID for log correlation")


class ApiErrors:
    """Factories for every documented error case."""

    @staticmethod
    def document_not_found(document_id: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="DOCUMENT_NOT_FOUND",
            message=f"Document '{document_id}' was not found.",
        )

    @staticmethod
    def invalid_state(message: str) -> ErrorResponse:
        return ErrorResponse(error_code="INVALID_DOCUMENT_STATE", message=message)

    @staticmethod
    def unprocessable(message: str) -> ErrorResponse:
        return ErrorResponse(error_code="UNPROCESSABLE_CONTENT", message=message)

    @staticmethod
    def validation(details: list[ErrorDetail]) -> ErrorResponse:
        return ErrorResponse(
            error_code="VALIDATION_ERROR",
            message="Request validation failed.",
            details=details,
        )

    @staticmethod
    def internal_error(request_id: str | None = None) -> ErrorResponse:
        return ErrorResponse(
            error_code="INTERNAL_ERROR",
            message="An unexpected error occurred. Please try again later.",
            request_id=request_id,
        )
