"""
Ingestion error taxonomy.

  ConfigurationError      missing credentials / endpoints — fail fast, never retried
  TransientExternalError  timeouts, rate limits, 5xx, connection loss — retried with
                          backoff, then routed to the next fallback tier
  ContentError            empty or unparseable extraction, unsupported file type
  DocumentStateError      lifecycle operation rejected; no mutation performed
  DocumentNotFoundError   unknown or soft-deleted document
  ProcessingTimeoutError  overall per-document wall-clock budget exceeded

Anything raised inside a document's pipeline ends up as that document's
`processing_error`; nothing escapes the fire-and-forget batch entry point.
"""

from __future__ import annotations


class IngestionError(Exception):
    """Base class for every error raised by the ingestion subsystem."""

    code = "ingestion_error"


class ConfigurationError(IngestionError):
    code = "configuration_error"


class TransientExternalError(IngestionError):
    code = "transient_external_error"

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class OCRError(TransientExternalError):
    code = "ocr_error"


class EmbeddingError(TransientExternalError):
    code = "embedding_error"


class ContentError(IngestionError):
    code = "content_error"


class DocumentStateError(IngestionError):
    code = "document_state_error"


class DocumentNotFoundError(IngestionError):
    code = "document_not_found"

    def __init__(self, document_id: str, message: str | None = None) -> None:
        super().__init__(message or f"Document {document_id} not found")
        self.document_id = document_id


class ProcessingTimeoutError(IngestionError):
    code = "processing_timeout"

    def __init__(self, timeout_seconds: float) -> None:
        super().__init__(f"Document processing timed out after {timeout_seconds:.0f}s")
        self.timeout_seconds = timeout_seconds


def is_retryable_status(status_code: int | None) -> bool:
    """429 and 5xx are worth another attempt; other HTTP errors are not."""
    if status_code is None:
        return True
    return status_code == 429 or status_code >= 500
