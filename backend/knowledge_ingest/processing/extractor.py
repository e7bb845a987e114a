"""
Content Extraction — ordered fallback chain
════════════════════════════════════════════

  PDF + Azure Mistral OCR configured  →  AzureMistralOCR
        ↓ any failure
  PDF + Mistral OCR configured        →  MistralOCR (upload + presign when
        ↓ any failure                    the source is not already https)
  always                              →  generic parser by extension

A failing OCR tier (missing config, HTTP error, timeout, empty text) is
logged and the next tier runs. The generic parser is the last tier: its
failure, or empty text after trimming, propagates as a ContentError.

Sources may be `data:` URIs, http(s) URLs (downloaded with a timeout and
retried on transient errors) or local filesystem paths.
"""

from __future__ import annotations

import base64
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import unquote, urlparse

import httpx

from knowledge_ingest.core.config import Settings
from knowledge_ingest.core.errors import (
    ContentError,
    IngestionError,
    TransientExternalError,
    is_retryable_status,
)
from knowledge_ingest.core.retry import retry_with_backoff
from knowledge_ingest.processing import parsers
from knowledge_ingest.processing.ocr import AzureMistralOCR, BaseOCRService, MistralOCR
from knowledge_ingest.storage.s3 import S3StorageService

logger = logging.getLogger(__name__)

FILE_PARSER_METHOD = "file-parser"


# ---------------------------------------------------------------------------
# Result type
# ---------------------------------------------------------------------------

@dataclass
class ExtractionResult:
    """
    content           : extracted plain text / markdown (never blank)
    processing_method : "azure-mistral-ocr" | "mistral-ocr" | "file-parser"
    cloud_url         : presigned URL created for OCR, if any
    """
    content:           str
    processing_method: str
    cloud_url:         str | None = None


# ---------------------------------------------------------------------------
# Source helpers
# ---------------------------------------------------------------------------

def is_pdf(filename: str, mime_type: str) -> bool:
    return mime_type == "application/pdf" or parsers.file_extension(filename) == "pdf"


def decode_data_uri(uri: str) -> tuple[str, bytes]:
    """Split `data:<mime>[;base64],<payload>` into (mime, bytes)."""
    header, sep, payload = uri.partition(",")
    if not sep or not payload:
        raise ContentError("Invalid data URI format")
    meta = header[len("data:"):]
    mime = meta.split(";", 1)[0] or "text/plain"
    if ";base64" in meta:
        try:
            return mime, base64.b64decode(payload, validate=False)
        except ValueError as exc:
            raise ContentError(f"Invalid base64 data URI: {exc}") from exc
    return mime, unquote(payload).encode("utf-8")


# ---------------------------------------------------------------------------
# Extractor
# ---------------------------------------------------------------------------

class ContentExtractor:
    """
    Stateless apart from its collaborators; safe to share across documents.
    """

    def __init__(
        self,
        settings:    Settings,
        storage:     S3StorageService | None = None,
        primary_ocr: BaseOCRService | None = None,
        secondary_ocr: BaseOCRService | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings
        self._storage = storage
        self._primary_ocr = primary_ocr if primary_ocr is not None else AzureMistralOCR(settings)
        self._secondary_ocr = secondary_ocr if secondary_ocr is not None else MistralOCR(settings)
        self._http = http_client

    async def extract(self, file_url: str, filename: str, mime_type: str) -> ExtractionResult:
        t0 = time.monotonic()
        pdf = is_pdf(filename, mime_type)

        if pdf and self._primary_ocr.is_configured:
            try:
                return self._done(await self._run_primary_ocr(file_url, filename, mime_type), filename, t0)
            except IngestionError as exc:
                logger.warning(
                    "OCR fallback | file=%s failed=%s error=%s",
                    filename, self._primary_ocr.service_name, exc,
                )
            except Exception as exc:
                logger.warning(
                    "OCR fallback | file=%s failed=%s unexpected_error=%r",
                    filename, self._primary_ocr.service_name, exc, exc_info=True,
                )

        if pdf and self._secondary_ocr.is_configured:
            try:
                return self._done(await self._run_secondary_ocr(file_url, filename, mime_type), filename, t0)
            except IngestionError as exc:
                logger.warning(
                    "OCR fallback | file=%s failed=%s error=%s",
                    filename, self._secondary_ocr.service_name, exc,
                )
            except Exception as exc:
                logger.warning(
                    "OCR fallback | file=%s failed=%s unexpected_error=%r",
                    filename, self._secondary_ocr.service_name, exc, exc_info=True,
                )

        content = await self._parse_with_file_parser(file_url, filename, mime_type)
        return self._done(ExtractionResult(content=content, processing_method=FILE_PARSER_METHOD), filename, t0)

    @staticmethod
    def _done(result: ExtractionResult, filename: str, t0: float) -> ExtractionResult:
        if not result.content.strip():
            raise ContentError(f"No content extracted from {filename}")
        logger.info(
            "Extracted | file=%s method=%s chars=%d elapsed_ms=%.0f",
            filename, result.processing_method, len(result.content), (time.monotonic() - t0) * 1000,
        )
        return result

    # ------------------------------------------------------------------
    # OCR tiers
    # ------------------------------------------------------------------

    async def _run_primary_ocr(self, file_url: str, filename: str, mime_type: str) -> ExtractionResult:
        # Inline document: no durable URL needed
        data = await self._load_bytes(file_url)
        data_uri = f"data:{mime_type};base64,{base64.b64encode(data).decode('ascii')}"
        content = await self._primary_ocr.extract(data_uri, filename)
        return ExtractionResult(content=content, processing_method=self._primary_ocr.method_name)

    async def _run_secondary_ocr(self, file_url: str, filename: str, mime_type: str) -> ExtractionResult:
        https_url, cloud_url = await self._durable_url(file_url, filename, mime_type)
        content = await self._secondary_ocr.extract(https_url, filename)
        return ExtractionResult(content=content, processing_method=self._secondary_ocr.method_name, cloud_url=cloud_url)

    async def _durable_url(self, file_url: str, filename: str, mime_type: str) -> tuple[str, str | None]:
        """Return (https url for the OCR call, presigned url if one was created)."""
        if file_url.startswith("https://"):
            return file_url, None
        if self._storage is None:
            raise IngestionError("Object storage is required to stage the document for OCR")

        data = await self._load_bytes(file_url)
        stored = await self._storage.upload_file(data, filename, mime_type)
        url = await self._storage.get_presigned_url(stored.key, self._settings.presigned_url_ttl)
        return url, url

    # ------------------------------------------------------------------
    # Generic parser tier
    # ------------------------------------------------------------------

    async def _parse_with_file_parser(self, file_url: str, filename: str, mime_type: str) -> str:
        extension = parsers.file_extension(filename)

        if file_url.startswith("data:"):
            data_mime, data = decode_data_uri(file_url)
            if data_mime == "text/plain" or mime_type == "text/plain":
                return parsers.decode_text(data)
            return await parsers.parse_bytes(data, extension)

        if file_url.startswith(("http://", "https://")):
            data = await self._download(file_url)
            if not extension:
                extension = parsers.file_extension(urlparse(file_url).path)
            return await parsers.parse_bytes(data, extension)

        return await parsers.parse_file(file_url)

    # ------------------------------------------------------------------
    # I/O
    # ------------------------------------------------------------------

    async def _load_bytes(self, file_url: str) -> bytes:
        if file_url.startswith("data:"):
            return decode_data_uri(file_url)[1]
        if file_url.startswith(("http://", "https://")):
            return await self._download(file_url)
        path = Path(file_url)
        if not path.is_file():
            raise ContentError(f"File not found: {file_url}")
        return path.read_bytes()

    async def _download(self, url: str) -> bytes:
        timeout = self._settings.file_download_timeout

        async def _once() -> bytes:
            try:
                if self._http is not None:
                    response = await self._http.get(url, timeout=timeout, follow_redirects=True)
                else:
                    async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
                        response = await client.get(url)
            except httpx.TimeoutException as exc:
                raise TransientExternalError(f"Download timed out after {timeout:.0f}s") from exc
            except httpx.TransportError as exc:
                raise TransientExternalError(f"Download failed: {exc}") from exc

            if response.status_code >= 400:
                message = f"Download failed: HTTP {response.status_code}"
                if is_retryable_status(response.status_code):
                    raise TransientExternalError(message, status_code=response.status_code)
                raise ContentError(message)
            return response.content

        data = await retry_with_backoff(_once, label=f"download:{urlparse(url).path}")
        logger.debug("Downloaded | url_path=%s bytes=%d", urlparse(url).path, len(data))
        return data
