"""
Remote OCR services for PDFs
════════════════════════════

Two interchangeable services, tried in this order by ContentExtractor:

  AzureMistralOCR
    - Mistral OCR model deployed on Azure AI Foundry
    - Accepts the document inline as a base64 `data:` URI

  MistralOCR
    - Mistral's hosted OCR API
    - Fetches the document itself, so it needs a public https URL
      (the extractor uploads + presigns when the source is not one)

Both speak the same request body:

  {"model": ..., "document": {"type": "document_url", "document_url": ...},
   "include_image_base64": false}

and return {"pages": [{"markdown": ...}, ...]}; pages are joined with a
blank line. Every call is bounded by `ocr_timeout` and retried with
exponential back-off on timeouts, 429 and 5xx. An empty result counts as a
failure so the extractor falls through to the next tier.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from typing import Any

import httpx

from knowledge_ingest.core.config import Settings
from knowledge_ingest.core.errors import ConfigurationError, ContentError, OCRError, is_retryable_status
from knowledge_ingest.core.retry import retry_with_backoff

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Abstract service
# ---------------------------------------------------------------------------

class BaseOCRService(ABC):
    """
    A remote OCR endpoint.

    Implementations raise ConfigurationError when credentials are missing,
    OCRError for timeouts, 429/5xx and non-JSON bodies, and ContentError
    for a response with no pages or no text.
    """

    method_name: str

    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._client = client

    @property
    @abstractmethod
    def service_name(self) -> str:
        """Unique name for logging."""

    @property
    @abstractmethod
    def is_configured(self) -> bool:
        """True when every credential / endpoint this service needs is set."""

    @abstractmethod
    def _request(self, document_url: str) -> tuple[str, dict, dict]:
        """Return (url, headers, json body) for one OCR call."""

    async def extract(self, document_url: str, filename: str) -> str:
        if not self.is_configured:
            raise ConfigurationError(f"{self.service_name} is not configured")

        t0 = time.monotonic()
        content = await retry_with_backoff(
            lambda: self._call_once(document_url),
            label=f"{self.service_name}:{filename}",
        )
        logger.info(
            "%s | file=%s chars=%d elapsed_ms=%.0f",
            self.service_name, filename, len(content), (time.monotonic() - t0) * 1000,
        )
        return content

    async def _call_once(self, document_url: str) -> str:
        url, headers, body = self._request(document_url)
        try:
            if self._client is not None:
                response = await self._client.post(url, headers=headers, json=body, timeout=self._settings.ocr_timeout)
            else:
                async with httpx.AsyncClient(timeout=self._settings.ocr_timeout) as client:
                    response = await client.post(url, headers=headers, json=body)
        except httpx.TimeoutException as exc:
            raise OCRError(f"{self.service_name} timed out after {self._settings.ocr_timeout:.0f}s") from exc
        except httpx.TransportError as exc:
            raise OCRError(f"{self.service_name} connection error: {exc}") from exc

        if response.status_code >= 400:
            message = f"{self.service_name} HTTP {response.status_code}: {response.text[:200]}"
            if is_retryable_status(response.status_code):
                raise OCRError(message, status_code=response.status_code)
            # 4xx other than 429 will not improve on retry
            raise ConfigurationError(message)

        try:
            payload = response.json()
        except ValueError as exc:
            # Gateways sometimes answer 200 with an HTML error page
            raise OCRError(f"{self.service_name} returned a non-JSON body: {response.text[:200]}") from exc
        return self._parse_response(payload)

    def _parse_response(self, payload: Any) -> str:
        pages = (payload.get("pages") or []) if isinstance(payload, dict) else None
        if not isinstance(pages, list) or not all(isinstance(page, dict) for page in pages):
            raise _MalformedOCRResult(f"{self.service_name} returned an unexpected response shape")
        content = "\n\n".join(
            page["markdown"] for page in pages if isinstance(page.get("markdown"), str) and page["markdown"]
        )
        if not content.strip():
            # Not retried: the same document will OCR to nothing again
            raise _EmptyOCRResult(f"{self.service_name} returned empty content")
        return content


class _EmptyOCRResult(ContentError):
    """Raised for a successful response with no text; not worth retrying."""

    code = "ocr_empty_result"


class _MalformedOCRResult(ContentError):
    """JSON that does not carry a `pages` list; a retry returns the same shape."""

    code = "ocr_malformed_result"


def _body(model: str, document_url: str) -> dict:
    return {
        "model": model,
        "document": {"type": "document_url", "document_url": document_url},
        "include_image_base64": False,
    }


# ---------------------------------------------------------------------------
# Primary: Azure-hosted Mistral OCR
# ---------------------------------------------------------------------------

class AzureMistralOCR(BaseOCRService):

    method_name = "azure-mistral-ocr"

    @property
    def service_name(self) -> str:
        return "Azure Mistral OCR"

    @property
    def is_configured(self) -> bool:
        return self._settings.azure_ocr_configured

    def _request(self, document_url: str) -> tuple[str, dict, dict]:
        s = self._settings
        headers = {"Content-Type": "application/json", "Authorization": f"Bearer {s.ocr_azure_api_key}"}
        return s.ocr_azure_endpoint, headers, _body(s.ocr_azure_model_name, document_url)


# ---------------------------------------------------------------------------
# Secondary: Mistral OCR API
# ---------------------------------------------------------------------------

class MistralOCR(BaseOCRService):

    method_name = "mistral-ocr"

    @property
    def service_name(self) -> str:
        return "Mistral OCR"

    @property
    def is_configured(self) -> bool:
        return self._settings.mistral_ocr_configured

    async def extract(self, document_url: str, filename: str) -> str:
        if not document_url.startswith("https://"):
            raise ConfigurationError("Mistral OCR requires an https document URL")
        return await super().extract(document_url, filename)

    def _request(self, document_url: str) -> tuple[str, dict, dict]:
        s = self._settings
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Authorization": f"Bearer {s.mistral_api_key}",
        }
        return s.mistral_ocr_url, headers, _body(s.mistral_ocr_model, document_url)
