"""
Embedding Client  —  batched, order-preserving, with retry
══════════════════════════════════════════════════════════

  • One API call per EMBEDDING_BATCH_SIZE texts (100), up to
    MAX_CONCURRENT_BATCHES in flight.
  • Azure OpenAI when AZURE_OPENAI_API_KEY + AZURE_OPENAI_ENDPOINT are set,
    otherwise OpenAI. No key at all → ConfigurationError before any call.
  • Vectors are returned in input order regardless of batch completion order.

Retry policy (core.retry):
  RateLimitError / timeouts / connection errors / 5xx → back-off 1s, 2s, 4s (cap 10s)
  AuthenticationError / other 4xx                     → fail immediately
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Sequence

import openai
from openai import AsyncAzureOpenAI, AsyncOpenAI

from knowledge_ingest.core.config import Settings
from knowledge_ingest.core.errors import ConfigurationError, ContentError, EmbeddingError
from knowledge_ingest.core.retry import retry_with_backoff

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

EMBEDDING_BATCH_SIZE   = 100    # texts per API call
MAX_CONCURRENT_BATCHES = 4      # concurrent embedding requests


class EmbeddingClient:

    def __init__(self, settings: Settings, client: AsyncOpenAI | None = None) -> None:
        self._settings = settings
        self._client = client
        self._use_azure = settings.azure_embeddings_configured

    @property
    def model(self) -> str:
        return self._settings.embedding_model

    def _get_client(self) -> AsyncOpenAI:
        if self._client is not None:
            return self._client
        s = self._settings
        if self._use_azure:
            self._client = AsyncAzureOpenAI(
                api_key=s.azure_openai_api_key,
                azure_endpoint=s.azure_openai_endpoint,
                api_version=s.azure_openai_api_version,
                max_retries=0,   # retries are ours
            )
        elif s.openai_api_key:
            self._client = AsyncOpenAI(api_key=s.openai_api_key, max_retries=0)
        else:
            raise ConfigurationError("Either OPENAI_API_KEY or AZURE_OPENAI_API_KEY + AZURE_OPENAI_ENDPOINT must be set")
        return self._client

    async def generate_embeddings(self, texts: Sequence[str]) -> list[list[float]]:
        if not texts:
            return []

        client = self._get_client()
        batches = [list(texts[i:i + EMBEDDING_BATCH_SIZE]) for i in range(0, len(texts), EMBEDDING_BATCH_SIZE)]
        semaphore = asyncio.Semaphore(MAX_CONCURRENT_BATCHES)
        t0 = time.monotonic()

        async def _run(batch_idx: int, batch: list[str]) -> list[list[float]]:
            async with semaphore:
                return await retry_with_backoff(
                    lambda: self._embed_batch(client, batch, batch_idx),
                    label=f"embeddings:batch{batch_idx}",
                )

        results = await asyncio.gather(
            *(_run(idx, batch) for idx, batch in enumerate(batches)),
            return_exceptions=True,
        )

        vectors: list[list[float]] = []
        for batch_idx, result in enumerate(results):
            if isinstance(result, BaseException):
                logger.error("Embedding batch permanently failed | batch=%d error=%s", batch_idx, result)
                raise result
            vectors.extend(result)

        logger.info(
            "Embeddings done | provider=%s texts=%d batches=%d elapsed_ms=%.0f",
            "azure" if self._use_azure else "openai",
            len(texts), len(batches), (time.monotonic() - t0) * 1000,
        )
        return vectors

    async def _embed_batch(self, client: AsyncOpenAI, batch: list[str], batch_idx: int) -> list[list[float]]:
        model = self._settings.azure_openai_embedding_deployment if self._use_azure else self.model
        try:
            response = await client.embeddings.create(model=model, input=batch, encoding_format="float")
        except openai.AuthenticationError as exc:
            raise ConfigurationError(f"Embedding authentication failed: {exc}") from exc
        except (openai.RateLimitError, openai.APIConnectionError) as exc:
            raise EmbeddingError(f"Embedding request failed: {exc}", status_code=getattr(exc, "status_code", None)) from exc
        except openai.APIStatusError as exc:
            if exc.status_code >= 500:
                raise EmbeddingError(f"Embedding API error: {exc}", status_code=exc.status_code) from exc
            raise ContentError(f"Embedding request rejected: {exc}") from exc

        # The API may return items out of order; index is authoritative
        ordered = sorted(response.data, key=lambda item: item.index)
        logger.debug("Embedding batch | batch=%d size=%d", batch_idx, len(batch))
        return [item.embedding for item in ordered]
