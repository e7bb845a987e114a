"""
Unit tests — EmbeddingClient

The OpenAI client is a MagicMock; openai's own exception classes are raised
from it so the error mapping is exercised exactly as in production.
"""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import openai
import pytest

from knowledge_ingest.core.errors import ConfigurationError, ContentError, EmbeddingError
from knowledge_ingest.processing.embeddings import EMBEDDING_BATCH_SIZE, EmbeddingClient

_REQUEST = httpx.Request("POST", "https://api.openai.com/v1/embeddings")


def _response(texts, reverse: bool = False):
    items = [SimpleNamespace(index=i, embedding=[float(len(t)), float(i)]) for i, t in enumerate(texts)]
    if reverse:
        items.reverse()
    return SimpleNamespace(data=items)


def _api_error(cls, status: int):
    return cls(f"HTTP {status}", response=httpx.Response(status, request=_REQUEST), body=None)


def _client(side_effect=None) -> MagicMock:
    client = MagicMock()

    async def create(model, input, encoding_format):
        return _response(input, reverse=True)

    client.embeddings.create = AsyncMock(side_effect=side_effect or create)
    return client


@pytest.mark.unit
@pytest.mark.processing
class TestEmbeddingClient:

    async def test_no_texts_no_call(self, settings):
        client = _client()
        assert await EmbeddingClient(settings, client=client).generate_embeddings([]) == []
        client.embeddings.create.assert_not_awaited()

    async def test_batches_preserve_input_order(self, settings):
        client = _client()
        texts = [f"text number {i}" for i in range(EMBEDDING_BATCH_SIZE * 2 + 50)]

        vectors = await EmbeddingClient(settings, client=client).generate_embeddings(texts)

        assert client.embeddings.create.await_count == 3
        assert len(vectors) == len(texts)
        # Second component is the index within the batch, first the text length
        assert vectors[0] == [float(len(texts[0])), 0.0]
        assert vectors[EMBEDDING_BATCH_SIZE + 7] == [float(len(texts[EMBEDDING_BATCH_SIZE + 7])), 7.0]
        call = client.embeddings.create.await_args_list[0]
        assert call.kwargs["model"] == "text-embedding-3-small"
        assert call.kwargs["encoding_format"] == "float"

    async def test_rate_limit_is_retried(self, settings):
        calls = []

        async def create(model, input, encoding_format):
            calls.append(input)
            if len(calls) == 1:
                raise _api_error(openai.RateLimitError, 429)
            return _response(input)

        with patch("knowledge_ingest.core.retry.asyncio.sleep", new=AsyncMock()):
            vectors = await EmbeddingClient(settings, client=_client(create)).generate_embeddings(["a", "b"])

        assert len(calls) == 2
        assert len(vectors) == 2

    async def test_server_errors_exhaust_retries(self, settings):
        client = _client(_api_error(openai.InternalServerError, 500))

        with patch("knowledge_ingest.core.retry.asyncio.sleep", new=AsyncMock()):
            with pytest.raises(EmbeddingError):
                await EmbeddingClient(settings, client=client).generate_embeddings(["a"])

        assert client.embeddings.create.await_count == 4

    async def test_authentication_error_is_configuration_error(self, settings):
        client = _client(_api_error(openai.AuthenticationError, 401))

        with pytest.raises(ConfigurationError):
            await EmbeddingClient(settings, client=client).generate_embeddings(["a"])

        assert client.embeddings.create.await_count == 1

    async def test_bad_request_not_retried(self, settings):
        client = _client(_api_error(openai.BadRequestError, 400))

        with pytest.raises(ContentError):
            await EmbeddingClient(settings, client=client).generate_embeddings(["a"])

        assert client.embeddings.create.await_count == 1

    async def test_missing_credentials(self, settings):
        no_key = settings.model_copy(update={"openai_api_key": ""})
        with pytest.raises(ConfigurationError):
            await EmbeddingClient(no_key).generate_embeddings(["a"])

    async def test_azure_uses_deployment_name(self, settings):
        azure = settings.model_copy(update={
            "azure_openai_api_key": "azure-key",
            "azure_openai_endpoint": "https://example.openai.azure.com",
            "azure_openai_embedding_deployment": "embeddings-prod",
        })
        client = _client()

        await EmbeddingClient(azure, client=client).generate_embeddings(["a"])

        assert client.embeddings.create.await_args.kwargs["model"] == "embeddings-prod"

    def test_provider_selection(self, settings):
        azure = settings.model_copy(update={
            "azure_openai_api_key": "azure-key",
            "azure_openai_endpoint": "https://example.openai.azure.com",
        })
        assert isinstance(EmbeddingClient(azure)._get_client(), openai.AsyncAzureOpenAI)
        client = EmbeddingClient(settings)._get_client()
        assert isinstance(client, openai.AsyncOpenAI)
        assert not isinstance(client, openai.AsyncAzureOpenAI)
