"""
Unit tests for hybrid_memory.kb.embedder

Covers the deterministic fallback, provider retry/fallback behaviour and
provider selection, without calling OpenAI, Azure or Ollama.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import requests


# ---------------------------------------------------------------------------
# Fallback embedding
# ---------------------------------------------------------------------------

class TestFallbackEmbedding:

    def test_length_and_determinism(self):
        from hybrid_memory.kb.embedder import fallback_embedding
        a = fallback_embedding("hello world")
        b = fallback_embedding("hello world")
        assert len(a) == 1536
        assert a == b

    def test_code_points_accumulate_modulo_dimensions(self):
        from hybrid_memory.kb.embedder import fallback_embedding
        vec = fallback_embedding("abc", dimensions=2)
        assert vec[0] == pytest.approx((ord("a") + ord("c")) / 1000)
        assert vec[1] == pytest.approx(ord("b") / 1000)

    def test_empty_text_is_zero_vector(self):
        from hybrid_memory.kb.embedder import fallback_embedding
        assert fallback_embedding("", dimensions=4) == [0.0, 0.0, 0.0, 0.0]


# ---------------------------------------------------------------------------
# EmbeddingService
# ---------------------------------------------------------------------------

class TestEmbeddingService:

    @pytest.mark.asyncio
    async def test_without_provider_uses_fallback(self):
        from hybrid_memory.kb.embedder import EmbeddingService, fallback_embedding
        service = EmbeddingService(dimensions=8)
        assert await service.generate_embedding("xyz") == fallback_embedding("xyz", 8)

    @pytest.mark.asyncio
    async def test_provider_vector_is_returned(self):
        from hybrid_memory.kb.embedder import EmbeddingService
        provider = MagicMock()
        provider.generate_embedding = AsyncMock(return_value=[0.1, 0.2])
        service = EmbeddingService(provider, dimensions=2)
        assert await service.generate_embedding("x") == [0.1, 0.2]

    @pytest.mark.asyncio
    async def test_provider_failure_falls_back(self):
        from hybrid_memory.errors import EmbeddingError
        from hybrid_memory.kb.embedder import EmbeddingService, fallback_embedding
        provider = MagicMock()
        provider.name = "broken"
        provider.generate_embedding = AsyncMock(side_effect=EmbeddingError("down"))
        service = EmbeddingService(provider, dimensions=16)
        assert await service.generate_embedding("text") == fallback_embedding("text", 16)

    @pytest.mark.asyncio
    async def test_empty_provider_vector_falls_back(self):
        from hybrid_memory.kb.embedder import EmbeddingService, fallback_embedding
        provider = MagicMock()
        provider.name = "empty"
        provider.generate_embedding = AsyncMock(return_value=[])
        service = EmbeddingService(provider, dimensions=4)
        assert await service.generate_embedding("ab") == fallback_embedding("ab", 4)


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------

class TestOpenAIProvider:

    def _client(self, side_effect):
        client = MagicMock()
        client.embeddings.create = AsyncMock(side_effect=side_effect)
        return client

    @staticmethod
    def _response(vector):
        response = MagicMock()
        response.data = [MagicMock(embedding=vector)]
        return response

    @pytest.mark.asyncio
    async def test_returns_embedding(self):
        from hybrid_memory.kb.embedder import OpenAIEmbeddingProvider
        client = self._client([self._response([1.0, 2.0])])
        provider = OpenAIEmbeddingProvider(client, model="m")
        assert await provider.generate_embedding("hi") == [1.0, 2.0]
        client.embeddings.create.assert_awaited_once_with(model="m", input="hi")

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self):
        from hybrid_memory.kb.embedder import OpenAIEmbeddingProvider
        client = self._client([RuntimeError("rate limited"), self._response([3.0])])
        provider = OpenAIEmbeddingProvider(client, max_retries=2)
        with patch("hybrid_memory.kb.embedder.asyncio.sleep", new=AsyncMock()) as sleep:
            assert await provider.generate_embedding("hi") == [3.0]
        sleep.assert_awaited_once_with(2)

    @pytest.mark.asyncio
    async def test_gives_up_with_embedding_error(self):
        from hybrid_memory.errors import EmbeddingError
        from hybrid_memory.kb.embedder import OpenAIEmbeddingProvider
        client = self._client(RuntimeError("down"))
        provider = OpenAIEmbeddingProvider(client, max_retries=2)
        with patch("hybrid_memory.kb.embedder.asyncio.sleep", new=AsyncMock()):
            with pytest.raises(EmbeddingError):
                await provider.generate_embedding("hi")
        assert client.embeddings.create.await_count == 2


class TestOllamaProvider:

    @pytest.mark.asyncio
    async def test_posts_to_embed_endpoint(self):
        from hybrid_memory.kb.embedder import OllamaEmbeddingProvider
        response = MagicMock()
        response.json.return_value = {"embeddings": [[0.5, 0.25]]}
        with patch("hybrid_memory.kb.embedder.requests.post", return_value=response) as post:
            provider = OllamaEmbeddingProvider("http://localhost:11434/", "nomic-embed-text")
            assert await provider.generate_embedding("hi") == [0.5, 0.25]
        args, kwargs = post.call_args
        assert args[0] == "http://localhost:11434/api/embed"
        assert kwargs["json"] == {"model": "nomic-embed-text", "input": "hi"}

    @pytest.mark.asyncio
    async def test_connection_error_becomes_embedding_error(self):
        from hybrid_memory.errors import EmbeddingError
        from hybrid_memory.kb.embedder import OllamaEmbeddingProvider
        with patch(
            "hybrid_memory.kb.embedder.requests.post",
            side_effect=requests.exceptions.ConnectionError("refused"),
        ):
            provider = OllamaEmbeddingProvider("http://localhost:11434", "m")
            with pytest.raises(EmbeddingError):
                await provider.generate_embedding("hi")

    @pytest.mark.asyncio
    async def test_empty_embeddings_rejected(self):
        from hybrid_memory.errors import EmbeddingError
        from hybrid_memory.kb.embedder import OllamaEmbeddingProvider
        response = MagicMock()
        response.json.return_value = {"embeddings": []}
        with patch("hybrid_memory.kb.embedder.requests.post", return_value=response):
            provider = OllamaEmbeddingProvider("http://localhost:11434", "m")
            with pytest.raises(EmbeddingError):
                await provider.generate_embedding("hi")


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

class TestCreateEmbeddingService:

    def _config(self, **overrides):
        from hybrid_memory.config import Config
        with patch.dict("os.environ", {}, clear=True):
            cfg = Config()
        for key, value in overrides.items():
            setattr(cfg, key, value)
        return cfg

    def test_no_credentials_means_local(self):
        from hybrid_memory.kb.embedder import create_embedding_service
        service = create_embedding_service(self._config())
        assert service.provider is None
        assert service.dimensions == 1536

    def test_ollama_selected_explicitly(self):
        from hybrid_memory.kb.embedder import OllamaEmbeddingProvider, create_embedding_service
        service = create_embedding_service(self._config(EMBEDDING_PROVIDER="ollama"))
        assert isinstance(service.provider, OllamaEmbeddingProvider)

    def test_openai_without_key_falls_back_to_local(self):
        from hybrid_memory.kb.embedder import create_embedding_service
        service = create_embedding_service(self._config(EMBEDDING_PROVIDER="openai"))
        assert service.provider is None

    def test_missing_openai_package_falls_back_to_local(self):
        from hybrid_memory.kb.embedder import create_embedding_service
        cfg = self._config(OPENAI_API_KEY="sk-test")
        with patch(
            "hybrid_memory.kb.embedder._get_openai_module",
            side_effect=ImportError("openai package is required"),
        ):
            service = create_embedding_service(cfg)
        assert service.provider is None

    def test_azure_preferred_when_configured(self):
        from hybrid_memory.kb.embedder import create_embedding_service
        cfg = self._config(
            OPENAI_API_KEY="sk-test",
            AZURE_OPENAI_API_KEY="az-key",
            AZURE_OPENAI_ENDPOINT="https://example.openai.azure.com",
            AZURE_OPENAI_DEPLOYMENT_NAME="embed",
        )
        fake_openai = MagicMock()
        with patch("hybrid_memory.kb.embedder._get_openai_module", return_value=fake_openai):
            service = create_embedding_service(cfg)
        assert service.provider.name == "azure"
        kwargs = fake_openai.AsyncAzureOpenAI.call_args.kwargs
        assert kwargs["azure_endpoint"] == "https://example.openai.azure.com"
        assert kwargs["azure_deployment"] == "embed"
        fake_openai.AsyncOpenAI.assert_not_called()
