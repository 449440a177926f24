"""
Embedding providers for the vector index.

A provider maps text to a fixed-length vector.  Remote providers (OpenAI,
Azure OpenAI, Ollama) are optional; :class:`EmbeddingService` wraps whichever
one is configured and substitutes a deterministic local vector whenever the
provider is missing or fails, so storing and querying never depend on a
network call succeeding.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Optional

import requests

from ..errors import EmbeddingError

if TYPE_CHECKING:
    from ..config import Config

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EMBED_MODEL = "text-embedding-ada-002"
EMBED_DIMENSIONS = 1536
MAX_RETRIES = 2

# Scale applied to each code point by the fallback embedding
_FALLBACK_SCALE = 1000.0


# ---------------------------------------------------------------------------
# Deterministic fallback
# ---------------------------------------------------------------------------

def fallback_embedding(text: str, dimensions: int = EMBED_DIMENSIONS) -> list[float]:
    """
    Return a deterministic vector for *text* without calling any service.

    Each character's code point, divided by 1000, is accumulated into slot
    ``position % dimensions``.  Identical texts always produce identical
    vectors; the result carries no semantic meaning.

    Parameters
    ----------
    text:
        Text to embed.
    dimensions:
        Length of the returned vector.

    Returns
    -------
    list[float]
        Vector of length *dimensions*.
    """
    vector = [0.0] * dimensions
    for i, ch in enumerate(text):
        vector[i % dimensions] += ord(ch) / _FALLBACK_SCALE
    return vector


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------

class EmbeddingProvider(ABC):
    """Maps text to a fixed-length vector.  Raises :class:`EmbeddingError` on failure."""

    name = "provider"

    @abstractmethod
    async def generate_embedding(self, text: str) -> list[float]:
        ...


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """
    Embeddings API client for OpenAI or Azure OpenAI.

    Parameters
    ----------
    client:
        An ``openai.AsyncOpenAI`` or ``openai.AsyncAzureOpenAI`` instance.
    model:
        Embedding model (or Azure deployment) name.
    max_retries:
        Attempts before giving up; waits ``2 ** attempt`` seconds between tries.
    """

    name = "openai"

    def __init__(self, client, model: str = EMBED_MODEL, max_retries: int = MAX_RETRIES) -> None:
        self._client = client
        self._model = model
        self._max_retries = max(1, max_retries)

    async def generate_embedding(self, text: str) -> list[float]:
        for attempt in range(1, self._max_retries + 1):
            try:
                response = await self._client.embeddings.create(
                    model=self._model,
                    input=text,
                )
                return response.data[0].embedding
            except Exception as exc:
                if attempt < self._max_retries:
                    wait = 2 ** attempt
                    logger.warning(
                        "Embedding API error (attempt %d/%d): %s; retrying in %ds",
                        attempt, self._max_retries, exc, wait,
                    )
                    await asyncio.sleep(wait)
                else:
                    raise EmbeddingError(
                        f"Embedding API failed after {self._max_retries} attempts: {exc}"
                    ) from exc
        raise EmbeddingError("Embedding API returned no result")


class OllamaEmbeddingProvider(EmbeddingProvider):
    """
    Embeddings via a local Ollama server (``POST /api/embed``).

    ``requests`` is blocking, so each call runs in a worker thread.
    """

    name = "ollama"

    def __init__(self, base_url: str, model: str, timeout: float = 30.0) -> None:
        self._url = f"{base_url.rstrip('/')}/api/embed"
        self._model = model
        self._timeout = timeout

    def _post(self, text: str) -> list[float]:
        try:
            response = requests.post(
                self._url,
                json={"model": self._model, "input": text},
                timeout=self._timeout,
            )
            response.raise_for_status()
            data = response.json()
        except (requests.exceptions.RequestException, ValueError) as exc:
            raise EmbeddingError(f"Ollama embedding error: {exc}") from exc
        embeddings = data.get("embeddings") or []
        if not embeddings or not embeddings[0]:
            raise EmbeddingError("Ollama returned an empty embedding")
        return embeddings[0]

    async def generate_embedding(self, text: str) -> list[float]:
        return await asyncio.to_thread(self._post, text)


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class EmbeddingService:
    """
    Front door for embeddings used by the vector index.

    Parameters
    ----------
    provider:
        Remote provider, or None to always use :func:`fallback_embedding`.
    dimensions:
        Length of fallback vectors.  Should match the provider's output size.
    """

    def __init__(
        self,
        provider: Optional[EmbeddingProvider] = None,
        dimensions: int = EMBED_DIMENSIONS,
    ) -> None:
        self.provider = provider
        self.dimensions = dimensions

    async def generate_embedding(self, text: str) -> list[float]:
        """Embed *text*, falling back to the local vector on any provider failure."""
        if self.provider is None:
            return fallback_embedding(text, self.dimensions)
        try:
            vector = await self.provider.generate_embedding(text)
        except Exception as exc:
            logger.warning(
                "Embedding provider '%s' failed: %s; using local fallback",
                self.provider.name, exc,
            )
            return fallback_embedding(text, self.dimensions)
        if not vector:
            logger.warning(
                "Embedding provider '%s' returned an empty vector; using local fallback",
                self.provider.name,
            )
            return fallback_embedding(text, self.dimensions)
        return list(vector)


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def _get_openai_module():
    """Return the openai module, raising ImportError if not installed."""
    try:
        import openai  # type: ignore
    except ImportError as exc:
        raise ImportError(
            "openai package is required for remote embeddings. "
            "Install it with: pip install 'hybrid_memory[semantic]'"
        ) from exc
    return openai


def create_embedding_service(config: "Config") -> EmbeddingService:
    """
    Build the :class:`EmbeddingService` described by *config*.

    An unavailable provider (missing package or credentials) is logged and
    replaced by the local fallback rather than raised.
    """
    choice = config.resolve_embedding_provider()
    dims = config.EMBEDDING_DIMENSIONS
    provider: Optional[EmbeddingProvider] = None

    try:
        if choice == "openai":
            if not config.OPENAI_API_KEY:
                raise EnvironmentError("OPENAI_API_KEY environment variable is not set.")
            openai = _get_openai_module()
            kwargs = {"api_key": config.OPENAI_API_KEY}
            if config.OPENAI_BASE_URL:
                kwargs["base_url"] = config.OPENAI_BASE_URL
            provider = OpenAIEmbeddingProvider(
                openai.AsyncOpenAI(**kwargs),
                model=config.EMBEDDING_MODEL,
                max_retries=config.EMBEDDING_MAX_RETRIES,
            )
        elif choice == "azure":
            if not config.azure_configured:
                raise EnvironmentError(
                    "AZURE_OPENAI_API_KEY and AZURE_OPENAI_ENDPOINT must be set."
                )
            openai = _get_openai_module()
            deployment = config.AZURE_OPENAI_DEPLOYMENT_NAME or None
            provider = OpenAIEmbeddingProvider(
                openai.AsyncAzureOpenAI(
                    api_key=config.AZURE_OPENAI_API_KEY,
                    azure_endpoint=config.AZURE_OPENAI_ENDPOINT,
                    azure_deployment=deployment,
                    api_version=config.AZURE_OPENAI_API_VERSION,
                ),
                model=config.EMBEDDING_MODEL,
                max_retries=config.EMBEDDING_MAX_RETRIES,
            )
            provider.name = "azure"
        elif choice == "ollama":
            provider = OllamaEmbeddingProvider(config.OLLAMA_BASE_URL, config.EMBEDDING_MODEL)
    except (ImportError, EnvironmentError) as exc:
        logger.warning("Embedding provider '%s' unavailable: %s; using local fallback",
                       choice, exc)
        provider = None

    logger.debug("Embedding service: provider=%s dimensions=%d",
                 provider.name if provider else "local", dims)
    return EmbeddingService(provider, dims)
