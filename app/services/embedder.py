# =============================================================================
# Embedding Service — Text → Fixed-Length Vector (Provider-Agnostic)
# =============================================================================
#
# Generates vector embeddings using any OpenAI-compatible embedding API.
#
# DESIGN DECISION: OpenAI SDK with configurable base_url.
# Most providers expose OpenAI-compatible embedding endpoints, so a single
# client covers all of them.
#
# DESIGN DECISION: No retry logic in the embedder. The batch pipeline owns
# the retry policy (3 attempts, linear backoff) and the interactive path
# deliberately does not retry. Every SDK failure is re-raised as
# ProviderError so callers can apply their own policy without knowing the
# SDK's exception hierarchy.
#
# DESIGN DECISION: The SDK client is sync. The async `embed()` wraps each
# call in asyncio.to_thread() so the event loop keeps serving other
# requests (and other pipeline records) while one call is in flight.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from typing import Protocol

from openai import OpenAI, OpenAIError

from app.config import settings
from app.errors import ProviderError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class EmbeddingProvider(Protocol):
    """Anything that can turn one text into one fixed-dimension vector."""

    async def embed(self, text: str) -> list[float]:
        """
        Embed a single text.

        Raises:
            ProviderError: If the provider call fails for any reason.
        """
        ...


# ---------------------------------------------------------------------------
# Embedding Client — Lazy Singleton
# ---------------------------------------------------------------------------
# API key resolution order:
#   1. OPENAI_API_KEY (explicit embedding key)
#   2. LLM_API_KEY (shared key for providers serving both)
# ---------------------------------------------------------------------------

_client: OpenAI | None = None


def _get_client() -> OpenAI:
    """Lazily initialize and cache the embedding client."""
    global _client
    if _client is None:
        resolved_key = settings.openai_api_key or settings.llm_api_key
        if not resolved_key:
            raise ValueError(
                "No API key configured for embeddings. "
                "Set OPENAI_API_KEY or LLM_API_KEY in .env"
            )

        client_kwargs: dict = {"api_key": resolved_key}
        if settings.embedding_base_url:
            client_kwargs["base_url"] = settings.embedding_base_url

        _client = OpenAI(**client_kwargs)

        logger.info(
            "Initialized embedding client (model=%s, base_url=%s)",
            settings.embedding_model,
            settings.embedding_base_url or "https://api.openai.com/v1",
        )
    return _client


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def embed_query(text: str) -> list[float]:
    """
    Generate an embedding for a single text (sync).

    Args:
        text: The text to embed.

    Returns:
        A single embedding vector of settings.embedding_dimensions floats.

    Raises:
        ValueError: If no embedding API key is configured.
        ProviderError: If the API call fails or returns a malformed vector.
    """
    client = _get_client()

    create_kwargs: dict = {
        "model": settings.embedding_model,
        "input": [text],
    }
    if settings.embedding_dimensions:
        create_kwargs["dimensions"] = settings.embedding_dimensions

    try:
        response = client.embeddings.create(**create_kwargs)
    except OpenAIError as exc:
        raise ProviderError(f"Embedding request failed: {exc}") from exc

    if not response.data:
        raise ProviderError("Embedding response contained no vectors")

    vector = response.data[0].embedding
    if len(vector) != settings.embedding_dimensions:
        raise ProviderError(
            f"Embedding has {len(vector)} dimensions, "
            f"expected {settings.embedding_dimensions}"
        )
    return vector


class OpenAIEmbeddingProvider:
    """
    EmbeddingProvider backed by the shared OpenAI-compatible client.

    Stateless apart from the module-level client, so one instance can be
    shared across the pipeline's concurrent workers.
    """

    async def embed(self, text: str) -> list[float]:
        return await asyncio.to_thread(embed_query, text)


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------

_provider: OpenAIEmbeddingProvider | None = None


def get_embedding_provider() -> OpenAIEmbeddingProvider:
    """Return the process-wide embedding provider."""
    global _provider
    if _provider is None:
        _provider = OpenAIEmbeddingProvider()
    return _provider
