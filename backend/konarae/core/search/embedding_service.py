# ============================================================================
# backend/konarae/core/search/embedding_service.py
# ============================================================================
"""
Embedding Service - OpenAI API embeddings for semantic search.

Usage:
    from konarae.core.search.embedding_service import embedding_service

    vector = await embedding_service.get_embedding("창업지원사업 모집 공고")
    vectors = await embedding_service.get_embeddings_batch(chunks)

Configuration (.env):
    OPENAI_API_KEY, OPENAI_BASE_URL, EMBEDDING_MODEL, EMBEDDING_DIMENSIONS
"""

import asyncio
import logging
from typing import List, Optional

import httpx
from openai import OpenAI

from konarae.config import settings
from konarae.core.shared.retry import RetryPolicy, with_retry

logger = logging.getLogger("konarae.embedding_service")

# ~4 chars per token keeps each input under the model limit
MAX_INPUT_CHARS = 8000
BATCH_SIZE = 50


def _is_rate_limit_error(error: Exception) -> bool:
    error_str = str(error).lower()
    return (
        "rate limit" in error_str
        or "429" in error_str
        or "ratelimit" in error_str
        or "too many requests" in error_str
    )


RATE_LIMIT_POLICY = RetryPolicy(
    max_retries=5,
    base_delay=0.5,
    backoff_factor=2.0,
    is_retryable=_is_rate_limit_error,
)


class EmbeddingService:
    """
    OpenAI API-based embedding generation.

    The sync OpenAI client runs in a worker thread (``asyncio.to_thread``).
    Rate-limit errors are retried with exponential backoff; any other error
    propagates.
    """

    def __init__(self, client: Optional[OpenAI] = None, model: Optional[str] = None):
        self._client = client
        self.model_name = model or settings.embedding_model
        self.embedding_dim = settings.embedding_dimensions

    @property
    def is_available(self) -> bool:
        return self._client is not None or bool(settings.openai_api_key)

    def _get_client(self) -> OpenAI:
        if self._client is None:
            if not settings.openai_api_key:
                raise ValueError("OPENAI_API_KEY not set. Configure it in the environment.")
            self._client = OpenAI(
                api_key=settings.openai_api_key,
                base_url=settings.openai_base_url,
                timeout=settings.openai_timeout,
                max_retries=0,
                http_client=httpx.Client(timeout=settings.openai_timeout),
            )
            logger.info(f"OpenAI client initialized for embeddings (model: {self.model_name})")
        return self._client

    @staticmethod
    def _clean(text: str) -> str:
        text = (text or "")[:MAX_INPUT_CHARS]
        return text if text.strip() else "empty"

    def _embed_sync(self, texts: List[str]) -> List[List[float]]:
        response = self._get_client().embeddings.create(model=self.model_name, input=texts)
        ordered = sorted(response.data, key=lambda item: item.index)
        return [list(item.embedding) for item in ordered]

    async def _embed_batch(self, batch: List[str]) -> List[List[float]]:
        return await with_retry(
            lambda: asyncio.to_thread(self._embed_sync, batch),
            RATE_LIMIT_POLICY,
            description=f"embedding batch of {len(batch)}",
        )

    async def get_embedding(self, text: str) -> List[float]:
        """Embedding of a single text."""
        vectors = await self._embed_batch([self._clean(text)])
        return vectors[0]

    async def get_embeddings_batch(self, texts: List[str]) -> List[List[float]]:
        """Embeddings of ``texts``, one per input, in input order."""
        cleaned = [self._clean(t) for t in texts]
        vectors: List[List[float]] = []
        for i in range(0, len(cleaned), BATCH_SIZE):
            vectors.extend(await self._embed_batch(cleaned[i:i + BATCH_SIZE]))
        return vectors


# Global service instance
embedding_service = EmbeddingService()
