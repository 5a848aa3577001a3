"""
Embedding Service
Generates vector embeddings with OpenAI embedding models.
Query embeddings are cached since they are deterministic per provider and text.
"""
from typing import List, Optional

import structlog
from openai import AsyncOpenAI

from ragcore.config import Settings
from ragcore.errors import ConfigurationError, EmbeddingCountMismatchError
from ragcore.models.schemas import EmbeddingMode, EnrichedChunk
from ragcore.services.cache import Cache, NullCache, embedding_cache_key
from ragcore.services.resilience import RetryPolicy, call_with_retry

logger = structlog.get_logger()


class EmbeddingService:
    """Generates embeddings using OpenAI's embedding models."""

    # Maximum tokens per request (model limit)
    MAX_TOKENS_PER_REQUEST = 8191
    # Batch size for embedding requests
    BATCH_SIZE = 100

    def __init__(
        self,
        client: AsyncOpenAI,
        model: str,
        dimensions: int,
        provider: str = "openai",
        cache: Optional[Cache] = None,
        cache_ttl_seconds: int = 86400,
        policy: Optional[RetryPolicy] = None,
    ):
        self.client = client
        self.model = model
        self.dimensions = dimensions
        self.provider = provider
        self.cache = cache or NullCache()
        self.cache_ttl_seconds = cache_ttl_seconds
        self.policy = policy or RetryPolicy(timeout=20.0)

    @classmethod
    def from_settings(cls, settings: Settings, cache: Cache) -> "EmbeddingService":
        if not settings.openai_api_key:
            raise ConfigurationError("OPENAI_API_KEY is not set")
        return cls(
            client=AsyncOpenAI(api_key=settings.openai_api_key),
            model=settings.embedding_model,
            dimensions=settings.embedding_dimensions,
            provider=settings.embedding_provider,
            cache=cache,
            cache_ttl_seconds=settings.embedding_cache_ttl_seconds,
            policy=RetryPolicy.from_settings(settings, settings.embedding_timeout_seconds),
        )

    def _truncate(self, text: str) -> str:
        max_chars = self.MAX_TOKENS_PER_REQUEST * 4
        if len(text) > max_chars:
            logger.warning("Text truncated for embedding", original_length=len(text))
            return text[:max_chars]
        return text

    async def embed(self, texts: List[str], mode: EmbeddingMode = "document") -> List[List[float]]:
        """
        Generate embeddings for multiple texts, preserving order.

        Args:
            texts: Texts to embed
            mode: "document" for stored chunks, "query" for search queries

        Returns:
            One vector per input text

        Raises:
            EmbeddingCountMismatchError: If the provider returns a different count
        """
        if not texts:
            return []

        logger.info("Generating embeddings", count=len(texts), mode=mode)
        all_embeddings: List[List[float]] = []

        for i in range(0, len(texts), self.BATCH_SIZE):
            batch = [self._truncate(t) for t in texts[i:i + self.BATCH_SIZE]]

            async def _call(batch=batch):
                return await self.client.embeddings.create(
                    model=self.model,
                    input=batch,
                    dimensions=self.dimensions,
                )

            response = await call_with_retry(_call, self.policy, label="embeddings")

            # Provider may return items out of order; index is authoritative
            items = list(response.data)
            if all(isinstance(getattr(item, "index", None), int) for item in items):
                items.sort(key=lambda item: item.index)
            if len(items) != len(batch):
                raise EmbeddingCountMismatchError(expected=len(batch), received=len(items))
            all_embeddings.extend(item.embedding for item in items)

            logger.info(
                "Batch embedded",
                batch_num=i // self.BATCH_SIZE + 1,
                batch_size=len(batch)
            )

        if len(all_embeddings) != len(texts):
            raise EmbeddingCountMismatchError(expected=len(texts), received=len(all_embeddings))

        logger.info("Embeddings complete", total=len(all_embeddings), dimensions=self.dimensions)
        return all_embeddings

    async def embed_query(self, query: str) -> List[float]:
        """
        Generate (or fetch from cache) the embedding for a search query.

        Args:
            query: User's search query

        Returns:
            Query embedding vector
        """
        key = embedding_cache_key(self.provider, query)
        cached = await self.cache.get(key)
        if cached:
            logger.debug("Query embedding cache hit", key=key)
            return cached

        vectors = await self.embed([query], mode="query")
        embedding = vectors[0]
        await self.cache.set(key, embedding, self.cache_ttl_seconds)
        return embedding

    async def embed_chunks(self, chunks: List[EnrichedChunk]) -> List[List[float]]:
        """Embed chunks using their section title and summary as extra context."""
        return await self.embed([chunk_embedding_text(c) for c in chunks], mode="document")


def chunk_embedding_text(chunk: EnrichedChunk) -> str:
    """
    Prepare chunk text for embedding.
    Section title and summary are prepended so short chunks keep their context.
    """
    parts = []
    if chunk.section_title:
        parts.append(f"Section: {chunk.section_title}")
    if chunk.summary:
        parts.append(f"Summary: {chunk.summary}")
    parts.append(chunk.content)
    return "\n\n".join(parts)
