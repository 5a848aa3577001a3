"""
Reasoning tools: retrieval, plus summarize and compare over retrieved chunks.
"""
from typing import List, Optional

import structlog

from ragcore.models.schemas import SearchFilters, SearchResult
from ragcore.reasoning.prompts import (
    COMPARATOR_SYSTEM_PROMPT,
    SUMMARIZER_SYSTEM_PROMPT,
    build_comparator_prompt,
    build_summarizer_prompt,
)
from ragcore.services.embedding_service import EmbeddingService
from ragcore.services.feedback_store import FeedbackStore
from ragcore.services.hybrid_search import HybridSearch
from ragcore.services.llm_client import LLMClient
from ragcore.services.reranker import Reranker
from ragcore.services.vector_store import VectorStore

logger = structlog.get_logger()

MAX_FETCH = 20


class RetrievalTool:
    """
    Turns a query into a ranked list of chunks.

    Uses hybrid search when any structured filter is set and pure vector search
    otherwise, over-fetches, then reranks with feedback before truncating.
    """

    def __init__(
        self,
        embeddings: EmbeddingService,
        vector_store: VectorStore,
        hybrid_search: HybridSearch,
        reranker: Reranker,
        feedback_store: FeedbackStore,
    ):
        self.embeddings = embeddings
        self.vector_store = vector_store
        self.hybrid_search = hybrid_search
        self.reranker = reranker
        self.feedback_store = feedback_store

    async def retrieve(
        self,
        query: str,
        owner_id: str,
        filters: Optional[SearchFilters] = None,
        limit: int = 5,
    ) -> List[SearchResult]:
        fetch_limit = min(limit * 2, MAX_FETCH)
        query_vector = await self.embeddings.embed_query(query)

        if filters is not None and filters.is_active():
            source = "hybrid"
            results = await self.hybrid_search.search(query_vector, owner_id, fetch_limit, filters)
        else:
            source = "vector"
            results = await self.vector_store.search(query_vector, owner_id, fetch_limit)

        logger.info("Candidates retrieved", source=source, count=len(results), limit=limit)

        if len(results) <= 1:
            return results[:limit]

        feedback = await self.feedback_store.get_scores(owner_id, [r.key for r in results])
        outcome = await self.reranker.rerank(query, results, limit, feedback)
        return outcome.results


async def summarize(llm: LLMClient, chunks: List[SearchResult], focus: str) -> str:
    """Condense retrieved chunks into a summary centred on ``focus``."""
    if not chunks:
        return "No relevant content found to summarize."
    prompt = build_summarizer_prompt([(c.content, c.filename) for c in chunks], focus)
    return await llm.complete(SUMMARIZER_SYSTEM_PROMPT, prompt, temperature=0.1, max_tokens=1024)


async def compare(
    llm: LLMClient,
    label_a: str,
    chunks_a: List[SearchResult],
    label_b: str,
    chunks_b: List[SearchResult],
    criteria: str,
) -> str:
    """Structured comparison of two groups of retrieved chunks."""
    prompt = build_comparator_prompt(
        label_a,
        [(c.content, c.filename) for c in chunks_a],
        label_b,
        [(c.content, c.filename) for c in chunks_b],
        criteria,
    )
    return await llm.complete(COMPARATOR_SYSTEM_PROMPT, prompt, temperature=0.1, max_tokens=1024)
