"""
Orchestrator
classify -> route -> retrieve (none, once, or fanned out) -> dedup -> prompt.
"""
import asyncio
import time
from typing import Dict, List, Optional, Sequence, Tuple

import structlog

from ragcore.errors import RetrievalError
from ragcore.models.schemas import (
    ChatMessage,
    ChunkKey,
    ClassificationResult,
    ComplexRoute,
    ConversationalRoute,
    OrchestrationMetadata,
    OrchestrationResult,
    RAGContext,
    Route,
    SearchFilters,
    SearchResult,
    SimpleRoute,
)
from ragcore.reasoning.classifier import QueryClassifier
from ragcore.reasoning.decomposer import QueryDecomposer
from ragcore.reasoning.prompts import (
    CONVERSATIONAL_SYSTEM_PROMPT,
    build_complex_rag_prompt,
    build_rag_prompt,
)
from ragcore.reasoning.tools import RetrievalTool

logger = structlog.get_logger()

SIMPLE_LIMIT = 5
SUB_QUERY_LIMIT = 5
MAX_TOTAL_CHUNKS = 8

SubQueryResults = List[Tuple[str, List[SearchResult]]]


def deduplicate_results(sub_query_results: SubQueryResults) -> List[SearchResult]:
    """
    Merge sub-query result sets on (document_id, chunk_index).

    The higher-scoring copy wins and keeps its own sub-query annotation.
    Output is sorted by score, highest first.
    """
    best: Dict[ChunkKey, SearchResult] = {}
    for sub_query, results in sub_query_results:
        for result in results:
            existing = best.get(result.key)
            if existing is None or result.score > existing.score:
                best[result.key] = result.model_copy(update={"sub_query": sub_query})
    return sorted(best.values(), key=lambda r: r.score, reverse=True)


def to_contexts(results: Sequence[SearchResult]) -> List[RAGContext]:
    return [
        RAGContext(
            content=r.content,
            document_id=r.document_id,
            filename=r.filename,
            chunk_index=r.chunk_index,
            score=r.score,
            section_title=r.section_title,
            summary=r.summary,
            chunk_type=r.chunk_type,
            sub_query=r.sub_query,
        )
        for r in results
    ]


class Orchestrator:
    """Top-level reasoning state machine for one user query."""

    def __init__(
        self,
        classifier: QueryClassifier,
        decomposer: QueryDecomposer,
        retrieval: RetrievalTool,
    ):
        self.classifier = classifier
        self.decomposer = decomposer
        self.retrieval = retrieval

    async def route(self, query: str, history: Sequence[ChatMessage] = ()) -> Route:
        """Classify the query and, for complex ones, decompose it."""
        classification = await self.classifier.classify(query, history)

        if classification.category == "conversational":
            return ConversationalRoute(classification=classification)
        if classification.category == "complex":
            decomposition = await self.decomposer.decompose(query)
            return ComplexRoute(
                classification=classification,
                sub_queries=tuple(decomposition.sub_queries),
                strategy=decomposition.strategy,
                synthesis_instruction=decomposition.synthesis_instruction,
            )
        return SimpleRoute(classification=classification)

    async def orchestrate(
        self,
        query: str,
        owner_id: str,
        history: Sequence[ChatMessage] = (),
        filters: Optional[SearchFilters] = None,
    ) -> OrchestrationResult:
        """
        Build the generation context for ``query``.

        Raises:
            RetrievalError: Retrieval failed for every planned call
        """
        started = time.perf_counter()
        route = await self.route(query, history)
        logger.info("Query routed", route=type(route).__name__, reasoning=route.classification.reasoning)

        if isinstance(route, ConversationalRoute):
            tools = ["classifier"]
            contexts: List[RAGContext] = []
            system_prompt = CONVERSATIONAL_SYSTEM_PROMPT
        elif isinstance(route, SimpleRoute):
            tools = ["classifier", "retrieve"]
            contexts = to_contexts(await self._retrieve_simple(route, query, owner_id, filters))
            system_prompt = build_rag_prompt(contexts)
        elif isinstance(route, ComplexRoute):
            tools = ["classifier", "decomposer", "retrieve"]
            sub_query_results = await self._retrieve_complex(route, owner_id, filters)
            merged = deduplicate_results(sub_query_results)[:MAX_TOTAL_CHUNKS]
            contexts = to_contexts(merged)
            system_prompt = build_complex_rag_prompt(contexts, route.synthesis_instruction)
        else:
            raise TypeError(f"Unhandled route: {route!r}")

        metadata = self._metadata(route, tools, len(contexts), started)
        logger.info(
            "Orchestration complete",
            category=metadata.query_category,
            contexts=len(contexts),
            tools=tools,
            reasoning_time_ms=metadata.reasoning_time_ms,
        )
        return OrchestrationResult(contexts=contexts, system_prompt=system_prompt, metadata=metadata)

    async def _retrieve_simple(
        self,
        route: SimpleRoute,
        query: str,
        owner_id: str,
        filters: Optional[SearchFilters],
    ) -> List[SearchResult]:
        try:
            results = await self.retrieval.retrieve(query, owner_id, filters, limit=SIMPLE_LIMIT)
        except Exception as e:
            logger.error("Retrieval failed", category="simple", error=str(e))
            raise RetrievalError(f"Retrieval failed: {e}", category="simple") from e
        return results[:SIMPLE_LIMIT]

    async def _retrieve_complex(
        self,
        route: ComplexRoute,
        owner_id: str,
        filters: Optional[SearchFilters],
    ) -> SubQueryResults:
        """
        Run every sub-query, concurrently for "parallel" and in order for
        "sequential". Sub-queries that fail are dropped; if all fail the
        last error is raised as RetrievalError.
        """
        async def _one(sub_query: str) -> List[SearchResult]:
            return await self.retrieval.retrieve(sub_query, owner_id, filters, limit=SUB_QUERY_LIMIT)

        if route.strategy == "parallel":
            outcomes = await asyncio.gather(
                *(_one(q) for q in route.sub_queries), return_exceptions=True
            )
        else:
            outcomes = []
            for sub_query in route.sub_queries:
                try:
                    outcomes.append(await _one(sub_query))
                except Exception as e:
                    outcomes.append(e)

        collected: SubQueryResults = []
        last_error: Optional[BaseException] = None
        for sub_query, outcome in zip(route.sub_queries, outcomes):
            if isinstance(outcome, BaseException):
                last_error = outcome
                logger.warning("Sub-query retrieval failed", sub_query=sub_query, error=str(outcome))
                continue
            collected.append((sub_query, outcome))

        if not collected and last_error is not None:
            raise RetrievalError(
                f"Retrieval failed for all {len(route.sub_queries)} sub-queries: {last_error}",
                category="complex",
            ) from last_error
        return collected

    def _metadata(
        self,
        route: Route,
        tools: List[str],
        total_chunks: int,
        started: float,
    ) -> OrchestrationMetadata:
        classification: ClassificationResult = route.classification
        complex_route = route if isinstance(route, ComplexRoute) else None
        return OrchestrationMetadata(
            query_category=classification.category,
            reasoning=classification.reasoning,
            sub_queries=list(complex_route.sub_queries) if complex_route else None,
            strategy=complex_route.strategy if complex_route else None,
            total_chunks_retrieved=total_chunks,
            tools_used=tools,
            reasoning_time_ms=int((time.perf_counter() - started) * 1000),
        )
