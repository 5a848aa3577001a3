"""
Service container
Builds every client and component once per process and wires them together.
Only the Redis connection pool needs explicit teardown.
"""
from dataclasses import dataclass
from typing import Any, Optional

import structlog
from supabase import create_client

from ragcore.config import Settings
from ragcore.errors import ConfigurationError
from ragcore.reasoning.classifier import QueryClassifier
from ragcore.reasoning.decomposer import QueryDecomposer
from ragcore.reasoning.orchestrator import Orchestrator
from ragcore.reasoning.tools import RetrievalTool
from ragcore.services.analytics import AnalyticsTracker
from ragcore.services.background import BackgroundTaskRunner
from ragcore.services.cache import Cache, build_cache, create_redis_client
from ragcore.services.chunking_service import ChunkingService
from ragcore.services.document_parser import DocumentParser
from ragcore.services.embedding_service import EmbeddingService
from ragcore.services.enrichment_service import EnrichmentService
from ragcore.services.evaluator import EvaluationStore, ResponseEvaluator
from ragcore.services.feedback_store import SupabaseFeedbackStore
from ragcore.services.hybrid_search import HybridSearch
from ragcore.services.ingestion import IngestionPipeline
from ragcore.services.llm_client import LLMClient
from ragcore.services.rate_limiter import RateLimiter, build_rate_limiter
from ragcore.services.reranker import Reranker
from ragcore.services.resilience import RetryPolicy
from ragcore.services.vector_store import VectorStore

logger = structlog.get_logger()


@dataclass
class Services:
    settings: Settings
    llm: LLMClient
    cache: Cache
    rate_limiter: RateLimiter
    retrieval: RetrievalTool
    orchestrator: Orchestrator
    ingestion: IngestionPipeline
    evaluator: ResponseEvaluator
    evaluation_store: EvaluationStore
    analytics: AnalyticsTracker
    background: BackgroundTaskRunner
    redis: Optional[Any] = None

    async def aclose(self) -> None:
        await self.background.drain()
        if self.redis is not None:
            await self.redis.aclose()


def build_services(settings: Settings) -> Services:
    """Construct the full object graph from settings."""
    if not (settings.supabase_url and settings.supabase_service_key):
        raise ConfigurationError("SUPABASE_URL and SUPABASE_SERVICE_KEY must be set")

    supabase = create_client(settings.supabase_url, settings.supabase_service_key)
    redis = create_redis_client(settings)
    cache = build_cache(redis)
    db_policy = RetryPolicy.from_settings(settings, settings.vector_search_timeout_seconds)

    llm = LLMClient.from_settings(settings)
    embeddings = EmbeddingService.from_settings(settings, cache)
    vector_store = VectorStore.from_settings(settings)

    retrieval = RetrievalTool(
        embeddings=embeddings,
        vector_store=vector_store,
        hybrid_search=HybridSearch(supabase, db_policy),
        reranker=Reranker(llm),
        feedback_store=SupabaseFeedbackStore(supabase, db_policy),
    )
    orchestrator = Orchestrator(
        classifier=QueryClassifier(llm, cache, settings.classification_cache_ttl_seconds),
        decomposer=QueryDecomposer(llm),
        retrieval=retrieval,
    )
    ingestion = IngestionPipeline(
        parser=DocumentParser(),
        chunker=ChunkingService.from_settings(settings),
        enricher=EnrichmentService.from_settings(settings, llm),
        embeddings=embeddings,
        vector_store=vector_store,
        skip_enrichment=settings.skip_enrichment,
    )

    logger.info(
        "Services initialized",
        cache=cache.name,
        reasoning_model=settings.reasoning_model,
        answer_model=settings.answer_model,
    )
    return Services(
        settings=settings,
        llm=llm,
        cache=cache,
        rate_limiter=build_rate_limiter(redis),
        retrieval=retrieval,
        orchestrator=orchestrator,
        ingestion=ingestion,
        evaluator=ResponseEvaluator(llm),
        evaluation_store=EvaluationStore(supabase),
        analytics=AnalyticsTracker(supabase),
        background=BackgroundTaskRunner(),
        redis=redis,
    )
