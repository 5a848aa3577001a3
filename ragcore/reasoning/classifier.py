"""
Query Classifier
Labels a query as simple, complex or conversational. Never raises: any
failure falls back to "simple" so the pipeline keeps moving.
"""
from typing import Optional, Sequence

import structlog
from pydantic import ValidationError

from ragcore.models.schemas import ChatMessage, ClassificationResult
from ragcore.reasoning.output_parsing import extract_json_object
from ragcore.reasoning.prompts import CLASSIFIER_SYSTEM_PROMPT, build_classifier_prompt
from ragcore.services.cache import Cache, NullCache, classification_cache_key
from ragcore.services.llm_client import LLMClient

logger = structlog.get_logger()

FALLBACK_CLASSIFICATION = ClassificationResult(
    category="simple",
    reasoning="classification failed",
    suggested_approach="standard retrieval",
)


class QueryClassifier:

    def __init__(self, llm: LLMClient, cache: Optional[Cache] = None, cache_ttl_seconds: int = 3600):
        self.llm = llm
        self.cache = cache or NullCache()
        self.cache_ttl_seconds = cache_ttl_seconds

    async def classify(self, query: str, history: Sequence[ChatMessage] = ()) -> ClassificationResult:
        """
        Classify a query in the context of its conversation.

        Args:
            query: Current user message
            history: Prior turns; only the length affects the cache key

        Returns:
            A ClassificationResult, the fallback one on any failure
        """
        key = classification_cache_key(query, len(history))
        cached = await self.cache.get(key)
        if cached:
            try:
                return ClassificationResult.model_validate(cached)
            except ValidationError:
                logger.warning("Ignoring invalid cached classification", key=key)

        try:
            response = await self.llm.complete(
                CLASSIFIER_SYSTEM_PROMPT,
                build_classifier_prompt(query, history),
                temperature=0.0,
                max_tokens=256,
            )
            parsed = extract_json_object(response)
            result = ClassificationResult(
                category=parsed.get("category"),
                reasoning=str(parsed.get("reasoning") or ""),
                suggested_approach=str(parsed.get("suggestedApproach") or ""),
            )
        except Exception as e:
            logger.error("Query classification failed, defaulting to simple", error=str(e))
            return FALLBACK_CLASSIFICATION

        await self.cache.set(key, result.model_dump(), self.cache_ttl_seconds)
        logger.info("Query classified", category=result.category, reasoning=result.reasoning)
        return result
