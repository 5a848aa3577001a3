"""
Enrichment Service
Adds an LLM-written summary, keywords and hypothetical questions to each chunk.

Chunks are processed in small concurrent batches with a pause between batches
to stay under provider rate limits. A chunk whose enrichment keeps failing gets
empty metadata; it is never dropped.
"""
import asyncio
from typing import List, Optional

import structlog
from pydantic import BaseModel, Field
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from ragcore.config import Settings
from ragcore.errors import MalformedOutputError
from ragcore.models.schemas import EnrichedChunk, PreEnrichmentChunk
from ragcore.reasoning.output_parsing import extract_json_object, string_list
from ragcore.services.llm_client import LLMClient
from ragcore.services.resilience import RetryPolicy, is_transient_error

logger = structlog.get_logger()

CONTENT_PREVIEW_CHARS = 1500
MAX_KEYWORDS = 8
MAX_QUESTIONS = 3

ENRICHMENT_SYSTEM_PROMPT = (
    "You extract metadata from document excerpts. Always answer with one valid JSON "
    "object and nothing else: no explanations, no markdown."
)


class ChunkMetadata(BaseModel):
    summary: str = ""
    keywords: List[str] = Field(default_factory=list)
    hypothetical_questions: List[str] = Field(default_factory=list)


EMPTY_METADATA = ChunkMetadata()


def build_enrichment_prompt(chunk: PreEnrichmentChunk, filename: str) -> str:
    preview = chunk.content
    if len(preview) > CONTENT_PREVIEW_CHARS:
        preview = preview[:CONTENT_PREVIEW_CHARS] + "..."

    return f"""This excerpt comes from the document "{filename}", section "{chunk.section_title}":

---
{preview}
---

Reply with JSON only (no code fences):
{{
  "summary": "one or two sentences on what this excerpt covers",
  "keywords": ["term1", "term2", "term3"],
  "hypotheticalQuestions": ["question1", "question2", "question3"]
}}

Rules:
- summary: state what information the excerpt provides, in 1-2 sentences.
- keywords: 3 to 8 key terms or concepts from the excerpt.
- hypotheticalQuestions: exactly 3 natural questions a reader could answer with this excerpt.
- Output the JSON object only."""


def parse_metadata(raw: str) -> ChunkMetadata:
    """Parse model output; unusable output yields empty metadata."""
    if not raw.strip():
        return EMPTY_METADATA
    try:
        parsed = extract_json_object(raw)
    except MalformedOutputError:
        return EMPTY_METADATA

    summary = parsed.get("summary")
    return ChunkMetadata(
        summary=summary.strip() if isinstance(summary, str) else "",
        keywords=string_list(parsed.get("keywords"), MAX_KEYWORDS),
        hypothetical_questions=string_list(parsed.get("hypotheticalQuestions"), MAX_QUESTIONS),
    )


def _is_transient_failure(error: BaseException) -> bool:
    # LLMClient wraps provider errors; the chained cause carries the status
    return is_transient_error(error.__cause__ or error)


class EnrichmentService:

    def __init__(
        self,
        llm: LLMClient,
        batch_size: int = 5,
        batch_delay_seconds: float = 2.0,
        max_attempts: int = 3,
        backoff_seconds: float = 2.0,
        max_backoff_seconds: float = 10.0,
        call_timeout_seconds: float = 30.0,
    ):
        self.llm = llm
        self.batch_size = max(batch_size, 1)
        self.batch_delay_seconds = batch_delay_seconds
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.max_backoff_seconds = max_backoff_seconds
        # Single attempt per call; enrich() retries per chunk
        self.call_policy = RetryPolicy(attempts=1, timeout=call_timeout_seconds)

    @classmethod
    def from_settings(cls, settings: Settings, llm: LLMClient) -> "EnrichmentService":
        return cls(
            llm=llm,
            batch_size=settings.enrichment_batch_size,
            batch_delay_seconds=settings.enrichment_batch_delay_seconds,
            max_attempts=settings.enrichment_max_attempts,
            backoff_seconds=settings.enrichment_backoff_seconds,
            max_backoff_seconds=settings.retry_max_delay_seconds,
            call_timeout_seconds=settings.llm_timeout_seconds,
        )

    async def enrich(
        self,
        chunks: List[PreEnrichmentChunk],
        filename: str,
        skip: bool = False,
    ) -> List[EnrichedChunk]:
        """
        Enrich chunks batch by batch.

        Args:
            chunks: Chunks from the chunker
            filename: Source document name, given to the model as context
            skip: Return chunks with empty metadata without calling the model

        Returns:
            Exactly one EnrichedChunk per input chunk, in input order
        """
        if skip:
            logger.info("Enrichment skipped", chunks=len(chunks))
            return [self._merge(chunk, EMPTY_METADATA) for chunk in chunks]

        total_batches = (len(chunks) + self.batch_size - 1) // self.batch_size
        logger.info("Starting enrichment", chunks=len(chunks), batches=total_batches, filename=filename)

        enriched: List[EnrichedChunk] = []
        for batch_num, start in enumerate(range(0, len(chunks), self.batch_size), 1):
            batch = chunks[start:start + self.batch_size]
            metadata = await asyncio.gather(*(self._enrich_one(c, filename) for c in batch))
            enriched.extend(self._merge(c, m) for c, m in zip(batch, metadata))

            logger.info("Batch enriched", batch_num=batch_num, total_batches=total_batches)
            if batch_num < total_batches and self.batch_delay_seconds > 0:
                await asyncio.sleep(self.batch_delay_seconds)

        failed = sum(1 for c in enriched if not (c.summary or c.keywords or c.hypothetical_questions))
        logger.info("Enrichment complete", chunks=len(enriched), without_metadata=failed)
        return enriched

    async def _enrich_one(self, chunk: PreEnrichmentChunk, filename: str) -> ChunkMetadata:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_seconds, min=0, max=self.max_backoff_seconds),
            retry=retry_if_exception(_is_transient_failure),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    return await self._generate(chunk, filename)
        except Exception as e:
            logger.error(
                "Enrichment failed, using empty metadata",
                chunk_index=chunk.chunk_index,
                attempts=self.max_attempts,
                error=str(e),
            )
        return EMPTY_METADATA

    async def _generate(self, chunk: PreEnrichmentChunk, filename: str) -> ChunkMetadata:
        response = await self.llm.complete(
            ENRICHMENT_SYSTEM_PROMPT,
            build_enrichment_prompt(chunk, filename),
            temperature=0.3,
            max_tokens=512,
            policy=self.call_policy,
        )
        return parse_metadata(response)

    def _merge(self, chunk: PreEnrichmentChunk, metadata: ChunkMetadata) -> EnrichedChunk:
        return EnrichedChunk(**chunk.model_dump(), **metadata.model_dump())
