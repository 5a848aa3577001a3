"""
LLM Reranker
Reorders retrieval candidates by model-judged relevance, then nudges scores
with historical user feedback. Any failure returns the input order untouched.
"""
from typing import Dict, List, Optional

import structlog

from ragcore.models.schemas import ChunkKey, FeedbackScore, RerankOutcome, SearchResult
from ragcore.reasoning.output_parsing import extract_json_object
from ragcore.reasoning.prompt_guard import sanitize_for_prompt, wrap_user_input
from ragcore.services.llm_client import LLMClient

logger = structlog.get_logger()

PREVIEW_CHARS = 300
FEEDBACK_WEIGHT = 0.15
MIN_FEEDBACK_SIGNALS = 2

RERANKER_SYSTEM_PROMPT = (
    "You rank document excerpts by how well they answer a search query. You receive the "
    "query and numbered excerpts. Return every excerpt index ordered from most to least "
    "relevant as JSON only, in the form {\"ranking\": [2, 0, 1]}."
)


def build_reranker_prompt(query: str, candidates: List[SearchResult]) -> str:
    excerpts = "\n\n".join(
        f"[{i}] ({c.filename}{' > ' + c.section_title if c.section_title else ''})\n"
        f"{c.content[:PREVIEW_CHARS]}"
        for i, c in enumerate(candidates)
    )
    return (
        f"Query:\n{wrap_user_input(sanitize_for_prompt(query, 1000))}\n\n"
        f"Excerpts:\n{excerpts}\n\n"
        f"Rank all {len(candidates)} excerpts."
    )


def parse_ranking(response: str, candidate_count: int) -> List[int]:
    """Valid, unique candidate indices in the order the model gave them."""
    parsed = extract_json_object(response)
    ranking = parsed.get("ranking")
    if not isinstance(ranking, list):
        raise ValueError("Reranker response has no ranking array")

    seen: List[int] = []
    for value in ranking:
        if isinstance(value, bool) or not isinstance(value, int):
            continue
        if 0 <= value < candidate_count and value not in seen:
            seen.append(value)
    if not seen:
        raise ValueError("Reranker ranking contains no valid indices")
    return seen


def apply_feedback(
    results: List[SearchResult],
    feedback: Dict[ChunkKey, FeedbackScore],
    weight: float = FEEDBACK_WEIGHT,
) -> List[SearchResult]:
    """Blend feedback into scores of chunks with enough signals, then re-sort."""
    adjusted = []
    for result in results:
        entry = feedback.get(result.key)
        if entry is not None and entry.total_count >= MIN_FEEDBACK_SIGNALS:
            score = min(max(result.score + entry.normalized_score * weight, 0.0), 1.0)
            result = result.model_copy(update={"score": score})
        adjusted.append(result)
    # sorted() is stable, so ties keep their reranked order
    return sorted(adjusted, key=lambda r: r.score, reverse=True)


class Reranker:

    def __init__(self, llm: LLMClient):
        self.llm = llm

    async def rerank(
        self,
        query: str,
        candidates: List[SearchResult],
        top_n: int,
        feedback: Optional[Dict[ChunkKey, FeedbackScore]] = None,
    ) -> RerankOutcome:
        """
        Reorder ``candidates`` and keep the best ``top_n``.

        Args:
            query: Search query the candidates were retrieved for
            candidates: Retrieval candidates in retrieval order
            top_n: Number of results to return
            feedback: Optional feedback scores keyed by (document_id, chunk_index)

        Returns:
            RerankOutcome; ``reranked`` is False when the original order was kept
        """
        if len(candidates) <= 1:
            return RerankOutcome(results=candidates[:top_n], reranked=False)

        try:
            response = await self.llm.complete(
                RERANKER_SYSTEM_PROMPT,
                build_reranker_prompt(query, candidates),
                temperature=0.0,
                max_tokens=256,
            )
            ranking = parse_ranking(response, len(candidates))
        except Exception as e:
            logger.warning("Reranking failed, keeping original order", error=str(e))
            return RerankOutcome(results=candidates[:top_n], reranked=False)

        total = len(ranking)
        reranked = [
            candidates[index].model_copy(update={"score": 1 - rank / total})
            for rank, index in enumerate(ranking)
        ]

        # Backfill candidates the model left out, in retrieval order
        used = set(ranking)
        for index, candidate in enumerate(candidates):
            if len(reranked) >= top_n:
                break
            if index not in used:
                reranked.append(candidate.model_copy(update={"score": 0.0}))

        if feedback:
            reranked = apply_feedback(reranked, feedback)

        logger.info(
            "Results reranked",
            candidates=len(candidates),
            ranked=total,
            returned=min(len(reranked), top_n),
        )
        return RerankOutcome(results=reranked[:top_n], reranked=True)
