"""
Feedback Store
Reads aggregated thumbs up/down scores per chunk from the
``chunk_feedback_scores`` view. Read-only; aggregation happens in the database.
"""
import asyncio
from typing import Any, Dict, List, Optional, Protocol, Sequence

import structlog

from ragcore.models.schemas import ChunkKey, FeedbackScore
from ragcore.services.resilience import RetryPolicy, call_with_retry

logger = structlog.get_logger()


def normalize_feedback(positive: int, negative: int) -> float:
    """(positive - negative) / total, in [-1, 1]; 0 without signals."""
    total = positive + negative
    if total <= 0:
        return 0.0
    return (positive - negative) / total


class FeedbackStore(Protocol):
    async def get_scores(
        self, owner_id: str, chunks: Sequence[ChunkKey]
    ) -> Dict[ChunkKey, FeedbackScore]:
        ...


class SupabaseFeedbackStore:
    VIEW = "chunk_feedback_scores"

    def __init__(self, supabase: Any, policy: Optional[RetryPolicy] = None):
        self.supabase = supabase
        self.policy = policy or RetryPolicy(timeout=15.0)

    async def get_scores(
        self, owner_id: str, chunks: Sequence[ChunkKey]
    ) -> Dict[ChunkKey, FeedbackScore]:
        """
        Fetch feedback scores for the given (document_id, chunk_index) pairs.
        Any failure yields an empty map; feedback only ever nudges ranking.
        """
        if not chunks:
            return {}

        wanted = set(chunks)
        document_ids = sorted({document_id for document_id, _ in chunks})

        def _select():
            return (
                self.supabase.table(self.VIEW)
                .select("document_id, chunk_index, positive_count, negative_count, total_count, normalized_score")
                .eq("user_id", owner_id)
                .in_("document_id", document_ids)
                .execute()
            )

        try:
            response = await call_with_retry(
                lambda: asyncio.to_thread(_select), self.policy, label="feedback_scores"
            )
        except Exception as e:
            logger.error("Failed to fetch chunk feedback scores", error=str(e))
            return {}

        return self._to_scores(response.data or [], wanted)

    def _to_scores(self, rows: List[Dict[str, Any]], wanted: set) -> Dict[ChunkKey, FeedbackScore]:
        scores: Dict[ChunkKey, FeedbackScore] = {}
        for row in rows:
            try:
                key = (row["document_id"], int(row["chunk_index"]))
                if key not in wanted:
                    continue
                normalized = row.get("normalized_score")
                if normalized is None:
                    normalized = normalize_feedback(
                        row.get("positive_count") or 0, row.get("negative_count") or 0
                    )
                scores[key] = FeedbackScore(
                    document_id=key[0],
                    chunk_index=key[1],
                    normalized_score=min(max(float(normalized), -1.0), 1.0),
                    total_count=int(row.get("total_count") or 0),
                )
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping malformed feedback row", row=row, error=str(e))
        return scores
