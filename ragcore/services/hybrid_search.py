"""
Hybrid Search
Vector similarity combined with relational filters through the
``hybrid_search`` Postgres function exposed by Supabase.
"""
import asyncio
import json
from typing import Any, Dict, List, Optional

import structlog

from ragcore.models.schemas import SearchFilters, SearchResult
from ragcore.services.resilience import RetryPolicy, call_with_retry

logger = structlog.get_logger()


def row_to_result(row: Dict[str, Any]) -> SearchResult:
    similarity = row.get("similarity") or 0.0
    return SearchResult(
        content=row.get("content") or "",
        document_id=row.get("document_id") or "",
        filename=row.get("filename") or "",
        chunk_index=int(row.get("chunk_index") or 0),
        score=min(max(float(similarity), 0.0), 1.0),
        chunk_type=row.get("chunk_type") or "paragraph",
        section_title=row.get("section_title") or "",
        summary=row.get("summary") or "",
        keywords=list(row.get("keywords") or []),
        hypothetical_questions=list(row.get("hypothetical_questions") or []),
    )


class HybridSearch:
    """Runs the ``hybrid_search`` RPC against the relational chunk store."""

    RPC_NAME = "hybrid_search"

    def __init__(self, supabase: Any, policy: Optional[RetryPolicy] = None):
        self.supabase = supabase
        self.policy = policy or RetryPolicy(timeout=15.0)

    def build_params(
        self,
        query_embedding: List[float],
        owner_id: str,
        limit: int,
        filters: SearchFilters,
    ) -> Dict[str, Any]:
        # Unset filters are sent as null so the SQL function skips them
        return {
            "query_embedding": json.dumps(query_embedding),
            "match_user_id": owner_id,
            "match_count": limit,
            "filter_document_ids": list(filters.document_ids) if filters.document_ids else None,
            "filter_file_type": filters.file_type or None,
            "filter_created_after": filters.created_after or None,
            "filter_created_before": filters.created_before or None,
            "filter_keyword": filters.keyword or None,
        }

    async def search(
        self,
        query_embedding: List[float],
        owner_id: str,
        limit: int,
        filters: SearchFilters,
    ) -> List[SearchResult]:
        params = self.build_params(query_embedding, owner_id, limit, filters)

        async def _rpc():
            return await asyncio.to_thread(
                lambda: self.supabase.rpc(self.RPC_NAME, params).execute()
            )

        response = await call_with_retry(_rpc, self.policy, label="hybrid_search")
        rows = response.data or []
        logger.info("Hybrid search complete", results=len(rows), filters=filters.model_dump(exclude_none=True))
        return [row_to_result(row) for row in rows]
