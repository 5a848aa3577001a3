"""
Analytics
Records answered queries and which chunks they used. Best-effort: failures
are logged and swallowed so tracking never affects an answer.
"""
import asyncio
from typing import Any, List, Optional

import structlog

from ragcore.models.schemas import RAGContext

logger = structlog.get_logger()


class AnalyticsTracker:

    QUERIES_TABLE = "analytics_queries"
    USAGE_TABLE = "analytics_document_usage"

    def __init__(self, supabase: Any):
        self.supabase = supabase

    async def track_query(
        self,
        user_id: str,
        query: str,
        model: str,
        embedding_provider: str,
        response_time_ms: int,
        sources: List[RAGContext],
        session_id: Optional[str] = None,
    ) -> None:
        try:
            await asyncio.to_thread(
                self._insert, user_id, query, model, embedding_provider,
                response_time_ms, sources, session_id,
            )
        except Exception as e:
            logger.error("Analytics tracking failed", error=str(e))

    def _insert(self, user_id, query, model, embedding_provider, response_time_ms, sources, session_id):
        result = self.supabase.table(self.QUERIES_TABLE).insert({
            "user_id": user_id,
            "session_id": session_id,
            "query_text": query[:500],
            "model": model,
            "embedding_provider": embedding_provider,
            "response_time_ms": response_time_ms,
            "sources_count": len(sources),
        }).execute()

        if not sources or not result.data:
            return

        query_id = result.data[0]["id"]
        self.supabase.table(self.USAGE_TABLE).insert([
            {
                "user_id": user_id,
                "document_id": source.document_id,
                "query_id": query_id,
                "chunk_index": source.chunk_index,
                "relevance_score": source.score,
            }
            for source in sources
        ]).execute()
        logger.debug("Query tracked", query_id=query_id, sources=len(sources))
