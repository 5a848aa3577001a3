"""
Vector Store Service
Manages chunk vectors in Pinecone, one namespace per owner.
"""
import asyncio
from typing import Any, Dict, List, Optional

import structlog
from pinecone import Pinecone

from ragcore.config import Settings
from ragcore.errors import ConfigurationError
from ragcore.models.schemas import EnrichedChunk, SearchFilters, SearchResult, VectorMatch
from ragcore.services.resilience import RetryPolicy, call_with_retry

logger = structlog.get_logger()

# Pinecone caps metadata at 40KB per vector
MAX_STORED_CONTENT = 8000
UPSERT_BATCH_SIZE = 100


def vector_id(document_id: str, chunk_index: int) -> str:
    return f"{document_id}:{chunk_index}"


def match_to_result(match: VectorMatch) -> SearchResult:
    """Map a raw match onto a SearchResult, clamping similarity into [0, 1]."""
    props = match.properties
    return SearchResult(
        content=props.get("content", ""),
        document_id=props.get("document_id", ""),
        filename=props.get("filename", ""),
        chunk_index=int(props.get("chunk_index", 0)),
        score=min(max(float(match.score), 0.0), 1.0),
        chunk_type=props.get("chunk_type") or "paragraph",
        section_title=props.get("section_title", ""),
        summary=props.get("summary", ""),
        keywords=list(props.get("keywords") or []),
        hypothetical_questions=list(props.get("hypothetical_questions") or []),
    )


class VectorStore:
    """Manages Pinecone vector storage with per-user namespaces."""

    def __init__(self, index: Any, policy: Optional[RetryPolicy] = None):
        self.index = index
        self.policy = policy or RetryPolicy(timeout=15.0)

    @classmethod
    def from_settings(cls, settings: Settings) -> "VectorStore":
        if not settings.pinecone_api_key:
            raise ConfigurationError("PINECONE_API_KEY is not set")
        pc = Pinecone(api_key=settings.pinecone_api_key)
        logger.info("Vector store initialized", index=settings.pinecone_index)
        return cls(
            index=pc.Index(settings.pinecone_index),
            policy=RetryPolicy.from_settings(settings, settings.vector_search_timeout_seconds),
        )

    def _get_namespace(self, user_id: str) -> str:
        """Generate namespace for a user."""
        return f"user_{user_id}"

    def _metadata_filter(self, filters: Optional[SearchFilters]) -> Optional[Dict[str, Any]]:
        """Translate the filters Pinecone metadata can express."""
        if filters is None:
            return None
        clauses: Dict[str, Any] = {}
        if filters.document_ids:
            clauses["document_id"] = {"$in": list(filters.document_ids)}
        if filters.file_type:
            clauses["file_type"] = {"$eq": filters.file_type}
        return clauses or None

    async def upsert_chunks(
        self,
        chunks: List[EnrichedChunk],
        embeddings: List[List[float]],
        user_id: str,
        document_id: str,
        filename: str,
        file_type: str = "",
    ) -> int:
        """
        Store chunk vectors with their enrichment metadata.

        Args:
            chunks: Enriched chunks, in document order
            embeddings: Corresponding embedding vectors
            user_id: Owner of the document
            document_id: Document UUID
            filename: Original filename
            file_type: File extension, used by metadata filters

        Returns:
            Number of vectors upserted
        """
        if len(chunks) != len(embeddings):
            raise ValueError(f"{len(chunks)} chunks but {len(embeddings)} embeddings")

        namespace = self._get_namespace(user_id)
        logger.info("Upserting vectors", namespace=namespace, count=len(chunks))

        vectors = []
        for chunk, embedding in zip(chunks, embeddings):
            content = chunk.content
            if len(content) > MAX_STORED_CONTENT:
                content = content[:MAX_STORED_CONTENT] + "..."
            vectors.append({
                "id": vector_id(document_id, chunk.chunk_index),
                "values": embedding,
                "metadata": {
                    "user_id": user_id,
                    "document_id": document_id,
                    "filename": filename,
                    "file_type": file_type,
                    "chunk_index": chunk.chunk_index,
                    "chunk_type": chunk.chunk_type,
                    "section_title": chunk.section_title,
                    "summary": chunk.summary,
                    "keywords": chunk.keywords,
                    "hypothetical_questions": chunk.hypothetical_questions,
                    "content": content,
                },
            })

        total_upserted = 0
        for i in range(0, len(vectors), UPSERT_BATCH_SIZE):
            batch = vectors[i:i + UPSERT_BATCH_SIZE]

            async def _upsert(batch=batch):
                return await asyncio.to_thread(self.index.upsert, vectors=batch, namespace=namespace)

            await call_with_retry(_upsert, self.policy, label="vector_store.upsert")
            total_upserted += len(batch)
            logger.info("Batch upserted", batch_num=i // UPSERT_BATCH_SIZE + 1, count=len(batch))

        logger.info("Vectors upserted successfully", total=total_upserted, namespace=namespace)
        return total_upserted

    async def nearest_neighbors(
        self,
        query_vector: List[float],
        owner_id: str,
        limit: int,
        filters: Optional[SearchFilters] = None,
    ) -> List[VectorMatch]:
        """Return the ``limit`` nearest chunks in the owner's namespace."""
        namespace = self._get_namespace(owner_id)
        metadata_filter = self._metadata_filter(filters)

        async def _query():
            return await asyncio.to_thread(
                self.index.query,
                namespace=namespace,
                vector=query_vector,
                filter=metadata_filter,
                top_k=limit,
                include_metadata=True,
            )

        response = await call_with_retry(_query, self.policy, label="vector_store.query")
        matches = [
            VectorMatch(chunk_id=match.id, score=match.score or 0.0, properties=match.metadata or {})
            for match in response.matches
        ]
        logger.info("Query complete", namespace=namespace, results=len(matches))
        return matches

    async def search(
        self,
        query_vector: List[float],
        owner_id: str,
        limit: int,
        filters: Optional[SearchFilters] = None,
    ) -> List[SearchResult]:
        matches = await self.nearest_neighbors(query_vector, owner_id, limit, filters)
        return [match_to_result(m) for m in matches]

    async def delete_document_vectors(self, user_id: str, document_id: str) -> bool:
        """
        Delete all vectors for a specific document.

        Args:
            user_id: Owner of the document
            document_id: Document UUID to delete

        Returns:
            True if successful
        """
        namespace = self._get_namespace(user_id)
        logger.info("Deleting document vectors", namespace=namespace, document_id=document_id)

        async def _delete():
            return await asyncio.to_thread(
                self.index.delete,
                namespace=namespace,
                filter={"document_id": {"$eq": document_id}},
            )

        await call_with_retry(_delete, self.policy, label="vector_store.delete")
        return True
