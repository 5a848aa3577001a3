"""
Ingestion Pipeline
parse -> chunk -> enrich -> embed -> store, with stage logging.
"""
import structlog

from ragcore.services.chunking_service import ChunkingService
from ragcore.services.document_parser import DocumentParser
from ragcore.services.embedding_service import EmbeddingService
from ragcore.services.enrichment_service import EnrichmentService
from ragcore.services.vector_store import VectorStore

logger = structlog.get_logger()


class IngestionPipeline:

    def __init__(
        self,
        parser: DocumentParser,
        chunker: ChunkingService,
        enricher: EnrichmentService,
        embeddings: EmbeddingService,
        vector_store: VectorStore,
        skip_enrichment: bool = False,
    ):
        self.parser = parser
        self.chunker = chunker
        self.enricher = enricher
        self.embeddings = embeddings
        self.vector_store = vector_store
        self.skip_enrichment = skip_enrichment

    async def run(
        self,
        file_path: str,
        user_id: str,
        document_id: str,
        filename: str,
        file_type: str = "",
    ) -> int:
        """
        Ingest one local file and return the number of chunks stored.

        Raises:
            ValueError: The document produced no chunks
        """
        logger.info("Stage: Parsing document", filename=filename, file_type=file_type)
        document = await self.parser.parse(file_path, file_type or None)

        logger.info("Stage: Chunking document into structural sections...")
        chunks = self.chunker.chunk_document(document)
        if not chunks:
            raise ValueError("No chunks extracted from document")

        logger.info("Stage: Enriching chunks", count=len(chunks), skipped=self.skip_enrichment)
        enriched = await self.enricher.enrich(chunks, filename, skip=self.skip_enrichment)

        logger.info("Stage: Generating vector embeddings", count=len(enriched))
        embeddings = await self.embeddings.embed_chunks(enriched)

        logger.info("Stage: Storing vectors")
        # Re-ingesting replaces earlier vectors, including indices that no longer exist
        await self.vector_store.delete_document_vectors(user_id, document_id)
        stored = await self.vector_store.upsert_chunks(
            chunks=enriched,
            embeddings=embeddings,
            user_id=user_id,
            document_id=document_id,
            filename=filename,
            file_type=file_type,
        )

        logger.info("Stage: Ingestion complete", document_id=document_id, chunks=stored)
        return stored
