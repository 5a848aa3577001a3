"""
Data models for the RAG pipeline.
"""
from dataclasses import dataclass, field
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Literal, Optional, Tuple, Union

ChunkType = Literal["paragraph", "heading", "code", "table", "list", "frontmatter"]
QueryCategory = Literal["simple", "complex", "conversational"]
Strategy = Literal["parallel", "sequential"]
EmbeddingMode = Literal["document", "query"]

# (document_id, chunk_index)
ChunkKey = Tuple[str, int]


# ─────────────────────────────────────────────────────────────
# Conversation
# ─────────────────────────────────────────────────────────────

class ChatMessage(BaseModel):
    """A single role-tagged conversation turn."""
    role: Literal["user", "assistant"]
    content: str


# ─────────────────────────────────────────────────────────────
# Documents and chunks
# ─────────────────────────────────────────────────────────────

class StructuredSection(BaseModel):
    """One structural element of a parsed document."""
    type: ChunkType
    content: str
    level: Optional[int] = None  # heading depth, 1-6
    language: Optional[str] = None  # code blocks only
    parent_heading: Optional[str] = None
    position: int = 0


class StructuredDocument(BaseModel):
    """Ordered sections plus the raw text they were read from."""
    sections: List[StructuredSection]
    metadata: Dict[str, Any] = Field(default_factory=dict)
    raw_content: str = ""


class ChunkOptions(BaseModel):
    """Token budgets for the structure-aware chunker."""
    target_tokens: int = 400
    max_tokens: int = 1024
    overlap_tokens: int = 50


class PreEnrichmentChunk(BaseModel):
    """Chunk produced by the chunker, before LLM enrichment."""
    content: str
    chunk_index: int = 0
    chunk_type: ChunkType = "paragraph"
    section_title: str = ""
    metadata: Dict[str, Any] = Field(default_factory=dict)  # start_char, end_char, language


class EnrichedChunk(PreEnrichmentChunk):
    """Chunk with LLM-generated summary, keywords and hypothetical questions."""
    summary: str = ""
    keywords: List[str] = Field(default_factory=list)
    hypothetical_questions: List[str] = Field(default_factory=list)


# ─────────────────────────────────────────────────────────────
# Retrieval
# ─────────────────────────────────────────────────────────────

class SearchFilters(BaseModel):
    """Structured predicates that switch retrieval to hybrid search."""
    document_ids: Optional[List[str]] = None
    file_type: Optional[str] = None
    created_after: Optional[str] = None  # ISO date
    created_before: Optional[str] = None
    keyword: Optional[str] = None

    def is_active(self) -> bool:
        return bool(
            self.document_ids
            or self.file_type
            or self.created_after
            or self.created_before
            or self.keyword
        )


class SearchResult(BaseModel):
    """Model for search results returned from vector or hybrid search."""
    content: str
    document_id: str
    filename: str = ""
    chunk_index: int
    score: float = Field(default=0.0, ge=0.0, le=1.0)
    chunk_type: ChunkType = "paragraph"
    section_title: str = ""
    summary: str = ""
    keywords: List[str] = Field(default_factory=list)
    hypothetical_questions: List[str] = Field(default_factory=list)
    sub_query: Optional[str] = None

    @property
    def key(self) -> ChunkKey:
        return (self.document_id, self.chunk_index)


class VectorMatch(BaseModel):
    """Raw nearest-neighbor hit from the vector store."""
    chunk_id: str
    score: float
    properties: Dict[str, Any] = Field(default_factory=dict)


class FeedbackScore(BaseModel):
    """Aggregated thumbs up/down signal for one chunk."""
    document_id: str
    chunk_index: int
    normalized_score: float = Field(default=0.0, ge=-1.0, le=1.0)
    total_count: int = 0


class RerankOutcome(BaseModel):
    results: List[SearchResult]
    reranked: bool


# ─────────────────────────────────────────────────────────────
# Reasoning
# ─────────────────────────────────────────────────────────────

class ClassificationResult(BaseModel):
    category: QueryCategory
    reasoning: str = ""
    suggested_approach: str = ""


class DecompositionResult(BaseModel):
    sub_queries: List[str] = Field(min_length=1, max_length=4)
    strategy: Strategy = "parallel"
    synthesis_instruction: str = ""


@dataclass(frozen=True)
class ConversationalRoute:
    """No retrieval; answer from the conversation alone."""
    classification: ClassificationResult


@dataclass(frozen=True)
class SimpleRoute:
    """One retrieval call with the original query."""
    classification: ClassificationResult


@dataclass(frozen=True)
class ComplexRoute:
    """Decomposed query, executed per its strategy."""
    classification: ClassificationResult
    sub_queries: Tuple[str, ...] = field(default_factory=tuple)
    strategy: Strategy = "parallel"
    synthesis_instruction: str = ""


Route = Union[ConversationalRoute, SimpleRoute, ComplexRoute]


class RAGContext(BaseModel):
    """One entry of the bounded context handed to generation."""
    content: str
    document_id: str
    filename: str
    chunk_index: int
    score: float
    section_title: str = ""
    summary: str = ""
    chunk_type: ChunkType = "paragraph"
    sub_query: Optional[str] = None


class OrchestrationMetadata(BaseModel):
    query_category: QueryCategory
    reasoning: str = ""
    sub_queries: Optional[List[str]] = None
    strategy: Optional[Strategy] = None
    total_chunks_retrieved: int = 0
    tools_used: List[str] = Field(default_factory=list)
    reasoning_time_ms: int = 0


class OrchestrationResult(BaseModel):
    contexts: List[RAGContext]
    system_prompt: str
    metadata: OrchestrationMetadata


# ─────────────────────────────────────────────────────────────
# Generation, evaluation and limits
# ─────────────────────────────────────────────────────────────

class StreamEvent(BaseModel):
    """One event of a streamed answer: token, done or error."""
    type: Literal["token", "done", "error"]
    content: str = ""
    error: Optional[str] = None


class CheckResult(BaseModel):
    score: float = Field(ge=0.0, le=1.0)
    issues: List[str] = Field(default_factory=list)


class EvaluationResult(BaseModel):
    faithfulness: CheckResult
    relevance: CheckResult
    completeness: CheckResult
    overall: float


class RateLimitResult(BaseModel):
    allowed: bool
    limit: int
    remaining: int
    reset_timestamp: int  # epoch milliseconds
