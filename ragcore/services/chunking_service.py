"""
Chunking Service
Structure-aware chunking: tables and code stay whole, lists split only at item
boundaries, paragraphs merge under their heading up to a token target.
"""
import math
import re
from dataclasses import dataclass, field
from typing import List, Optional

import structlog
from langchain_text_splitters import RecursiveCharacterTextSplitter

from ragcore.config import Settings
from ragcore.models.schemas import (
    ChunkOptions,
    ChunkType,
    PreEnrichmentChunk,
    StructuredDocument,
    StructuredSection,
)

logger = structlog.get_logger()

# Rough estimate without a tokenizer
CHARS_PER_TOKEN = 4
DEFAULT_HEADING = "Introduction"
FALLBACK_SEPARATORS = ["\n\n", "\n", ". ", " ", ""]

_LIST_ITEM_BOUNDARY = re.compile(r"\n(?=[-•*]\s|\d+[.)]\s)")


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN)


@dataclass
class SectionGroup:
    heading: str
    sections: List[StructuredSection] = field(default_factory=list)


def group_by_heading(sections: List[StructuredSection]) -> List[SectionGroup]:
    """Split sections into runs that share the nearest preceding heading."""
    groups: List[SectionGroup] = []
    current = SectionGroup(heading=DEFAULT_HEADING)

    for section in sections:
        if section.type == "heading":
            if current.sections:
                groups.append(current)
            current = SectionGroup(heading=section.content.strip() or DEFAULT_HEADING)
        else:
            current.sections.append(section)

    if current.sections:
        groups.append(current)
    return groups


class ChunkingService:
    """Chunks a StructuredDocument into typed, heading-aware chunks."""

    def __init__(self, options: Optional[ChunkOptions] = None):
        self.options = options or ChunkOptions()

    @classmethod
    def from_settings(cls, settings: Settings) -> "ChunkingService":
        return cls(ChunkOptions(
            target_tokens=settings.chunk_target_tokens,
            max_tokens=settings.chunk_max_tokens,
            overlap_tokens=settings.chunk_overlap_tokens,
        ))

    def chunk_document(
        self,
        document: StructuredDocument,
        options: Optional[ChunkOptions] = None,
    ) -> List[PreEnrichmentChunk]:
        """
        Chunk a parsed document.

        Args:
            document: Ordered sections plus raw text (used for character offsets)
            options: Token budgets; defaults to the service's options

        Returns:
            Chunks in document order with contiguous chunk indices from 0
        """
        opts = options or self.options
        groups = group_by_heading(document.sections)

        logger.info("Starting chunking", sections=len(document.sections), groups=len(groups))

        chunks: List[PreEnrichmentChunk] = []
        for group in groups:
            chunks.extend(self._chunk_group(group, opts, document.raw_content))

        # Indices are global and assigned only once every group is chunked
        for index, chunk in enumerate(chunks):
            chunk.chunk_index = index

        logger.info(
            "Chunking complete",
            chunks=len(chunks),
            by_type=self._count_types(chunks),
        )
        return chunks

    def _chunk_group(
        self,
        group: SectionGroup,
        opts: ChunkOptions,
        raw: str,
    ) -> List[PreEnrichmentChunk]:
        chunks: List[PreEnrichmentChunk] = []
        buffer = ""
        buffer_type: ChunkType = "paragraph"

        def flush():
            nonlocal buffer, buffer_type
            content = buffer.strip()
            if content:
                chunks.append(self._make_chunk(content, buffer_type, group.heading, raw))
            buffer = ""
            buffer_type = "paragraph"

        for section in group.sections:
            tokens = estimate_tokens(section.content)

            if section.type in ("table", "code"):
                flush()
                if tokens > opts.max_tokens:
                    chunks.extend(self._fallback_split(section, group.heading, opts, raw))
                else:
                    chunks.append(self._make_chunk(
                        section.content, section.type, group.heading, raw, section.language
                    ))
                continue

            if section.type == "list":
                flush()
                if tokens <= opts.target_tokens:
                    chunks.append(self._make_chunk(section.content, "list", group.heading, raw))
                else:
                    chunks.extend(self._split_list(section.content, group.heading, opts, raw))
                continue

            # Paragraphs and frontmatter accumulate under the heading
            if tokens > opts.max_tokens:
                flush()
                chunks.extend(self._fallback_split(section, group.heading, opts, raw))
                continue

            if buffer and estimate_tokens(buffer + "\n\n" + section.content) > opts.target_tokens:
                flush()
            if buffer:
                buffer += "\n\n" + section.content
            else:
                buffer = section.content
                buffer_type = section.type

        flush()
        return chunks

    def _split_list(
        self,
        content: str,
        heading: str,
        opts: ChunkOptions,
        raw: str,
    ) -> List[PreEnrichmentChunk]:
        """Greedily pack list items until the next item would pass the target."""
        items = _LIST_ITEM_BOUNDARY.split(content)
        chunks: List[PreEnrichmentChunk] = []
        current: List[str] = []

        for item in items:
            if current and estimate_tokens("\n".join(current + [item])) > opts.target_tokens:
                chunks.append(self._make_chunk("\n".join(current), "list", heading, raw))
                current = [item]
            else:
                current.append(item)

        if current:
            chunks.append(self._make_chunk("\n".join(current), "list", heading, raw))
        return chunks

    def _fallback_split(
        self,
        section: StructuredSection,
        heading: str,
        opts: ChunkOptions,
        raw: str,
    ) -> List[PreEnrichmentChunk]:
        """Recursive character split for a section bigger than the max budget."""
        splitter = RecursiveCharacterTextSplitter(
            chunk_size=opts.max_tokens * CHARS_PER_TOKEN,
            chunk_overlap=opts.overlap_tokens * CHARS_PER_TOKEN,
            separators=FALLBACK_SEPARATORS,
            keep_separator=True,
        )
        pieces = [p for p in splitter.split_text(section.content) if p.strip()]
        logger.debug("Oversized section split", type=section.type, pieces=len(pieces))
        return [
            self._make_chunk(piece, section.type, heading, raw, section.language)
            for piece in pieces
        ]

    def _make_chunk(
        self,
        content: str,
        chunk_type: ChunkType,
        heading: str,
        raw: str,
        language: Optional[str] = None,
    ) -> PreEnrichmentChunk:
        start = raw.find(content)
        metadata = {
            "start_char": start if start >= 0 else 0,
            "end_char": start + len(content) if start >= 0 else len(content),
        }
        if language:
            metadata["language"] = language
        return PreEnrichmentChunk(
            content=content,
            chunk_type=chunk_type,
            section_title=heading,
            metadata=metadata,
        )

    def _count_types(self, chunks: List[PreEnrichmentChunk]) -> dict:
        """Count chunks by type for logging."""
        counts = {}
        for chunk in chunks:
            counts[chunk.chunk_type] = counts.get(chunk.chunk_type, 0) + 1
        return counts
