"""
Unit Tests for the Structure-Aware Chunker

Tests heading grouping, atomic tables and code, list splitting,
paragraph merging and the oversized-section fallback.
"""
import pytest

from ragcore.models.schemas import ChunkOptions, StructuredDocument, StructuredSection
from ragcore.services.chunking_service import (
    DEFAULT_HEADING,
    ChunkingService,
    estimate_tokens,
    group_by_heading,
)


def section(section_type, content, position=0, **extra):
    return StructuredSection(type=section_type, content=content, position=position, **extra)


def document(*sections):
    ordered = [s.model_copy(update={"position": i}) for i, s in enumerate(sections)]
    return StructuredDocument(
        sections=ordered,
        raw_content="\n\n".join(s.content for s in ordered),
    )


class TestGrouping:
    """Unit tests for heading grouping and token estimation."""

    def test_estimate_tokens_rounds_up(self):
        """
        Expected: ceil(chars / 4)
        """
        assert estimate_tokens("") == 0
        assert estimate_tokens("abcd") == 1
        assert estimate_tokens("abcde") == 2

    def test_sections_before_first_heading_use_default(self):
        """
        Expected: Leading paragraphs are grouped under "Introduction"
        """
        groups = group_by_heading([
            section("paragraph", "Preamble."),
            section("heading", "Setup", level=1),
            section("paragraph", "Install it."),
        ])

        assert [g.heading for g in groups] == [DEFAULT_HEADING, "Setup"]
        assert groups[1].sections[0].content == "Install it."

    def test_heading_without_body_produces_no_group(self):
        """
        Expected: Consecutive headings only keep the one with content
        """
        groups = group_by_heading([
            section("heading", "Empty"),
            section("heading", "Filled"),
            section("paragraph", "Body."),
        ])

        assert [g.heading for g in groups] == ["Filled"]


class TestChunkDocument:
    """Unit tests for ChunkingService.chunk_document."""

    # ═══════════════════════════════════════════════════════════════
    # PARAGRAPHS
    # ═══════════════════════════════════════════════════════════════

    def test_small_paragraphs_merge_under_heading(self):
        """
        Expected:
        - Short paragraphs under one heading become a single chunk
        - section_title is the heading text
        """
        chunks = ChunkingService().chunk_document(document(
            section("heading", "Overview", level=1),
            section("paragraph", "First paragraph."),
            section("paragraph", "Second paragraph."),
        ))

        assert len(chunks) == 1
        assert chunks[0].content == "First paragraph.\n\nSecond paragraph."
        assert chunks[0].section_title == "Overview"
        assert chunks[0].chunk_type == "paragraph"

    def test_paragraphs_split_at_target(self):
        """
        Expected: Adding a paragraph that would pass the target flushes the buffer
        """
        options = ChunkOptions(target_tokens=10, max_tokens=100, overlap_tokens=0)
        chunks = ChunkingService(options).chunk_document(document(
            section("paragraph", "a" * 32),
            section("paragraph", "b" * 32),
        ))

        assert [c.content for c in chunks] == ["a" * 32, "b" * 32]

    def test_headings_never_share_a_chunk(self):
        """
        Expected: Paragraphs under different headings stay in separate chunks
        """
        chunks = ChunkingService().chunk_document(document(
            section("heading", "One"),
            section("paragraph", "Alpha."),
            section("heading", "Two"),
            section("paragraph", "Beta."),
        ))

        assert [(c.section_title, c.content) for c in chunks] == [("One", "Alpha."), ("Two", "Beta.")]

    def test_oversized_paragraph_uses_fallback_split(self):
        """
        Expected:
        - A paragraph over max_tokens is split into several chunks
        - No piece exceeds max_tokens * 4 characters
        """
        options = ChunkOptions(target_tokens=10, max_tokens=20, overlap_tokens=0)
        text = " ".join(["word"] * 100)

        chunks = ChunkingService(options).chunk_document(document(section("paragraph", text)))

        assert len(chunks) > 1
        assert all(len(c.content) <= 80 for c in chunks)
        assert all(c.chunk_type == "paragraph" for c in chunks)

    # ═══════════════════════════════════════════════════════════════
    # TABLES, CODE AND LISTS
    # ═══════════════════════════════════════════════════════════════

    def test_table_is_atomic_and_flushes_buffer(self):
        """
        Expected:
        - Paragraph before the table is its own chunk
        - Table is one chunk of type table
        """
        table = "| a | b |\n|---|---|\n| 1 | 2 |"
        chunks = ChunkingService().chunk_document(document(
            section("paragraph", "Intro text."),
            section("table", table),
            section("paragraph", "Outro text."),
        ))

        assert [c.chunk_type for c in chunks] == ["paragraph", "table", "paragraph"]
        assert chunks[1].content == table

    def test_code_keeps_language_metadata(self):
        """
        Expected: Code chunk carries its language in metadata
        """
        chunks = ChunkingService().chunk_document(document(
            section("code", "print('hi')", language="python"),
        ))

        assert chunks[0].chunk_type == "code"
        assert chunks[0].metadata["language"] == "python"

    def test_oversized_code_is_split(self):
        """
        Expected: Code larger than max_tokens is split, keeping type code
        """
        options = ChunkOptions(target_tokens=10, max_tokens=20, overlap_tokens=0)
        code = "\n".join(f"line_{i} = {i}" for i in range(40))

        chunks = ChunkingService(options).chunk_document(document(section("code", code)))

        assert len(chunks) > 1
        assert {c.chunk_type for c in chunks} == {"code"}

    def test_small_list_stays_whole(self):
        """
        Expected: A list under the target is one list chunk
        """
        chunks = ChunkingService().chunk_document(document(
            section("list", "- one\n- two\n- three"),
        ))

        assert len(chunks) == 1
        assert chunks[0].chunk_type == "list"

    def test_long_list_splits_only_at_item_boundaries(self):
        """
        Expected:
        - List over the target is split into several list chunks
        - Every chunk starts at an item marker
        """
        options = ChunkOptions(target_tokens=10, max_tokens=100, overlap_tokens=0)
        items = "\n".join(f"- item number {i}" for i in range(8))

        chunks = ChunkingService(options).chunk_document(document(section("list", items)))

        assert len(chunks) > 1
        assert all(c.chunk_type == "list" for c in chunks)
        assert all(c.content.startswith("- item number") for c in chunks)
        rejoined = "\n".join(c.content for c in chunks)
        assert rejoined == items

    # ═══════════════════════════════════════════════════════════════
    # INDICES AND OFFSETS
    # ═══════════════════════════════════════════════════════════════

    def test_chunk_indices_are_contiguous(self):
        """
        Expected: chunk_index runs 0..n-1 across all groups
        """
        chunks = ChunkingService().chunk_document(document(
            section("heading", "A"),
            section("paragraph", "One."),
            section("table", "| x |"),
            section("heading", "B"),
            section("list", "- a\n- b"),
        ))

        assert [c.chunk_index for c in chunks] == list(range(len(chunks)))

    def test_character_offsets_point_into_raw_content(self):
        """
        Expected: raw_content[start_char:end_char] is the chunk content
        """
        doc = document(
            section("paragraph", "Leading."),
            section("table", "| unique table |"),
        )
        chunks = ChunkingService().chunk_document(doc)
        table = chunks[1]

        start, end = table.metadata["start_char"], table.metadata["end_char"]
        assert doc.raw_content[start:end] == table.content

    def test_empty_document_yields_no_chunks(self):
        """
        Expected: []
        """
        assert ChunkingService().chunk_document(StructuredDocument(sections=[])) == []

    def test_per_call_options_override_defaults(self):
        """
        Expected: Options passed to chunk_document win over the service's
        """
        service = ChunkingService(ChunkOptions(target_tokens=1000, max_tokens=2000))
        doc = document(section("paragraph", "a" * 32), section("paragraph", "b" * 32))

        assert len(service.chunk_document(doc)) == 1
        assert len(service.chunk_document(doc, ChunkOptions(target_tokens=10, max_tokens=100))) == 2

    def test_chunking_is_deterministic(self):
        """
        Expected: Chunking the same document twice yields identical chunks
        """
        doc = document(
            section("heading", "Setup", level=1),
            section("paragraph", "Install the tool. " * 40),
            section("code", "print('hi')", language="python"),
            section("list", "- one\n- two"),
        )
        service = ChunkingService()

        assert service.chunk_document(doc) == service.chunk_document(doc)
