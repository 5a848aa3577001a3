"""
Document Parser Service
Parses documents with unstructured.io and maps the elements onto typed
StructuredSections for the chunker.
"""
import asyncio
import re
from typing import Any, Dict, List, Optional, Tuple

import structlog
from unstructured.documents.elements import (
    CodeSnippet,
    Element,
    Footer,
    Header,
    ListItem,
    PageBreak,
    PageNumber,
    Table,
    Title,
)
from unstructured.partition.auto import partition
from unstructured.partition.md import partition_md

from ragcore.models.schemas import StructuredDocument, StructuredSection

logger = structlog.get_logger()

MARKDOWN_TYPES = ("md", "markdown")
_FRONTMATTER = re.compile(r"\A---\s*\n(.*?)\n---\s*(?:\n|\Z)", re.DOTALL)
_SKIPPED = (Header, Footer, PageBreak, PageNumber)


def split_frontmatter(text: str) -> Tuple[Optional[str], Dict[str, str], str]:
    """
    Separate a leading ``---`` YAML-style block from a Markdown body.

    Returns:
        (frontmatter text or None, flat key/value metadata, body)
    """
    match = _FRONTMATTER.match(text)
    if not match:
        return None, {}, text

    block = match.group(1).strip()
    metadata = {}
    for line in block.splitlines():
        key, sep, value = line.partition(":")
        if sep and key.strip():
            metadata[key.strip()] = value.strip().strip("\"'")
    return block or None, metadata, text[match.end():]


def _element_text(element: Element) -> str:
    if hasattr(element, "text"):
        return str(element.text).strip()
    return str(element).strip()


def _heading_level(element: Element) -> int:
    depth = getattr(getattr(element, "metadata", None), "category_depth", None)
    return depth + 1 if isinstance(depth, int) and depth >= 0 else 1


def elements_to_document(
    elements: List[Element],
    frontmatter: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> StructuredDocument:
    """
    Map unstructured elements onto ordered sections.

    Consecutive list items become one list section. Page furniture
    (headers, footers, page numbers and breaks) is dropped.
    """
    sections: List[StructuredSection] = []
    current_heading: Optional[str] = None
    pending_items: List[str] = []

    def add(section_type: str, content: str, **extra) -> None:
        sections.append(StructuredSection(
            type=section_type,
            content=content,
            parent_heading=current_heading,
            position=len(sections),
            **extra,
        ))

    def flush_list() -> None:
        if pending_items:
            add("list", "\n".join(f"- {item}" for item in pending_items))
            pending_items.clear()

    if frontmatter:
        add("frontmatter", frontmatter)

    for element in elements:
        if isinstance(element, _SKIPPED):
            continue
        text = _element_text(element)
        if not text:
            continue

        if isinstance(element, ListItem):
            pending_items.append(text)
            continue
        flush_list()

        if isinstance(element, Title):
            add("heading", text, level=_heading_level(element))
            current_heading = text
        elif isinstance(element, Table):
            add("table", text)
        elif isinstance(element, CodeSnippet):
            add("code", text)
        else:
            add("paragraph", text)

    flush_list()

    return StructuredDocument(
        sections=sections,
        metadata=metadata or {},
        raw_content="\n\n".join(s.content for s in sections),
    )


class DocumentParser:
    """Parses documents using unstructured.io."""

    async def parse(self, file_path: str, file_type: Optional[str] = None) -> StructuredDocument:
        """
        Parse a document into a StructuredDocument.

        Args:
            file_path: Path to the document
            file_type: Optional file type hint (pdf, docx, md, ...)

        Returns:
            StructuredDocument with typed sections
        """
        logger.info("Parsing document", path=file_path, file_type=file_type)

        if file_type in MARKDOWN_TYPES:
            return await asyncio.to_thread(self._parse_markdown, file_path)

        elements = await asyncio.to_thread(self._partition, file_path, file_type)
        document = elements_to_document(elements, metadata={"file_type": file_type})
        self._log_result(document)
        return document

    def _parse_markdown(self, file_path: str) -> StructuredDocument:
        with open(file_path, encoding="utf-8") as f:
            text = f.read()
        frontmatter, metadata, body = split_frontmatter(text)
        elements = partition_md(text=body)
        document = elements_to_document(elements, frontmatter=frontmatter, metadata=metadata)
        self._log_result(document)
        return document

    def _partition(self, file_path: str, file_type: Optional[str]) -> List[Element]:
        kwargs = {"filename": file_path, "strategy": "auto"}
        if file_type == "pdf":
            kwargs["infer_table_structure"] = True

        try:
            return partition(**kwargs)
        except Exception as parse_error:
            logger.warning(
                "Primary parsing strategy failed, falling back to 'fast'",
                error=str(parse_error),
                path=file_path
            )
            kwargs["strategy"] = "fast"
            kwargs.pop("infer_table_structure", None)
            return partition(**kwargs)

    def _log_result(self, document: StructuredDocument) -> None:
        counts = {}
        for section in document.sections:
            counts[section.type] = counts.get(section.type, 0) + 1
        logger.info("Document parsed successfully", sections=len(document.sections), section_types=counts)
