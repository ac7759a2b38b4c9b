"""
Citation parsing for generated answers.
Maps inline [Citation N] markers back to the context items they reference
and renumbers them in order of first appearance.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional

from rag_tenant_qa.generator import ContextItem

logger = logging.getLogger(__name__)

# Matches both [Citation N] and bare [N]
CITATION_PATTERN = re.compile(r"\[Citation\s*(\d+)\]|\[(\d+)\]", re.I)

DEFAULT_MARKER_FORMAT = "[Citation {id}]"
DEFAULT_SNIPPET_LENGTH = 300


@dataclass
class Citation:
    """A source reference attached to an answer."""
    id: int
    context_index: int
    document_id: str
    document_title: str
    snippet: str
    confidence: float
    chunk_id: Optional[str] = None
    chunk_index: Optional[int] = None
    source: str = "chunk"
    document_source: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "context_index": self.context_index,
            "chunk_id": self.chunk_id,
            "document_id": self.document_id,
            "document_title": self.document_title,
            "snippet": self.snippet,
            "chunk_index": self.chunk_index,
            "confidence": self.confidence,
            "source": self.source,
            "document_source": self.document_source,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Citation":
        return cls(
            id=int(data["id"]),
            context_index=int(data.get("context_index", data["id"])),
            document_id=data["document_id"],
            document_title=data.get("document_title", ""),
            snippet=data.get("snippet", ""),
            confidence=float(data.get("confidence", 0.0)),
            chunk_id=data.get("chunk_id"),
            chunk_index=data.get("chunk_index"),
            source=data.get("source", "chunk"),
            document_source=data.get("document_source"),
        )


@dataclass
class ParsedAnswer:
    """Answer text with markers rewritten, plus the citations they refer to."""
    text: str
    citations: List[Citation] = field(default_factory=list)
    # context index written by the model -> display id
    mapping: Dict[int, int] = field(default_factory=dict)


@dataclass
class CitationReport:
    is_valid: bool
    has_citations: bool
    invalid_citations: List[int]
    unused_items: List[int]


def make_snippet(text: str, max_length: int = DEFAULT_SNIPPET_LENGTH) -> str:
    """Bound text to max_length characters, cutting at a word boundary when possible."""
    text = " ".join(text.split())
    if len(text) <= max_length:
        return text
    cut = text[:max_length]
    last_space = cut.rfind(" ")
    if last_space > max_length * 0.8:
        cut = cut[:last_space]
    return cut.rstrip() + "..."


def _marker_number(match: re.Match) -> int:
    return int(match.group(1) or match.group(2))


def _is_explicit(match: re.Match) -> bool:
    return match.group(1) is not None


def parse(answer_text: str,
          context_items: List[ContextItem],
          marker_format: str = DEFAULT_MARKER_FORMAT,
          snippet_length: int = DEFAULT_SNIPPET_LENGTH) -> ParsedAnswer:
    """
    Resolve citation markers against the numbered context items.

    Distinct in-range numbers get display ids 1..n in order of first
    appearance and are rewritten with marker_format. Out-of-range
    [Citation N] markers are removed from the text; bare [N] outside the
    range is left as written.
    """
    mapping: Dict[int, int] = {}
    citations: List[Citation] = []

    for match in CITATION_PATTERN.finditer(answer_text):
        number = _marker_number(match)
        if number in mapping or not 1 <= number <= len(context_items):
            continue
        display_id = len(mapping) + 1
        mapping[number] = display_id

        item = context_items[number - 1]
        citations.append(Citation(
            id=display_id,
            context_index=number,
            document_id=item.document_id,
            document_title=item.document_title,
            snippet=make_snippet(item.text, snippet_length),
            confidence=item.confidence,
            chunk_id=item.chunk_id,
            chunk_index=item.chunk_index,
            source=item.kind,
            document_source=item.source,
        ))

    dropped = []

    def rewrite(match: re.Match) -> str:
        number = _marker_number(match)
        if number in mapping:
            return marker_format.format(id=mapping[number])
        if not _is_explicit(match):
            # Bare [N] outside the context range is ordinary text, e.g. a year
            return match.group(0)
        dropped.append(number)
        return ""

    text = CITATION_PATTERN.sub(rewrite, answer_text)
    if dropped:
        # Tidy the gaps left by removed markers
        text = re.sub(r"[ \t]+([.,;:!?])", r"\1", text)
        text = re.sub(r"[ \t]{2,}", " ", text).strip()
        logger.debug(f"Dropped out-of-range citation markers: {sorted(set(dropped))}")

    return ParsedAnswer(text=text, citations=citations, mapping=mapping)


def validate(answer_text: str, context_items: List[ContextItem]) -> CitationReport:
    """Report invalid marker numbers and context items that were never cited."""
    used = set()
    invalid = []
    for match in CITATION_PATTERN.finditer(answer_text):
        number = _marker_number(match)
        if 1 <= number <= len(context_items):
            used.add(number)
        elif _is_explicit(match):
            invalid.append(number)

    unused = [n for n in range(1, len(context_items) + 1) if n not in used]
    return CitationReport(
        is_valid=not invalid,
        has_citations=bool(used),
        invalid_citations=invalid,
        unused_items=unused,
    )


def format_sources_section(citations: List[Citation]) -> str:
    """Render a numbered Sources list with one line per cited document."""
    if not citations:
        return ""

    documents: Dict[str, Citation] = {}
    for citation in citations:
        documents.setdefault(citation.document_id, citation)

    lines = ["**Sources:**"]
    for number, citation in enumerate(documents.values(), start=1):
        suffix = f" ({citation.document_source})" if citation.document_source else ""
        lines.append(f"{number}. {citation.document_title}{suffix}")
    return "\n".join(lines)
