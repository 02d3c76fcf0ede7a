"""
Citation Parser Service

Finds citation markers in generated answers and splits the answer into
cited and uncited spans for rendering.
"""
from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

logger = logging.getLogger(__name__)

MAX_PARSING_TIME_MS = 100

_DOC_NUMBERED = re.compile(r"\[Document\s+(\d+)\]", re.IGNORECASE)
_DOC_LINKED = re.compile(r"\[Document\s+([^\]]+)\]\(document://([^)]+)\)", re.IGNORECASE)
_DOC_NAMED = re.compile(r"\[Document\s+([^\]]+)\](?!\()", re.IGNORECASE)
_WEB_NUMBERED = re.compile(r"\[Web\s+Source\s+(\d+)\]\(([^)]+)\)", re.IGNORECASE)
_MARKDOWN_LINK = re.compile(r"\[([^\]]+)\]\((https?://[^)]+)\)", re.IGNORECASE)
_REF_NUMBERED = re.compile(r"\[(\d+)\](?!\()")
_REF_LABELLED = re.compile(r"\[(?:Source|Ref|Reference)\s+(\d+)\](?!\()", re.IGNORECASE)
_WEB_LABEL = re.compile(r"^Web\s+Source\s+\d+$", re.IGNORECASE)


@dataclass
class ParsedCitation:
    type: str  # document | web | reference
    format: str
    start: int
    end: int
    index: Optional[int] = None
    name: Optional[str] = None
    url: Optional[str] = None
    document_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "type": self.type,
            "format": self.format,
            "position": {"start": self.start, "end": self.end},
        }
        for name in ("index", "name", "url", "document_id"):
            value = getattr(self, name)
            if value is not None:
                data[name] = value
        return data


@dataclass
class CitationParseResult:
    citations: List[ParsedCitation] = field(default_factory=list)
    text_without_citations: str = ""
    parsing_time_ms: float = 0.0

    @property
    def citation_count(self) -> int:
        return len(self.citations)

    def by_type(self, citation_type: str) -> List[ParsedCitation]:
        return [c for c in self.citations if c.type == citation_type]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "citations": [c.to_dict() for c in self.citations],
            "citation_count": self.citation_count,
            "document_citations": len(self.by_type("document")),
            "web_citations": len(self.by_type("web")),
            "reference_citations": len(self.by_type("reference")),
        }


def _document_citations(text: str) -> List[ParsedCitation]:
    found = [
        ParsedCitation("document", m.group(0), m.start(), m.end(), index=int(m.group(1)))
        for m in _DOC_NUMBERED.finditer(text)
    ]
    found += [
        ParsedCitation(
            "document", m.group(0), m.start(), m.end(), name=m.group(1).strip(), document_id=m.group(2).strip()
        )
        for m in _DOC_LINKED.finditer(text)
    ]
    for m in _DOC_NAMED.finditer(text):
        name = m.group(1).strip()
        if not name.isdigit():
            found.append(ParsedCitation("document", m.group(0), m.start(), m.end(), name=name))
    return found


def _web_citations(text: str) -> List[ParsedCitation]:
    found = [
        ParsedCitation("web", m.group(0), m.start(), m.end(), index=int(m.group(1)), url=m.group(2).strip())
        for m in _WEB_NUMBERED.finditer(text)
    ]
    for m in _MARKDOWN_LINK.finditer(text):
        name = m.group(1).strip()
        if _WEB_LABEL.match(name):
            continue
        found.append(ParsedCitation("web", m.group(0), m.start(), m.end(), name=name, url=m.group(2).strip()))
    return found


def _reference_citations(text: str) -> List[ParsedCitation]:
    found = [
        ParsedCitation("reference", m.group(0), m.start(), m.end(), index=int(m.group(1)))
        for m in _REF_NUMBERED.finditer(text)
    ]
    found += [
        ParsedCitation("reference", m.group(0), m.start(), m.end(), index=int(m.group(1)))
        for m in _REF_LABELLED.finditer(text)
    ]
    return found


def _drop_overlaps(citations: List[ParsedCitation]) -> List[ParsedCitation]:
    """Keep the earliest, longest match where patterns overlap."""
    citations.sort(key=lambda c: (c.start, -(c.end - c.start)))
    kept: List[ParsedCitation] = []
    for citation in citations:
        if kept and citation.start < kept[-1].end:
            continue
        kept.append(citation)
    return kept


def parse_citations(text: str, *, remove_citations: bool = False) -> CitationParseResult:
    start = time.monotonic()
    text = text or ""
    citations = _drop_overlaps(_document_citations(text) + _web_citations(text) + _reference_citations(text))

    stripped = text
    if remove_citations:
        for citation in reversed(citations):
            stripped = stripped[:citation.start] + stripped[citation.end:]

    elapsed = (time.monotonic() - start) * 1000
    if elapsed > MAX_PARSING_TIME_MS:
        logger.warning("[Citations] parsing took %.1fms for %d citations", elapsed, len(citations))
    logger.debug("[Citations] parsed %d citations", len(citations))
    return CitationParseResult(citations=citations, text_without_citations=stripped, parsing_time_ms=elapsed)


# Inline segments

def _source_get(source: Any, name: str) -> Any:
    if isinstance(source, dict):
        return source.get(name)
    return getattr(source, name, None)


def _source_id(source: Any, position: int) -> str:
    return _source_get(source, "document_id") or _source_get(source, "url") or f"source-{position + 1}"


def resolve_source_index(citation: ParsedCitation, sources: Sequence[Any]) -> int:
    """Position of the cited source in `sources`, or -1. Numbers count within each source type."""
    if citation.type not in ("document", "web"):
        return -1
    typed = [(i, s) for i, s in enumerate(sources) if _source_get(s, "type") == citation.type]
    if citation.index is not None and 1 <= citation.index <= len(typed):
        return typed[citation.index - 1][0]
    if citation.document_id:
        for i, source in typed:
            if _source_get(source, "document_id") == citation.document_id:
                return i
    if citation.url:
        for i, source in typed:
            if _source_get(source, "url") == citation.url:
                return i
    return -1


def _span_end(text: str, after: int, limit: int) -> int:
    """End of the sentence or paragraph that follows a citation, capped at `limit`."""
    candidates = [limit]
    sentence = re.search(r"[.!?](?=\s|$)", text[after:limit])
    if sentence:
        candidates.append(after + sentence.end())
    paragraph = text.find("\n\n", after, limit)
    if paragraph >= 0:
        candidates.append(paragraph)
    return min(candidates)


def build_inline_segments(
    text: str,
    citations: Sequence[ParsedCitation],
    sources: Optional[Sequence[Any]] = None,
) -> Dict[str, Any]:
    """
    Split `text` into ordered, contiguous segments.

    A cited segment starts at a citation marker and runs to the end of its
    sentence or paragraph (or the next citation); everything else is an
    uncited segment.
    """
    sources = list(sources or [])
    ordered = sorted(citations, key=lambda c: c.start)
    segments: List[Dict[str, Any]] = []
    inline: List[Dict[str, Any]] = []

    def add_plain(start: int, end: int) -> None:
        if end > start and text[start:end].strip():
            segments.append({"text": text[start:end], "start": start, "end": end, "citations": [], "source_ids": []})

    cursor = 0
    for i, citation in enumerate(ordered):
        if citation.start < cursor:
            continue
        add_plain(cursor, citation.start)
        next_start = ordered[i + 1].start if i + 1 < len(ordered) else len(text)
        end = _span_end(text, citation.end, max(next_start, citation.end))

        source_index = resolve_source_index(citation, sources)
        source_id = _source_id(sources[source_index], source_index) if source_index >= 0 else None
        entry = {
            "citation_id": f"citation-{len(inline) + 1}",
            "format": citation.format,
            "source_type": citation.type,
            "source_index": source_index,
            "source_id": source_id,
            "position": {"start": citation.start, "end": citation.end},
        }
        inline.append(entry)
        segments.append({
            "text": text[citation.start:end],
            "start": citation.start,
            "end": end,
            "citations": [entry["citation_id"]],
            "source_ids": [source_id] if source_id else [],
        })
        cursor = end
    add_plain(cursor, len(text))

    return {
        "segments": segments,
        "citations": inline,
        "citation_count": len(inline),
        "segment_count": len(segments),
    }
