"""
Citation Validator Service

Checks parsed citations against the sources that were actually given to the
model. Numbered citations index the document list and the web list
separately, in the order they appeared in the prompt.
"""
from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence
from urllib.parse import urlparse

from .citation_parser_service import ParsedCitation

logger = logging.getLogger(__name__)

MAX_VALIDATION_TIME_MS = 200

_DOCUMENT_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")


@dataclass
class CitationValidationResult:
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)
    matched: List[ParsedCitation] = field(default_factory=list)
    unmatched: List[ParsedCitation] = field(default_factory=list)
    missing_sources: List[str] = field(default_factory=list)
    invalid_urls: List[str] = field(default_factory=list)
    invalid_document_ids: List[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "suggestions": list(self.suggestions),
            "matched_citations": len(self.matched),
            "unmatched_citations": len(self.unmatched),
            "unmatched": [c.format for c in self.unmatched],
            "missing_sources": list(self.missing_sources),
            "invalid_urls": list(self.invalid_urls),
            "invalid_document_ids": list(self.invalid_document_ids),
        }


def _get(source: Any, name: str) -> Any:
    if isinstance(source, dict):
        return source.get(name)
    return getattr(source, name, None)


def _unique(items: List[str]) -> List[str]:
    return list(dict.fromkeys(items))


def check_citation_format(citation: ParsedCitation) -> List[str]:
    """Format problems with a single citation (empty label, bad URL, odd document id)."""
    problems: List[str] = []
    if citation.url is not None:
        parsed = urlparse(citation.url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            problems.append(f"Invalid URL format: {citation.url}")
    if citation.document_id is not None and not _DOCUMENT_ID_RE.match(citation.document_id):
        problems.append(f"Document ID contains special characters: {citation.document_id}")
    label = citation.format[1:citation.format.find("]")] if "]" in citation.format else ""
    if not label.strip():
        problems.append("Citation text is empty")
    return problems


def validate_citations(citations: Sequence[ParsedCitation], sources: Sequence[Any]) -> CitationValidationResult:
    start = time.monotonic()
    result = CitationValidationResult()

    numbered = list(enumerate(sources, 1))
    documents = [s for _, s in numbered if _get(s, "type") == "document"]
    web = [s for _, s in numbered if _get(s, "type") == "web"]
    global_position = {id(s): n for n, s in numbered}
    documents_by_id = {_get(s, "document_id"): s for s in documents if _get(s, "document_id")}
    web_by_url = {_get(s, "url"): s for s in web if _get(s, "url")}

    def matched(citation: ParsedCitation) -> None:
        result.matched.append(citation)

    def unmatched(citation: ParsedCitation, error: str) -> None:
        result.unmatched.append(citation)
        result.errors.append(error)

    for citation in citations:
        if citation.type == "document":
            if citation.index is not None:
                if 1 <= citation.index <= len(documents):
                    matched(citation)
                else:
                    result.missing_sources.append(citation.format)
                    unmatched(citation, f"Citation {citation.format} references non-existent Document {citation.index}")
            elif citation.document_id:
                if citation.document_id in documents_by_id:
                    matched(citation)
                else:
                    result.invalid_document_ids.append(citation.document_id)
                    unmatched(
                        citation,
                        f'Citation {citation.format} references non-existent document ID "{citation.document_id}"',
                    )
            elif citation.name:
                needle = citation.name.lower()
                if any(needle in str(_get(s, "title") or "").lower() for s in documents):
                    matched(citation)
                    result.warnings.append(f"Citation {citation.format} matched by name; prefer the document number")
                else:
                    result.missing_sources.append(citation.format)
                    unmatched(citation, f"Citation {citation.format} names a document that is not among the sources")
            else:
                unmatched(citation, f"Citation {citation.format} is missing index, document ID, or name")

        elif citation.type == "web":
            if citation.index is not None:
                in_range = 1 <= citation.index <= len(web)
                url_known = citation.url is None or citation.url in web_by_url
                if not url_known:
                    result.invalid_urls.append(citation.url)
                if not in_range:
                    result.missing_sources.append(citation.format)
                    unmatched(citation, f"Citation {citation.format} references non-existent Web Source {citation.index}")
                elif not url_known:
                    unmatched(citation, f'Citation {citation.format} references unknown URL "{citation.url}"')
                else:
                    matched(citation)
                    expected = _get(web[citation.index - 1], "url")
                    if citation.url and expected and citation.url != expected:
                        result.warnings.append(
                            f'Citation [Web Source {citation.index}] uses URL "{citation.url}" '
                            f'but that source has URL "{expected}"'
                        )
            elif citation.url:
                if citation.url in web_by_url:
                    matched(citation)
                else:
                    result.invalid_urls.append(citation.url)
                    unmatched(citation, f'Citation {citation.format} references non-existent URL "{citation.url}"')
            else:
                unmatched(citation, f"Citation {citation.format} is missing index or URL")

        else:
            if citation.index is not None and 1 <= citation.index <= len(sources):
                matched(citation)
            else:
                result.missing_sources.append(citation.format)
                unmatched(citation, f"Reference {citation.format} does not point to a listed source")

        for problem in check_citation_format(citation):
            result.warnings.append(f"Citation {citation.format}: {problem}")

    cited_doc_numbers = {c.index for c in result.matched if c.type == "document" and c.index is not None}
    cited_doc_ids = {c.document_id for c in result.matched if c.document_id}
    cited_web_numbers = {c.index for c in result.matched if c.type == "web" and c.index is not None}
    cited_urls = {c.url for c in result.matched if c.url}
    cited_refs = {c.index for c in result.matched if c.type == "reference"}

    for position, source in enumerate(documents, 1):
        if position in cited_doc_numbers or _get(source, "document_id") in cited_doc_ids:
            continue
        if global_position[id(source)] in cited_refs:
            continue
        result.suggestions.append(f'Source "{_get(source, "title") or f"Document {position}"}" was provided but not cited')
    for position, source in enumerate(web, 1):
        if position in cited_web_numbers or _get(source, "url") in cited_urls:
            continue
        if global_position[id(source)] in cited_refs:
            continue
        label = _get(source, "title") or _get(source, "url") or f"Web Source {position}"
        result.suggestions.append(f'Source "{label}" was provided but not cited')

    result.missing_sources = _unique(result.missing_sources)
    result.invalid_urls = _unique(result.invalid_urls)
    result.invalid_document_ids = _unique(result.invalid_document_ids)

    elapsed = (time.monotonic() - start) * 1000
    if elapsed > MAX_VALIDATION_TIME_MS:
        logger.warning("[Citations] validation took %.1fms", elapsed)
    logger.debug(
        "[Citations] %d matched, %d unmatched of %d",
        len(result.matched),
        len(result.unmatched),
        len(citations),
    )
    return result
