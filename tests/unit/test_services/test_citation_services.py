"""Unit tests for citation parsing, validation, and inline segments."""

from src.api.models.question import Source
from src.api.services.citation_parser_service import build_inline_segments, parse_citations, resolve_source_index
from src.api.services.citation_validator_service import validate_citations


SOURCES = [
    Source(type="document", title="Guide", document_id="doc-1", snippet="s"),
    Source(type="web", title="Site A", url="https://a.com", snippet="s"),
]


def test_parse_citations_finds_every_format_once():
    text = (
        "See [Document 1] and [Web Source 2](https://b.com) plus "
        "[Document Guide](document://doc-9) and [3]."
    )

    result = parse_citations(text)

    assert [c.type for c in result.citations] == ["document", "web", "document", "reference"]
    assert result.citations[0].index == 1
    assert result.citations[1].url == "https://b.com"
    assert result.citations[2].document_id == "doc-9"
    assert result.citations[3].index == 3
    assert result.to_dict()["document_citations"] == 2


def test_parse_citations_can_strip_markers():
    result = parse_citations("Fact [Document 1].", remove_citations=True)

    assert result.text_without_citations == "Fact ."


def test_plain_markdown_link_is_a_web_citation():
    result = parse_citations("Read [the docs](https://a.com) first.")

    assert len(result.citations) == 1
    assert result.citations[0].name == "the docs"
    assert result.citations[0].url == "https://a.com"


def test_validate_citations_reports_unmatched_entries():
    text = (
        "See [Document 1] and [Web Source 2](https://b.com) plus "
        "[Document Guide](document://doc-9) and [3]."
    )
    parsed = parse_citations(text)

    result = validate_citations(parsed.citations, SOURCES)

    assert result.is_valid is False
    assert len(result.matched) == 1
    assert len(result.unmatched) == 3
    assert result.invalid_urls == ["https://b.com"]
    assert result.invalid_document_ids == ["doc-9"]
    assert 'Source "Site A" was provided but not cited' in result.suggestions


def test_validate_citations_numbers_each_source_type_separately():
    parsed = parse_citations("Doc [Document 1] and web [Web Source 1](https://a.com).")

    result = validate_citations(parsed.citations, SOURCES)

    assert result.is_valid is True
    assert result.to_dict()["matched_citations"] == 2
    assert result.suggestions == []


def test_validate_citations_warns_on_mismatched_web_url():
    sources = SOURCES + [Source(type="web", title="Site C", url="https://c.com", snippet="s")]
    parsed = parse_citations("[Web Source 2](https://a.com)")

    result = validate_citations(parsed.citations, sources)

    assert result.is_valid is True
    assert any("but that source has URL" in warning for warning in result.warnings)


def test_resolve_source_index_counts_within_type():
    parsed = parse_citations("[Web Source 1](https://a.com)")

    assert resolve_source_index(parsed.citations[0], SOURCES) == 1


def test_build_inline_segments_spans_to_sentence_end():
    text = "Intro. AI is useful [Document 1]. More text."
    parsed = parse_citations(text)

    payload = build_inline_segments(text, parsed.citations, SOURCES)

    segments = payload["segments"]
    assert [s["text"] for s in segments] == ["Intro. AI is useful ", "[Document 1].", " More text."]
    assert segments[1]["source_ids"] == ["doc-1"]
    assert payload["citations"][0]["source_index"] == 0
    assert payload["citation_count"] == 1
    assert "".join(s["text"] for s in segments) == text
