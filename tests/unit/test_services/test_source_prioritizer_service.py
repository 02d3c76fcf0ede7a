from datetime import datetime, timezone

from src.api.models.rag_context import DocumentContext, RagContext, WebSearchResult
from src.api.services.source_prioritizer_service import PRESET_RULES, SourcePrioritizerService
from src.api.services.source_scoring import domain_authority, freshness_score, quality_score


def _context():
    return RagContext(
        document_contexts=[DocumentContext("d1", "Handbook", "Vacation is 25 days per year.", 0.9)],
        web_search_results=[WebSearchResult(title="Thread", url="https://reddit.com/r/jobs", content="idk")],
    )


def test_prioritize_marks_high_priority_documents():
    prioritized, stats = SourcePrioritizerService().prioritize_context(_context())

    doc = prioritized.document_contexts[0]
    web = prioritized.web_search_results[0]
    assert doc.high_priority is True
    assert doc.priority >= 0.77
    assert web.high_priority is False
    assert stats.high_priority_documents == 1
    assert stats.high_priority_web_results == 0


def test_prioritize_keeps_order_and_input_untouched():
    context = _context()

    prioritized, _ = SourcePrioritizerService().prioritize_context(context)

    assert context.document_contexts[0].priority is None
    assert [d.document_id for d in prioritized.document_contexts] == ["d1"]


def test_web_first_preset_boosts_fresh_authoritative_results():
    today = datetime.now(timezone.utc).strftime("%Y-%m-%d")
    result = WebSearchResult(title="Study", url="https://www.nih.gov/study", content="Findings.", score=0.9,
                             published_date=today)

    default = SourcePrioritizerService().web_priority(result)
    web_first = SourcePrioritizerService(PRESET_RULES["web-first"]).web_priority(result)

    assert web_first == 1.0
    assert default < web_first


def test_domain_authority():
    assert domain_authority("https://en.wikipedia.org/wiki/Rome") == 0.85
    assert domain_authority("https://www.nih.gov/x") == 0.95
    assert domain_authority("https://city.gov/page") == 0.9
    assert domain_authority("https://example.io") == 0.5
    assert domain_authority("") == 0.5


def test_freshness_score():
    now = datetime(2024, 6, 30, tzinfo=timezone.utc)

    assert freshness_score("2024-06-27", now=now) == 1.0
    assert freshness_score("2024-05-01T00:00:00Z", now=now) == 0.8
    assert freshness_score("2020-01-01", now=now) == 0.3
    assert freshness_score(None, now=now) == 0.5
    assert freshness_score("2030-01-01", now=now) == 0.5
    assert freshness_score("not a date", now=now) == 0.5


def test_quality_score_prefers_structured_content():
    structured = "Overview of the policy.\n\n- Item one is described here.\n- Item two follows.\n\nMore detail. " * 3

    assert 0.0 <= quality_score("", "ok") < quality_score("Policy", structured) <= 1.0
