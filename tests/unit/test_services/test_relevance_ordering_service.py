from datetime import datetime, timezone

from src.api.models.rag_context import DocumentContext, RagContext, WebSearchResult
from src.api.services.relevance_ordering_service import RelevanceOrderingService


def _doc(doc_id, score, **metadata):
    return DocumentContext(doc_id, doc_id, f"content of {doc_id}", score, metadata=metadata)


def _web(title, url, score=None):
    return WebSearchResult(title=title, url=url, content="Same body text for every result.", score=score)


def test_relevance_orders_documents_and_web_independently():
    context = RagContext(
        document_contexts=[_doc("a", 0.5), _doc("b", 0.9)],
        web_search_results=[_web("low", "https://x.com/1", 0.2), _web("high", "https://x.com/2", 0.8)],
    )

    ordered, stats = RelevanceOrderingService().order_context(context, "relevance")

    assert [d.document_id for d in ordered.document_contexts] == ["b", "a"]
    assert [w.title for w in ordered.web_search_results] == ["high", "low"]
    assert stats.document_count == 2
    assert stats.web_result_count == 2


def test_ties_keep_original_order():
    context = RagContext(document_contexts=[_doc("first", 0.7), _doc("second", 0.7)])

    ordered, _ = RelevanceOrderingService().order_context(context, "score")

    assert [d.document_id for d in ordered.document_contexts] == ["first", "second"]


def test_unknown_strategy_falls_back_to_relevance():
    _, stats = RelevanceOrderingService().order_context(RagContext(), "alphabetical")

    assert stats.strategy == "relevance"


def test_chronological_prefers_recent_documents():
    recent = datetime.now(timezone.utc).isoformat()
    context = RagContext(document_contexts=[_doc("old", 0.9, updated_at="2015-01-01"), _doc("new", 0.1, updated_at=recent)])

    ordered, _ = RelevanceOrderingService().order_context(context, "chronological")

    assert [d.document_id for d in ordered.document_contexts] == ["new", "old"]


def test_hybrid_web_without_scores_uses_authority():
    context = RagContext(
        web_search_results=[_web("Post", "https://reddit.com/r/x"), _web("Post", "https://www.nih.gov/x")]
    )

    ordered, _ = RelevanceOrderingService().order_context(context, "hybrid")

    assert ordered.web_search_results[0].url == "https://www.nih.gov/x"


def test_ordering_does_not_mutate_input():
    context = RagContext(document_contexts=[_doc("a", 0.5), _doc("b", 0.9)])

    RelevanceOrderingService().order_context(context)

    assert [d.document_id for d in context.document_contexts] == ["a", "b"]
