import pytest

from src.api.models.rag_context import DocumentContext
from src.api.services.hybrid_search_service import HybridSearchService, normalize_weights


def _doc(doc_id, score, content):
    return DocumentContext(document_id=doc_id, document_name=doc_id, content=content, score=score)


SEMANTIC = [
    _doc("a", 0.9, "solar panels convert sunlight into electricity"),
    _doc("b", 0.6, "wind turbines generate power from moving air"),
]
KEYWORD = [
    _doc("b", 8.0, "wind turbines generate power from moving air"),
    _doc("c", 4.0, "hydroelectric dams store water behind concrete walls"),
]


def test_normalize_weights():
    assert normalize_weights(0.7, 0.3) == pytest.approx((0.7, 0.3))
    assert normalize_weights(2, 2) == (0.5, 0.5)
    assert normalize_weights(0, 0) == (0.5, 0.5)


def test_weighted_fusion_keeps_raw_score_and_records_channels():
    fused = HybridSearchService().combine(SEMANTIC, KEYWORD, semantic_weight=0.7, keyword_weight=0.3)

    assert [d.document_id for d in fused] == ["b", "a"]
    top = fused[0]
    assert top.search_source == "both"
    assert top.score == 0.6
    assert top.semantic_score == 0.6
    assert top.keyword_score == 8.0
    assert top.combined_score == pytest.approx(0.6 / 0.9 * 0.7 + 0.3)
    assert fused[1].combined_score == pytest.approx(0.7)


def test_weighted_fusion_does_not_mutate_inputs():
    HybridSearchService().combine(SEMANTIC, KEYWORD)

    assert SEMANTIC[1].combined_score is None
    assert KEYWORD[0].search_source is None


def test_rrf_fusion_rewards_items_in_both_lists():
    fused = HybridSearchService().combine(SEMANTIC, KEYWORD, strategy="rrf", rrf_k=60)

    assert [d.document_id for d in fused] == ["b", "a", "c"]
    assert fused[0].combined_score == pytest.approx(1 / 62 + 1 / 61)


def test_combine_passes_through_when_one_side_is_empty():
    service = HybridSearchService()

    assert service.combine(SEMANTIC, []) == SEMANTIC
    assert service.combine([], KEYWORD) == KEYWORD


def test_fusion_collapses_near_identical_chunks():
    semantic = [_doc("a", 0.9, "the same passage text"), _doc("x", 0.5, "the same passage text")]
    keyword = [_doc("k", 3.0, "unrelated keyword hit about gardening")]

    fused = HybridSearchService(min_score=0.0).combine(semantic, keyword)

    assert [d.document_id for d in fused].count("x") == 0
