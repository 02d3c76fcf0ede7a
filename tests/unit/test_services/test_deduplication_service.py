from src.api.models.rag_context import DocumentContext
from src.api.services.deduplication_service import DeduplicationService, character_similarity, jaccard_similarity
from src.api.services.diversity_filter_service import apply_mmr, diversity_metrics


def _doc(doc_id, score, content, chunk_index=0):
    return DocumentContext(
        document_id=doc_id, document_name=doc_id, content=content, score=score, chunk_index=chunk_index
    )


def test_similarity_helpers():
    assert jaccard_similarity("a b c", "a b c") == 1.0
    assert jaccard_similarity("a b", "c d") == 0.0
    assert character_similarity("Hello", "hello ") == 1.0
    assert character_similarity("abc", "") == 0.0


def test_exact_duplicates_keep_higher_score():
    docs = [_doc("a", 0.7, "Same Text"), _doc("b", 0.9, "same text"), _doc("c", 0.8, "different words entirely")]

    kept, stats = DeduplicationService().deduplicate(docs)

    assert [d.document_id for d in kept] == ["b", "c"]
    assert stats.exact_duplicates_removed == 1
    assert stats.deduplicated_count == 2


def test_similar_content_removed_in_similarity_pass():
    docs = [
        _doc("a", 0.8, "The quick brown fox jumps over the lazy dog"),
        _doc("b", 0.9, "The quick brown fox jumps over the lazy dog."),
    ]

    kept, stats = DeduplicationService().deduplicate(docs)

    assert [d.document_id for d in kept] == ["b"]
    assert stats.total_removed == 1


def test_distinct_chunks_survive():
    docs = [
        _doc("a", 0.8, "Photosynthesis converts light into chemical energy"),
        _doc("b", 0.7, "The French revolution began in 1789"),
    ]

    kept, stats = DeduplicationService().deduplicate(docs)

    assert len(kept) == 2
    assert stats.total_removed == 0


def test_single_item_is_untouched():
    kept, stats = DeduplicationService().deduplicate([_doc("a", 0.8, "x")])

    assert len(kept) == 1
    assert stats.original_count == 1


def test_mmr_promotes_diverse_results():
    docs = [
        _doc("a", 0.9, "alpha beta gamma"),
        _doc("b", 0.85, "alpha beta gamma"),
        _doc("c", 0.8, "totally different words here"),
    ]

    selected = apply_mmr(docs, lambda_=0.5)

    assert [d.document_id for d in selected] == ["a", "c", "b"]
    assert "marginal_relevance" in selected[1].metadata
    assert "diversity_score" not in docs[2].metadata


def test_mmr_respects_max_results():
    docs = [_doc(str(i), 0.9 - i * 0.1, f"text {i} words") for i in range(4)]

    assert len(apply_mmr(docs, max_results=2)) == 2


def test_diversity_metrics():
    assert diversity_metrics([_doc("a", 0.9, "x")])["diversity_score"] == 1.0
    metrics = diversity_metrics([_doc("a", 0.9, "a b"), _doc("b", 0.8, "a b")])
    assert metrics["average_similarity"] == 1.0
    assert metrics["diversity_score"] == 0.0


def test_per_call_near_duplicate_threshold_leaves_instance_default():
    service = DeduplicationService()
    docs = [
        _doc("a", 0.8, "Photosynthesis converts light into chemical energy"),
        _doc("b", 0.7, "Photosynthesis converts light into stored chemical energy"),
    ]

    kept, stats = service.deduplicate(docs, near_duplicate_threshold=0.5)

    assert [d.document_id for d in kept] == ["a"]
    assert stats.near_duplicates_removed == 1
    assert service.near_duplicate_threshold == 0.95
