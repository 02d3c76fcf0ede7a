from src.api.models.question import QuestionRequest
from src.api.models.rag_options import build_rag_options
from src.api.services.rag_config_service import RagConfig


def test_unset_switches_use_configured_defaults():
    options = build_rag_options(QuestionRequest(question="q"), "user-1", RagConfig())

    assert options.user_id == "user-1"
    assert options.enable_document_search is True
    assert options.enable_web_search is True
    assert options.max_document_chunks == 5
    assert options.min_score == 0.7
    assert options.hard_min_score == 0.6
    assert options.model == "gpt-3.5-turbo"
    assert options.enable_context_cache is True


def test_request_switches_override_defaults():
    request = QuestionRequest(
        question="q",
        enableWebSearch=False,
        maxDocumentChunks=12,
        minScore=0.5,
        topicId="topic-1",
        documentIds=["d2", "d1", ""],
        rerankingStrategy="score-based",
        model="gpt-4o",
    )

    options = build_rag_options(request, "user-1", RagConfig())

    assert options.enable_web_search is False
    assert options.max_document_chunks == 12
    assert options.min_score == 0.5
    assert options.topic_id == "topic-1"
    assert options.document_ids == ("d2", "d1")
    assert options.reranking_strategy == "score-based"
    assert options.model == "gpt-4o"


def test_enable_search_false_disables_web_search():
    request = QuestionRequest(question="q", enableSearch=False, enableWebSearch=True)

    assert build_rag_options(request, "u", RagConfig()).enable_web_search is False


def test_max_results_never_below_min_results():
    request = QuestionRequest(question="q", minResults=8, maxResults=2)

    options = build_rag_options(request, "u", RagConfig())

    assert (options.min_results, options.max_results) == (8, 8)


def test_invalid_configured_strategy_falls_back():
    config = RagConfig()
    config.retrieval.fusion_strategy = "magic"

    assert build_rag_options(QuestionRequest(question="q"), "u", config).fusion_strategy == "weighted"


def test_cache_filters_are_order_independent():
    first = build_rag_options(QuestionRequest(question="q", documentIds=["b", "a"]), "u", RagConfig())
    second = build_rag_options(QuestionRequest(question="q", documentIds=["a", "b"]), "u", RagConfig())

    assert first.cache_filters() == second.cache_filters()
    assert first.with_limits(max_document_chunks=2, max_web_results=1).max_web_results == 1
