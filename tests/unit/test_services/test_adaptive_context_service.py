import pytest

from src.api.models.rag_context import DocumentContext, RagContext
from src.api.services import token_budget_service
from src.api.services.adaptive_context_service import (
    AdaptiveContextConfig,
    AdaptiveContextResult,
    AdaptiveContextService,
)
from src.api.services.context_selector_service import ContextSelectorService
from src.api.services.token_budget_service import TokenBudget


@pytest.fixture(autouse=True)
def _estimate_tokens_by_length(monkeypatch):
    monkeypatch.setitem(token_budget_service._encodings, "cl100k_base", None)


def _budget(total):
    return TokenBudget(
        model="gpt-3.5-turbo",
        model_limit=16385,
        available_budget=total,
        allocations={"document_context": total, "web_results": total, "response_reserve": 0},
        usage={"total": 0},
        remaining={"document_context": total, "web_results": total, "total": total},
    )


def _service(**config):
    defaults = {"enable_complexity_analysis": False, "enable_token_aware_selection": False}
    defaults.update(config)
    return AdaptiveContextService(AdaptiveContextConfig(**defaults))


def test_balanced_split():
    result = _service().select("What is AI?")

    assert (result.document_chunks, result.web_results) == (4, 5)
    assert result.adjustments["balance_based"] == 0
    assert "Balance ratio: 50% documents" in result.reasoning


def test_document_and_web_preferences():
    service = _service()

    docs_first = service.select("q", prefer_documents=True)
    web_first = service.select("q", prefer_web=True)

    assert (docs_first.document_chunks, docs_first.web_results) == (6, 2)
    assert (web_first.document_chunks, web_first.web_results) == (3, 5)


def test_tight_token_budget_scales_down():
    service = _service(enable_token_aware_selection=True)

    result = service.select("q", token_budget=_budget(700))

    assert (result.document_chunks, result.web_results) == (3, 2)
    assert result.adjustments["token_based"] == -1
    assert "Token budget limits context size" in result.reasoning


def test_generous_token_budget_adds_context():
    service = _service(enable_token_aware_selection=True)

    result = service.select("q", token_budget=_budget(10000))

    assert (result.document_chunks, result.web_results) == (9, 10)
    assert result.adjustments["token_based"] == 1


def test_complexity_analysis_drives_base_count():
    result = AdaptiveContextService(AdaptiveContextConfig(enable_token_aware_selection=False)).select("What is AI?")

    assert result.adjustments["complexity_based"] == 3
    assert result.complexity.query_type == "factual"


def _initial(budget):
    return AdaptiveContextResult(
        document_chunks=10,
        web_results=6,
        complexity=ContextSelectorService.analyze_query_complexity("q"),
        reasoning="initial",
        token_budget=budget,
    )


def test_refine_shrinks_overflowing_context():
    context = RagContext(document_contexts=[DocumentContext("d", "d", "x" * 4000, 0.9)])

    refined = _service().refine(context, _initial(_budget(500)))

    assert (refined.document_chunks, refined.web_results) == (7, 4)
    assert refined.reasoning.endswith("Refined based on actual context size")


def test_refine_grows_when_context_is_small():
    refined = _service().refine(RagContext(), _initial(_budget(10000)))

    assert (refined.document_chunks, refined.web_results) == (20, 10)


def test_refine_without_budget_is_noop():
    initial = _initial(None)

    assert _service().refine(RagContext(), initial) is initial
