import pytest

from src.api.models.rag_context import DocumentContext, RagContext, WebSearchResult
from src.api.services import token_budget_service
from src.api.services.token_budget_service import (
    BudgetAllocation,
    TokenBudgetService,
    count_tokens,
    get_model_limit,
    truncate_to_tokens,
)


@pytest.fixture(autouse=True)
def _estimate_tokens_by_length(monkeypatch):
    monkeypatch.setitem(token_budget_service._encodings, "cl100k_base", None)


def test_length_estimate_when_encoding_unavailable():
    assert count_tokens("") == 0
    assert count_tokens("abcdefgh") == 2
    assert count_tokens("abcdefghi") == 3
    assert truncate_to_tokens("abcdefghij", 2) == "abcdefgh"
    assert truncate_to_tokens("abc", 0) == ""


def test_model_limits():
    assert get_model_limit("gpt-4") == 8192
    assert get_model_limit("gpt-4o-2024-08-06") == 128000
    assert get_model_limit("gpt-3.5-turbo-0125") == 16385
    assert get_model_limit("mystery-model") == 16385


def test_calculate_budget_allocations():
    budget = TokenBudgetService().calculate_budget("gpt-4")

    assert budget.model_limit == 8192
    assert budget.allocations["response_reserve"] == 1228
    assert budget.allocations["overhead"] == 409
    assert budget.available_budget == 6555
    assert budget.allocations["document_context"] == 3277
    assert budget.remaining["total"] == 6555 - 327 - 327
    assert "Token Budget: 654/8192 tokens used" in budget.summary()


def test_calculate_budget_counts_actual_prompts():
    budget = TokenBudgetService().calculate_budget("gpt-4", system_prompt="x" * 40, user_prompt="abcdefgh")

    assert budget.usage["system_prompt"] == 10
    assert budget.usage["user_prompt"] == 2
    assert budget.warnings == []


def test_allocation_ratios_are_normalized():
    allocation = BudgetAllocation(
        document_context=1.0, web_results=0.4, system_prompt=0.1, user_prompt=0.1, response_reserve=0.3, overhead=0.1
    ).normalized()

    assert allocation.document_context == pytest.approx(0.5)
    assert allocation.response_reserve == pytest.approx(0.15)


def test_check_budget_reports_overflow():
    service = TokenBudgetService()
    budget = service.calculate_budget("gpt-4", model_limit=1000)
    context = RagContext(document_contexts=[DocumentContext("d", "d", "x" * 2000, 0.9)])

    check = service.check_budget(budget, context)

    assert check.fits is False
    assert check.context_tokens.document_context == 504
    assert len(check.errors) == 1
    assert check.errors[0].startswith("Document context exceeds allocation")


def test_trim_context_truncates_first_overflowing_item():
    service = TokenBudgetService()
    budget = service.calculate_budget("gpt-4", model_limit=1000)
    context = RagContext(
        document_contexts=[DocumentContext("b", "b", "y" * 100, 0.5), DocumentContext("a", "a", "x" * 2000, 0.9)],
        web_search_results=[WebSearchResult(title="t", url="https://t.com", content="z" * 200, score=0.4)],
    )

    trimmed = service.trim_context_to_budget(context, budget)

    assert [d.document_id for d in trimmed.document_contexts] == ["b", "a"]
    assert trimmed.document_contexts[1].content == "x" * 1284 + "..."
    assert len(trimmed.web_search_results) == 1
    assert context.document_contexts[1].content == "x" * 2000


def test_trim_context_keeps_incoming_order_and_drops_from_the_tail():
    service = TokenBudgetService()
    budget = service.calculate_budget("gpt-4", model_limit=1000)
    context = RagContext(
        document_contexts=[
            DocumentContext("d1", "d1", "p" * 800, 0.2),
            DocumentContext("d2", "d2", "q" * 800, 0.9),
            DocumentContext("d3", "d3", "r" * 400, 0.95),
        ]
    )

    trimmed = service.trim_context_to_budget(context, budget)

    assert [d.document_id for d in trimmed.document_contexts] == ["d1", "d2"]
    assert trimmed.document_contexts[0].content == "p" * 800
    assert trimmed.document_contexts[1].content == "q" * 584 + "..."
