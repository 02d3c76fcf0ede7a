import asyncio
from types import SimpleNamespace

import pytest

from src.api.models.rag_context import DocumentContext, RagContext, WebSearchResult
from src.api.services import token_budget_service
from src.api.services.context_summarizer_service import (
    ContextSummarizerService,
    SummarizationConfig,
    build_document_prompt,
    build_web_prompt,
)


@pytest.fixture(autouse=True)
def _estimate_tokens_by_length(monkeypatch):
    monkeypatch.setitem(token_budget_service._encodings, "cl100k_base", None)


class _FakeLlm:
    def __init__(self, error=None, configured=True):
        self.error = error
        self.configured = configured
        self.prompts = []

    def is_configured(self):
        return self.configured

    async def complete(self, messages, **kwargs):
        self.prompts.append(messages[-1]["content"])
        if self.error is not None:
            raise self.error
        return SimpleNamespace(text="summary")


def _context():
    return RagContext(
        document_contexts=[
            DocumentContext("high", "high", "b" * 800, 0.9),
            DocumentContext("low", "low", "a" * 800, 0.3),
        ],
        web_search_results=[WebSearchResult(title="T", url="https://x.com", content="c" * 800)],
    )


def test_without_llm_nothing_happens():
    context = _context()

    result, stats = asyncio.run(ContextSummarizerService(None).summarize_context(context))
    unconfigured, _ = asyncio.run(ContextSummarizerService(_FakeLlm(configured=False)).summarize_context(context))

    assert result is context
    assert unconfigured is context
    assert stats is None


def test_under_threshold_is_skipped():
    llm = _FakeLlm()

    _, stats = asyncio.run(ContextSummarizerService(llm).summarize_context(_context()))

    assert stats is None
    assert llm.prompts == []


def test_lowest_value_entries_are_summarized_first():
    llm = _FakeLlm()
    service = ContextSummarizerService(llm, SummarizationConfig(summarization_threshold=300))

    result, stats = asyncio.run(service.summarize_context(_context(), query="letters"))

    assert result.web_search_results[0].content == "summary"
    assert result.document_contexts[1].content == "summary"
    assert result.document_contexts[0].content == "b" * 800
    assert stats.items_summarized == 2
    assert stats.summarized_tokens <= 300
    assert 'Focus on information relevant to this query: "letters"' in llm.prompts[0]


def test_failed_summary_keeps_original_content():
    service = ContextSummarizerService(
        _FakeLlm(error=RuntimeError("down")), SummarizationConfig(summarization_threshold=10)
    )

    result, stats = asyncio.run(service.summarize_context(_context()))

    assert result.document_contexts[1].content == "a" * 800
    assert stats.items_summarized == 3


def test_prompts_preserve_source_identity():
    doc_prompt = build_document_prompt(DocumentContext("d", "Handbook", "text", 0.9), None)
    web_prompt = build_web_prompt(
        WebSearchResult(title="News", url="https://n.com", content="body", published_date="2024-01-01"), "q"
    )

    assert 'Include the document name: "Handbook"' in doc_prompt
    assert "Focus on" not in doc_prompt
    assert "- Source: [News](https://n.com)" in web_prompt
    assert "Published: 2024-01-01" in web_prompt
