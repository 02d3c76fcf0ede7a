import asyncio
from types import SimpleNamespace

import pytest

from src.api.services.query_expansion_service import CACHE_TTL_SECONDS, QueryExpansionService


class _FakeLlm:
    def __init__(self, text="", error=None):
        self.text = text
        self.error = error
        self.calls = 0

    async def complete(self, messages, **kwargs):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return SimpleNamespace(text=self.text)


class _Clock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_parse_llm_terms_drops_duplicates_and_query_overlap():
    terms = QueryExpansionService.parse_llm_terms(
        "machine learning", '"deep learning", machine learning, neural nets, , neural nets', 5
    )

    assert terms == ["deep learning", "neural nets"]


def test_synonym_expansion():
    expansion = QueryExpansionService.expand_with_synonyms("What is AI?", 5)

    assert expansion.expanded_terms == ["artificial intelligence", "machine learning", "neural network"]
    assert expansion.expanded_query == "What is AI? artificial intelligence machine learning neural network"
    assert expansion.strategy == "embedding"
    assert expansion.confidence == 0.6


def test_llm_strategy_raises_on_empty_reply():
    service = QueryExpansionService(_FakeLlm(text="  "))

    with pytest.raises(ValueError):
        asyncio.run(service.expand_query("what is ai", strategy="llm"))


def test_hybrid_survives_llm_failure():
    service = QueryExpansionService(_FakeLlm(error=RuntimeError("timeout")))

    expansion = asyncio.run(service.expand_query("explain ai", strategy="hybrid", max_terms=2))

    assert expansion.strategy == "hybrid"
    assert expansion.expanded_terms == ["describe", "clarify"]
    assert expansion.confidence == pytest.approx(0.6)


def test_hybrid_merges_llm_and_synonym_terms():
    service = QueryExpansionService(_FakeLlm(text="robots, automation"))

    expansion = asyncio.run(service.expand_query("ai", strategy="hybrid", max_terms=3))

    assert expansion.expanded_terms == ["robots", "automation", "artificial intelligence"]
    assert expansion.confidence == pytest.approx(0.7)


def test_cache_hits_until_ttl_expires():
    llm = _FakeLlm(text="robots")
    clock = _Clock()
    service = QueryExpansionService(llm, clock=clock)

    first = asyncio.run(service.expand_query("AI  Safety", strategy="llm"))
    second = asyncio.run(service.expand_query("ai safety", strategy="llm"))

    assert llm.calls == 1
    assert second.original_query == "ai safety"
    assert second.expanded_query == "ai safety robots"
    assert first.expanded_terms == second.expanded_terms

    clock.now += CACHE_TTL_SECONDS + 1
    asyncio.run(service.expand_query("ai safety", strategy="llm"))

    assert llm.calls == 2


def test_none_strategy_and_cache_stats():
    service = QueryExpansionService(_FakeLlm())

    expansion = asyncio.run(service.expand_query("plain query", strategy="none"))

    assert expansion.expanded_query == "plain query"
    assert service.get_cache_stats() == {"size": 1, "entries": 1}
    service.clear_cache()
    assert service.get_cache_stats()["size"] == 0
