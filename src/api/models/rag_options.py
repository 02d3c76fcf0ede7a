"""
Resolved per-request pipeline options.

Built once at the pipeline entry point from a QuestionRequest plus configured
defaults; every stage reads from the same immutable value.
"""
from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Optional, Tuple

_EXPANSION_STRATEGIES = {"llm", "embedding", "hybrid", "none"}
_RERANK_STRATEGIES = {"cross-encoder", "score-based", "hybrid", "none"}
_ORDERING_STRATEGIES = {"relevance", "score", "quality", "hybrid", "chronological"}
_COMPRESSION_STRATEGIES = {"truncation", "summarization", "extraction", "hybrid"}


@dataclass(frozen=True)
class RagOptions:
    """Immutable option set for one retrieval run."""

    user_id: str
    topic_id: Optional[str] = None
    document_ids: Tuple[str, ...] = ()

    enable_document_search: bool = True
    enable_web_search: bool = True
    max_document_chunks: int = 5
    max_web_results: int = 5
    min_score: float = 0.7
    hard_min_score: float = 0.6
    citation_min_score: float = 0.6
    requery_on_low_results: bool = True

    topic: Optional[str] = None
    time_range: Optional[str] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    country: Optional[str] = None

    enable_query_expansion: bool = False
    query_expansion_strategy: str = "hybrid"
    max_expansion_terms: int = 5
    use_adaptive_threshold: bool = False
    min_results: int = 3
    max_results: int = 10

    enable_keyword_search: bool = False
    keyword_weight: float = 0.3
    semantic_weight: float = 0.7
    fusion_strategy: str = "weighted"
    rrf_k: int = 60

    enable_reranking: bool = False
    reranking_strategy: str = "hybrid"
    rerank_top_k: int = 20
    rerank_max_results: int = 10
    rerank_min_score: float = 0.3

    enable_deduplication: bool = True
    deduplication_threshold: float = 0.95
    enable_diversity_filter: bool = False
    diversity_lambda: float = 0.7

    enable_dynamic_limits: bool = False
    enable_adaptive_context_selection: bool = False
    prefer_documents: bool = False
    prefer_web: bool = False
    token_budget: Optional[int] = None

    enable_relevance_ordering: bool = True
    ordering_strategy: str = "hybrid"
    enable_context_compression: bool = False
    compression_strategy: str = "hybrid"
    max_context_tokens: int = 8000
    enable_context_summarization: bool = False
    enable_source_prioritization: bool = True
    enable_token_budgeting: bool = True
    model: str = "gpt-3.5-turbo"

    enable_context_cache: bool = True
    context_cache_ttl: Optional[int] = None
    enable_similarity_cache: bool = True
    context_cache_similarity_threshold: float = 0.85

    def with_limits(self, *, max_document_chunks: int, max_web_results: int) -> "RagOptions":
        return replace(self, max_document_chunks=max_document_chunks, max_web_results=max_web_results)

    def cache_filters(self) -> dict:
        """Filter values that distinguish otherwise identical queries in the cache key."""
        return {
            "topic_id": self.topic_id,
            "document_ids": sorted(self.document_ids),
            "docs": self.enable_document_search,
            "web": self.enable_web_search,
            "max_docs": self.max_document_chunks,
            "max_web": self.max_web_results,
            "min_score": round(self.min_score, 4),
            "topic": self.topic,
            "time_range": self.time_range,
            "start_date": self.start_date,
            "end_date": self.end_date,
            "country": self.country,
        }


def _pick(value: Any, default: Any) -> Any:
    return default if value is None else value


def _choice(value: Optional[str], allowed: set, default: str) -> str:
    normalized = str(value or "").strip().lower()
    return normalized if normalized in allowed else default


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def build_rag_options(request: Any, user_id: str, config: Any) -> RagOptions:
    """
    Resolve request switches against configured defaults.

    `request` is a QuestionRequest (or any object with the same attribute
    names); `config` is a RagConfig.
    """
    retrieval = config.retrieval
    reranking = config.reranking
    processing = config.processing
    cache = config.cache
    generation = config.generation

    enable_web_search = bool(_pick(request.enable_web_search, retrieval.enable_web_search))
    if request.enable_search is False:
        enable_web_search = False

    min_results = max(1, int(_pick(request.min_results, retrieval.min_results)))
    max_results = max(min_results, int(_pick(request.max_results, retrieval.max_results)))

    return RagOptions(
        user_id=user_id,
        topic_id=request.topic_id or None,
        document_ids=tuple(str(doc_id) for doc_id in (request.document_ids or []) if doc_id),
        enable_document_search=bool(_pick(request.enable_document_search, retrieval.enable_document_search)),
        enable_web_search=enable_web_search,
        max_document_chunks=max(1, int(_pick(request.max_document_chunks, retrieval.max_document_chunks))),
        max_web_results=max(1, int(_pick(request.max_search_results, retrieval.max_web_results))),
        min_score=_clamp(float(_pick(request.min_score, retrieval.min_score)), 0.0, 1.0),
        hard_min_score=_clamp(float(retrieval.hard_min_score), 0.0, 1.0),
        citation_min_score=_clamp(float(retrieval.citation_min_score), 0.0, 1.0),
        requery_on_low_results=bool(retrieval.requery_on_low_results),
        topic=request.topic,
        time_range=request.time_range,
        start_date=request.start_date,
        end_date=request.end_date,
        country=request.country,
        enable_query_expansion=bool(_pick(request.enable_query_expansion, retrieval.enable_query_expansion)),
        query_expansion_strategy=_choice(
            request.query_expansion_strategy or retrieval.query_expansion_strategy, _EXPANSION_STRATEGIES, "hybrid"
        ),
        max_expansion_terms=max(1, int(_pick(request.max_expansion_terms, retrieval.max_expansion_terms))),
        use_adaptive_threshold=bool(_pick(request.use_adaptive_threshold, retrieval.use_adaptive_threshold)),
        min_results=min_results,
        max_results=max_results,
        enable_keyword_search=bool(_pick(request.enable_keyword_search, retrieval.enable_keyword_search)),
        keyword_weight=_clamp(float(_pick(request.keyword_weight, retrieval.keyword_weight)), 0.0, 1.0),
        semantic_weight=_clamp(float(_pick(request.semantic_weight, retrieval.semantic_weight)), 0.0, 1.0),
        fusion_strategy=_choice(retrieval.fusion_strategy, {"weighted", "rrf"}, "weighted"),
        rrf_k=max(1, int(retrieval.rrf_k)),
        enable_reranking=bool(_pick(request.enable_reranking, reranking.enabled)),
        reranking_strategy=_choice(request.reranking_strategy or reranking.strategy, _RERANK_STRATEGIES, "hybrid"),
        rerank_top_k=max(1, int(_pick(request.rerank_top_k, reranking.top_k))),
        rerank_max_results=max(1, int(reranking.max_results)),
        rerank_min_score=_clamp(float(reranking.min_score), 0.0, 1.0),
        enable_deduplication=bool(_pick(request.enable_deduplication, processing.enable_deduplication)),
        deduplication_threshold=_clamp(
            float(_pick(request.deduplication_threshold, processing.deduplication_threshold)), 0.0, 1.0
        ),
        enable_diversity_filter=bool(_pick(request.enable_diversity_filter, processing.enable_diversity_filter)),
        diversity_lambda=_clamp(float(_pick(request.diversity_lambda, processing.diversity_lambda)), 0.0, 1.0),
        enable_dynamic_limits=bool(_pick(request.enable_dynamic_limits, processing.enable_dynamic_limits)),
        enable_adaptive_context_selection=bool(
            _pick(request.enable_adaptive_context_selection, processing.enable_adaptive_context_selection)
        ),
        prefer_documents=bool(request.prefer_documents),
        prefer_web=bool(request.prefer_web),
        token_budget=request.token_budget,
        enable_relevance_ordering=bool(_pick(request.enable_relevance_ordering, processing.enable_relevance_ordering)),
        ordering_strategy=_choice(
            request.ordering_strategy or processing.ordering_strategy, _ORDERING_STRATEGIES, "hybrid"
        ),
        enable_context_compression=bool(
            _pick(request.enable_context_compression, processing.enable_context_compression)
        ),
        compression_strategy=_choice(
            request.compression_strategy or processing.compression_strategy, _COMPRESSION_STRATEGIES, "hybrid"
        ),
        max_context_tokens=max(100, int(_pick(request.max_context_tokens, processing.max_context_tokens))),
        enable_context_summarization=bool(
            _pick(request.enable_context_summarization, processing.enable_context_summarization)
        ),
        enable_source_prioritization=bool(
            _pick(request.enable_source_prioritization, processing.enable_source_prioritization)
        ),
        enable_token_budgeting=bool(_pick(request.enable_token_budgeting, processing.enable_token_budgeting)),
        model=str(request.model or generation.model),
        enable_context_cache=bool(_pick(request.enable_context_cache, cache.enabled)),
        context_cache_ttl=request.context_cache_ttl,
        enable_similarity_cache=bool(_pick(request.enable_similarity_cache, cache.similarity_enabled)),
        context_cache_similarity_threshold=_clamp(
            float(_pick(request.context_cache_similarity_threshold, cache.similarity_threshold)), 0.0, 1.0
        ),
    )
