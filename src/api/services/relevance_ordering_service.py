"""
Relevance Ordering Service

Puts the most valuable context first. Documents and web results are ordered
independently; the prompt renders them in that order.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, replace
from typing import Dict, List, Tuple

from ..models.rag_context import DocumentContext, RagContext, WebSearchResult
from .source_scoring import domain_authority, freshness_score, quality_score

logger = logging.getLogger(__name__)

ORDERING_STRATEGIES = ("relevance", "score", "quality", "hybrid", "chronological")


@dataclass(frozen=True)
class OrderingWeights:
    doc_score: float
    doc_quality: float
    web_score: float
    web_quality: float
    web_authority: float


PRESETS: Dict[str, OrderingWeights] = {
    "relevance": OrderingWeights(1.0, 0.0, 1.0, 0.0, 0.0),
    "score": OrderingWeights(1.0, 0.0, 1.0, 0.0, 0.0),
    "quality": OrderingWeights(0.0, 1.0, 0.0, 1.0, 0.0),
    "hybrid": OrderingWeights(0.7, 0.3, 0.5, 0.3, 0.2),
    "chronological": OrderingWeights(0.0, 0.0, 0.0, 0.0, 0.0),
}


@dataclass
class OrderingStats:
    strategy: str
    document_count: int
    web_result_count: int
    processing_time_ms: float
    performance_warning: bool = False


class RelevanceOrderingService:
    """Service for ordering context entries by a unified relevance score"""

    def __init__(self, max_processing_time_ms: float = 50.0):
        self.max_processing_time_ms = max_processing_time_ms

    @staticmethod
    def document_ordering_score(doc: DocumentContext, strategy: str) -> float:
        weights = PRESETS.get(strategy, PRESETS["relevance"])
        score = doc.ranking_score
        if strategy == "chronological":
            stamp = doc.metadata.get("updated_at") or doc.metadata.get("created_at")
            return freshness_score(stamp) if stamp else score
        if strategy == "quality":
            return quality_score(doc.document_name, doc.content)
        if strategy == "hybrid":
            return score * weights.doc_score + quality_score(doc.document_name, doc.content) * weights.doc_quality
        return score

    @staticmethod
    def web_ordering_score(result: WebSearchResult, strategy: str) -> float:
        weights = PRESETS.get(strategy, PRESETS["relevance"])
        score = result.score if result.score and result.score > 0 else 0.0
        if strategy == "chronological":
            return freshness_score(result.published_date)
        if strategy == "quality":
            return quality_score(result.title, result.content)
        if strategy == "hybrid":
            quality = quality_score(result.title, result.content)
            authority = domain_authority(result.url)
            if score == 0:
                total = weights.web_quality + weights.web_authority
                return quality * (weights.web_quality / total) + authority * (weights.web_authority / total)
            return score * weights.web_score + quality * weights.web_quality + authority * weights.web_authority
        return score or quality_score(result.title, result.content)

    def order_context(self, context: RagContext, strategy: str = "hybrid") -> Tuple[RagContext, OrderingStats]:
        strategy = strategy if strategy in ORDERING_STRATEGIES else "relevance"
        start = time.monotonic()

        scored_docs: List[Tuple[float, int, DocumentContext]] = [
            (self.document_ordering_score(doc, strategy), index, doc)
            for index, doc in enumerate(context.document_contexts)
        ]
        scored_web: List[Tuple[float, int, WebSearchResult]] = [
            (self.web_ordering_score(result, strategy), index, result)
            for index, result in enumerate(context.web_search_results)
        ]
        # Stable on ties: original position breaks them.
        scored_docs.sort(key=lambda item: (-item[0], item[1]))
        scored_web.sort(key=lambda item: (-item[0], item[1]))

        ordered = replace(
            context,
            document_contexts=[doc for _, _, doc in scored_docs],
            web_search_results=[result for _, _, result in scored_web],
        )
        elapsed_ms = (time.monotonic() - start) * 1000
        warning = elapsed_ms > self.max_processing_time_ms
        if warning:
            logger.warning("[Ordering] took %.1fms (target %.0fms)", elapsed_ms, self.max_processing_time_ms)
        stats = OrderingStats(
            strategy=strategy,
            document_count=len(scored_docs),
            web_result_count=len(scored_web),
            processing_time_ms=elapsed_ms,
            performance_warning=warning,
        )
        return ordered, stats
