"""
Source Prioritizer Service

Scores every context entry with a 0-1 priority and flags the high-priority
ones; the prompt formatter renders those with a star marker.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, replace
from typing import Dict, Optional, Tuple

from ..models.rag_context import DocumentContext, RagContext, WebSearchResult
from .source_scoring import domain_authority, freshness_score, quality_score

logger = logging.getLogger(__name__)

DOCUMENT_AUTHORITY = 0.9
DOCUMENT_FRESHNESS = 0.7


@dataclass(frozen=True)
class PrioritizationRules:
    document_weight: float = 0.6
    web_weight: float = 0.4
    relevance_weight: float = 0.4
    authority_weight: float = 0.3
    recency_weight: float = 0.2
    quality_weight: float = 0.1
    prefer_recent: bool = True
    recent_boost: float = 1.2
    prefer_authoritative: bool = True
    high_authority_threshold: float = 0.7
    high_authority_boost: float = 1.3
    high_priority_threshold: float = 0.7


PRESET_RULES: Dict[str, PrioritizationRules] = {
    "balanced": PrioritizationRules(document_weight=0.5, web_weight=0.5),
    "documents-first": PrioritizationRules(document_weight=0.8, web_weight=0.2),
    "web-first": PrioritizationRules(document_weight=0.3, web_weight=0.7),
    "authority-first": PrioritizationRules(authority_weight=0.5, relevance_weight=0.3, high_authority_boost=1.5),
    "recent-first": PrioritizationRules(recency_weight=0.4, relevance_weight=0.3, recent_boost=1.5),
}


@dataclass
class PrioritizationStats:
    document_count: int
    web_result_count: int
    average_document_priority: float
    average_web_priority: float
    high_priority_documents: int
    high_priority_web_results: int
    processing_time_ms: float

    def to_dict(self) -> Dict[str, object]:
        return dict(self.__dict__)


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


class SourcePrioritizerService:
    """Service for ranking sources by relevance, authority, recency and quality"""

    def __init__(self, rules: Optional[PrioritizationRules] = None):
        self.rules = rules or PrioritizationRules()

    def _source_factor(self, weight: float) -> float:
        """Source-type weight relative to the heavier of the two types."""
        top = max(self.rules.document_weight, self.rules.web_weight)
        return weight / top if top > 0 else 1.0

    def document_priority(self, doc: DocumentContext) -> float:
        rules = self.rules
        relevance = doc.ranking_score or 0.5
        priority = (
            relevance * rules.relevance_weight
            + DOCUMENT_AUTHORITY * rules.authority_weight
            + DOCUMENT_FRESHNESS * rules.recency_weight
            + quality_score(doc.document_name, doc.content) * rules.quality_weight
        )
        return _clamp(priority * self._source_factor(rules.document_weight))

    def web_priority(self, result: WebSearchResult) -> float:
        rules = self.rules
        relevance = result.score or 0.5
        authority = domain_authority(result.url)
        freshness = freshness_score(result.published_date)
        priority = (
            relevance * rules.relevance_weight
            + authority * rules.authority_weight
            + freshness * rules.recency_weight
            + quality_score(result.title, result.content) * rules.quality_weight
        )
        if rules.prefer_recent and freshness >= 0.8:
            priority *= rules.recent_boost
        if rules.prefer_authoritative and authority >= rules.high_authority_threshold:
            priority *= rules.high_authority_boost
        return _clamp(priority * self._source_factor(rules.web_weight))

    def prioritize_context(self, context: RagContext) -> Tuple[RagContext, PrioritizationStats]:
        """Annotate priorities in place of order; relevance ordering decides the sequence."""
        start = time.monotonic()
        threshold = self.rules.high_priority_threshold

        documents = []
        for doc in context.document_contexts:
            priority = self.document_priority(doc)
            documents.append(replace(doc, priority=round(priority, 4), high_priority=priority >= threshold))
        web = []
        for result in context.web_search_results:
            priority = self.web_priority(result)
            web.append(replace(result, priority=round(priority, 4), high_priority=priority >= threshold))

        stats = PrioritizationStats(
            document_count=len(documents),
            web_result_count=len(web),
            average_document_priority=sum(d.priority for d in documents) / len(documents) if documents else 0.0,
            average_web_priority=sum(w.priority for w in web) / len(web) if web else 0.0,
            high_priority_documents=sum(1 for d in documents if d.high_priority),
            high_priority_web_results=sum(1 for w in web if w.high_priority),
            processing_time_ms=(time.monotonic() - start) * 1000,
        )
        logger.debug(
            "[Prioritizer] high priority docs=%d web=%d",
            stats.high_priority_documents,
            stats.high_priority_web_results,
        )
        return replace(context, document_contexts=documents, web_search_results=web), stats
