"""
Diversity Filter Service

Maximal Marginal Relevance over retrieved chunks:
    mmr = lambda * relevance - (1 - lambda) * max_similarity_to_selected
"""
from __future__ import annotations

import logging
from dataclasses import replace
from typing import Dict, List, Optional

from ..models.rag_context import DocumentContext
from .deduplication_service import jaccard_similarity

logger = logging.getLogger(__name__)


def _max_similarity(candidate: DocumentContext, selected: List[DocumentContext]) -> float:
    return max((jaccard_similarity(candidate.content, s.content) for s in selected), default=0.0)


def _with_scores(item: DocumentContext, diversity_score: float, marginal_relevance: float) -> DocumentContext:
    metadata = dict(item.metadata)
    metadata["diversity_score"] = round(diversity_score, 6)
    metadata["marginal_relevance"] = round(marginal_relevance, 6)
    return replace(item, metadata=metadata)


def apply_mmr(
    results: List[DocumentContext],
    *,
    lambda_: float = 0.7,
    max_results: Optional[int] = None,
) -> List[DocumentContext]:
    if len(results) <= 1:
        return list(results)

    lambda_ = max(0.0, min(1.0, float(lambda_)))
    limit = max_results or len(results)
    candidates = sorted(results, key=lambda r: r.ranking_score, reverse=True)

    first = candidates.pop(0)
    selected = [_with_scores(first, first.ranking_score, first.ranking_score)]

    while candidates and len(selected) < limit:
        best_index, best_mmr, best_marginal = -1, float("-inf"), 0.0
        for index, candidate in enumerate(candidates):
            max_sim = _max_similarity(candidate, selected)
            mmr = lambda_ * candidate.ranking_score - (1 - lambda_) * max_sim
            if mmr > best_mmr:
                best_index, best_mmr = index, mmr
                best_marginal = candidate.ranking_score - max_sim
        if best_index < 0:
            break
        selected.append(_with_scores(candidates.pop(best_index), best_mmr, best_marginal))

    logger.debug("[Diversity] MMR %d -> %d (lambda=%.2f)", len(results), len(selected), lambda_)
    return selected


def diversity_metrics(results: List[DocumentContext]) -> Dict[str, float]:
    """Pairwise word-Jaccard stats; diversity_score = 1 - average similarity."""
    similarities = [
        jaccard_similarity(results[i].content, results[j].content)
        for i in range(len(results))
        for j in range(i + 1, len(results))
    ]
    if not similarities:
        return {"average_similarity": 0.0, "max_similarity": 0.0, "min_similarity": 0.0, "diversity_score": 1.0}
    average = sum(similarities) / len(similarities)
    return {
        "average_similarity": average,
        "max_similarity": max(similarities),
        "min_similarity": min(similarities),
        "diversity_score": 1 - average,
    }
