"""
Hybrid Search Service

Fuses dense (vector) and keyword (BM25) document hits into one ranked list.
"""
from __future__ import annotations

import logging
from dataclasses import replace
from typing import Dict, List, Optional, Tuple

from ..models.rag_context import DocumentContext

logger = logging.getLogger(__name__)


def word_jaccard(text1: str, text2: str) -> float:
    words1 = set(str(text1 or "").lower().split())
    words2 = set(str(text2 or "").lower().split())
    union = words1 | words2
    if not union:
        return 0.0
    return len(words1 & words2) / len(union)


def normalize_weights(semantic: float, keyword: float) -> Tuple[float, float]:
    semantic = max(0.0, float(semantic))
    keyword = max(0.0, float(keyword))
    total = semantic + keyword
    if total <= 0:
        return 0.5, 0.5
    return semantic / total, keyword / total


class HybridSearchService:
    """Weighted or reciprocal-rank fusion of semantic and keyword results"""

    def __init__(
        self,
        *,
        min_score: float = 0.3,
        max_results: int = 20,
        dedup_threshold: float = 0.85,
        enable_deduplication: bool = True,
    ):
        self.min_score = min_score
        self.max_results = max_results
        self.dedup_threshold = dedup_threshold
        self.enable_deduplication = enable_deduplication

    def _deduplicate(self, results: List[DocumentContext]) -> List[DocumentContext]:
        kept: List[DocumentContext] = []
        seen = set()
        for item in results:
            if item.key in seen:
                continue
            duplicate_at = None
            for index, existing in enumerate(kept):
                if word_jaccard(item.content, existing.content) >= self.dedup_threshold:
                    duplicate_at = index
                    break
            if duplicate_at is None:
                kept.append(item)
                seen.add(item.key)
            elif item.ranking_score > kept[duplicate_at].ranking_score:
                kept[duplicate_at] = item
        return kept

    def merge_weighted(
        self,
        semantic_results: List[DocumentContext],
        keyword_results: List[DocumentContext],
        *,
        semantic_weight: float = 0.6,
        keyword_weight: float = 0.4,
        min_score: Optional[float] = None,
        max_results: Optional[int] = None,
    ) -> List[DocumentContext]:
        """
        Max-normalize each list, then sum weighted scores per `documentId_chunkIndex`.

        The fused score goes to `combined_score`; `score` keeps the raw
        similarity and the per-channel values go to `semantic_score` / `keyword_score`.
        """
        w_sem, w_kw = normalize_weights(semantic_weight, keyword_weight)
        max_sem = max((r.score for r in semantic_results), default=1.0)
        max_kw = max((r.score for r in keyword_results), default=1.0)

        merged: Dict[str, DocumentContext] = {}
        for result in semantic_results:
            normalized = result.score / max_sem if max_sem > 0 else 0.0
            merged[result.key] = replace(
                result,
                semantic_score=result.score,
                combined_score=normalized * w_sem,
                search_source="semantic",
            )

        for result in keyword_results:
            normalized = result.score / max_kw if max_kw > 0 else 0.0
            existing = merged.get(result.key)
            if existing is not None:
                existing.keyword_score = result.score
                existing.combined_score += normalized * w_kw
                existing.search_source = "both"
            else:
                merged[result.key] = replace(
                    result,
                    keyword_score=result.score,
                    combined_score=normalized * w_kw,
                    search_source="keyword",
                )

        ranked = sorted(merged.values(), key=lambda r: r.combined_score, reverse=True)
        if self.enable_deduplication:
            ranked = self._deduplicate(ranked)

        floor = self.min_score if min_score is None else min_score
        limit = self.max_results if max_results is None else max_results
        ranked = [r for r in ranked if r.combined_score >= floor][:limit]

        logger.info(
            "[Hybrid] merged semantic=%d keyword=%d -> %d (weights %.2f/%.2f)",
            len(semantic_results),
            len(keyword_results),
            len(ranked),
            w_sem,
            w_kw,
        )
        return ranked

    @staticmethod
    def merge_rrf(
        semantic_results: List[DocumentContext],
        keyword_results: List[DocumentContext],
        *,
        semantic_weight: float = 1.0,
        keyword_weight: float = 1.0,
        rrf_k: int = 60,
        max_results: int = 20,
    ) -> List[DocumentContext]:
        """Reciprocal rank fusion: each list contributes weight / (k + rank)."""
        rrf_k = max(1, int(rrf_k))
        semantic_weight = max(0.0, float(semantic_weight))
        keyword_weight = max(0.0, float(keyword_weight))
        if semantic_weight <= 0 and keyword_weight <= 0:
            semantic_weight, keyword_weight = 1.0, 1.0

        fused: Dict[str, DocumentContext] = {}

        def _merge_channel(items: List[DocumentContext], weight: float, channel: str) -> None:
            if weight <= 0:
                return
            for rank, item in enumerate(items, start=1):
                contribution = weight * (1.0 / (rrf_k + rank))
                entry = fused.get(item.key)
                if entry is None:
                    fused[item.key] = replace(
                        item,
                        combined_score=contribution,
                        semantic_score=item.score if channel == "semantic" else None,
                        keyword_score=item.score if channel == "keyword" else None,
                        search_source=channel,
                    )
                else:
                    entry.combined_score += contribution
                    entry.search_source = "both"
                    if channel == "keyword":
                        entry.keyword_score = item.score

        _merge_channel(semantic_results, semantic_weight, "semantic")
        _merge_channel(keyword_results, keyword_weight, "keyword")

        ranked = sorted(fused.values(), key=lambda r: r.combined_score, reverse=True)
        return ranked[: max(1, int(max_results))]

    def combine(
        self,
        semantic_results: List[DocumentContext],
        keyword_results: List[DocumentContext],
        *,
        strategy: str = "weighted",
        semantic_weight: float = 0.7,
        keyword_weight: float = 0.3,
        rrf_k: int = 60,
        max_results: Optional[int] = None,
    ) -> List[DocumentContext]:
        """Fuse two lists; when either is empty the other passes through unchanged."""
        if not keyword_results:
            return list(semantic_results)
        if not semantic_results:
            return list(keyword_results)
        limit = self.max_results if max_results is None else max_results
        if strategy == "rrf":
            return self.merge_rrf(
                semantic_results,
                keyword_results,
                semantic_weight=semantic_weight,
                keyword_weight=keyword_weight,
                rrf_k=rrf_k,
                max_results=limit,
            )
        return self.merge_weighted(
            semantic_results,
            keyword_results,
            semantic_weight=semantic_weight,
            keyword_weight=keyword_weight,
            max_results=limit,
        )
