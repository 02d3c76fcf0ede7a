"""
Rerank Service

Re-scores the top of a fused document list. Strategies:
- score-based: weighted blend of semantic, keyword, length and position signals
- cross-encoder: rerank API (Jina/Cohere-compatible), score-based on failure
- hybrid: 0.7 cross-encoder + 0.3 score-based
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, replace
from typing import Dict, List, Optional

import httpx

from ..models.rag_context import DocumentContext

logger = logging.getLogger(__name__)

RERANK_STRATEGIES = ("cross-encoder", "score-based", "hybrid", "none")


@dataclass(frozen=True)
class ScoreWeights:
    semantic: float = 0.4
    keyword: float = 0.3
    length: float = 0.2
    position: float = 0.1


@dataclass(frozen=True)
class RerankApiConfig:
    model: str = "jina-reranker-v2-base-multilingual"
    base_url: str = "https://api.jina.ai/v1/rerank"
    api_key: str = ""
    timeout_seconds: int = 20


def length_score(content: str) -> float:
    """Shorter, focused chunks score higher; 100 chars or fewer score 1.0."""
    normalized = len(content or "") / 100
    score = 1 / (1 + math.log10(max(1.0, normalized)))
    return min(1.0, max(0.0, score))


def position_score(index: int, total: int) -> float:
    if total <= 0:
        return 0.0
    return 1 - (index / total)


class RerankService:
    """Service for re-ranking retrieved document chunks."""

    def __init__(self, api_config: Optional[RerankApiConfig] = None, weights: Optional[ScoreWeights] = None):
        self.api_config = api_config or RerankApiConfig()
        self.weights = weights or ScoreWeights()

    async def rerank_api(
        self,
        *,
        query: str,
        documents: List[str],
        model: str,
        base_url: str,
        api_key: str,
        timeout_seconds: int,
    ) -> Dict[int, float]:
        if not query or not documents:
            return {}

        payload = {
            "model": model,
            "query": query,
            "documents": documents,
            "top_n": len(documents),
            "return_documents": False,
        }
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"

        timeout = httpx.Timeout(max(1, int(timeout_seconds)))
        async with httpx.AsyncClient(timeout=timeout) as client:
            response = await client.post(base_url, json=payload, headers=headers)
            response.raise_for_status()
            data = response.json()

        return self._normalize_scores(self._extract_scores(data))

    @staticmethod
    def _extract_scores(data: dict) -> Dict[int, float]:
        rows = data.get("results") or data.get("data") or []
        if not isinstance(rows, list):
            raise ValueError("Rerank response missing results list.")

        scores: Dict[int, float] = {}
        for item in rows:
            if not isinstance(item, dict):
                continue
            idx = item.get("index")
            score = item.get("relevance_score")
            if score is None:
                score = item.get("score")
            if isinstance(idx, int) and isinstance(score, (float, int)):
                scores[idx] = float(score)
        return scores

    @staticmethod
    def _normalize_scores(scores: Dict[int, float]) -> Dict[int, float]:
        if not scores:
            return {}
        values = list(scores.values())
        if all(0.0 <= val <= 1.0 for val in values):
            return scores
        low, high = min(values), max(values)
        if high - low <= 1e-12:
            return {idx: 1.0 for idx in scores}
        return {idx: (val - low) / (high - low) for idx, val in scores.items()}

    def score_based_scores(self, results: List[DocumentContext]) -> List[float]:
        weights = self.weights
        total = len(results)
        scores = []
        for index, result in enumerate(results):
            base = result.ranking_score
            semantic = result.semantic_score if result.semantic_score is not None else base * 0.6
            keyword = result.keyword_score if result.keyword_score is not None else base * 0.4
            scores.append(
                semantic * weights.semantic
                + keyword * weights.keyword
                + length_score(result.content) * weights.length
                + position_score(index, total) * weights.position
            )
        return scores

    async def cross_encoder_scores(self, query: str, results: List[DocumentContext]) -> List[float]:
        cfg = self.api_config
        by_index = await self.rerank_api(
            query=query,
            documents=[r.content for r in results],
            model=cfg.model,
            base_url=cfg.base_url,
            api_key=cfg.api_key,
            timeout_seconds=cfg.timeout_seconds,
        )
        if not by_index:
            raise ValueError("Rerank API returned no scores")
        return [by_index.get(i, 0.0) for i in range(len(results))]

    @staticmethod
    def _apply(results: List[DocumentContext], scores: List[float]) -> List[DocumentContext]:
        """Sort by new score and record rank_change (positive = moved up)."""
        rescored = [replace(r, rerank_score=s) for r, s in zip(results, scores)]
        original_rank = {r.key: i for i, r in enumerate(results)}
        rescored.sort(key=lambda r: r.rerank_score, reverse=True)
        for new_index, item in enumerate(rescored):
            item.rank_change = original_rank.get(item.key, new_index) - new_index
        return rescored

    async def rerank(
        self,
        query: str,
        results: List[DocumentContext],
        *,
        strategy: str = "hybrid",
        top_k: int = 20,
        max_results: int = 10,
        min_score: float = 0.0,
    ) -> List[DocumentContext]:
        candidates = list(results[: max(1, int(top_k))])
        if not candidates:
            return []

        if strategy == "score-based":
            scores = self.score_based_scores(candidates)
        elif strategy in ("cross-encoder", "hybrid"):
            heuristic = self.score_based_scores(candidates)
            try:
                encoder = await self.cross_encoder_scores(query, candidates)
            except Exception as e:
                logger.warning("[Rerank] cross-encoder unavailable, using score-based: %s", e)
                encoder = None
            if encoder is None:
                scores = heuristic
            elif strategy == "cross-encoder":
                scores = encoder
            else:
                scores = [0.7 * c + 0.3 * h for c, h in zip(encoder, heuristic)]
        else:
            scores = [r.ranking_score for r in candidates]

        reranked = self._apply(candidates, scores)
        if min_score > 0:
            kept = [r for r in reranked if r.rerank_score >= min_score]
            if kept:
                reranked = kept
            else:
                logger.info("[Rerank] min_score %.2f would drop every result, keeping ranked list", min_score)
        reranked = reranked[: max(1, int(max_results))]
        logger.info("[Rerank] strategy=%s in=%d out=%d", strategy, len(candidates), len(reranked))
        return reranked
