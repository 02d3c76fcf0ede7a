"""
Threshold Optimizer Service

Adaptive similarity cutoffs derived from the query type and, when a first
result set is available, from its score distribution.
"""
from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

logger = logging.getLogger(__name__)

QUERY_TYPES = ("factual", "conceptual", "procedural", "exploratory", "unknown")

_CONCEPTUAL_PATTERNS = [
    re.compile(r"\b(explain|understand|meaning|concept|theory|idea|definition)\b", re.I),
    re.compile(r"^(what does|what do|what means)", re.I),
]
_FACTUAL_PATTERNS = [
    re.compile(r"^(what|who|when|where|which)\s+(is|are|was|were|did|does|do)", re.I),
    re.compile(r"^(how many|how much)", re.I),
    re.compile(r"^(who|what|when|where|which)\s+\w+", re.I),
]
_PROCEDURAL_PATTERNS = [
    re.compile(r"^(how to|how do|how can|how should)", re.I),
    re.compile(r"\b(steps|process|method|procedure|guide|tutorial|way to)\b", re.I),
]
_EXPLORATORY_PATTERNS = [
    re.compile(r"^(tell me about|learn about|information about|know about|find out about)", re.I),
    re.compile(r"\b(overview|introduction|background|general)\b", re.I),
]


def detect_query_type(query: str) -> str:
    """Classify a query; conceptual is checked first since it overlaps factual."""
    text = str(query or "").strip()
    if any(p.search(text) for p in _CONCEPTUAL_PATTERNS):
        return "conceptual"
    if any(p.search(text) for p in _FACTUAL_PATTERNS):
        return "factual"
    if any(p.search(text) for p in _PROCEDURAL_PATTERNS):
        return "procedural"
    if any(p.search(text) for p in _EXPLORATORY_PATTERNS):
        return "exploratory"
    return "unknown"


@dataclass
class ThresholdConfig:
    default_threshold: float = 0.7
    min_threshold: float = 0.3
    max_threshold: float = 0.95
    adaptive_enabled: bool = True
    fallback_enabled: bool = True
    use_distribution_analysis: bool = True
    percentile_threshold: float = 0.75
    query_type_thresholds: Dict[str, float] = field(default_factory=lambda: {
        "factual": 0.75,
        "conceptual": 0.65,
        "procedural": 0.70,
        "exploratory": 0.60,
        "unknown": 0.70,
    })


@dataclass
class ScoreDistribution:
    scores: List[float]
    mean: float = 0.0
    median: float = 0.0
    std_dev: float = 0.0
    min: float = 0.0
    max: float = 0.0
    percentiles: Dict[str, float] = field(default_factory=lambda: {
        "p25": 0.0, "p50": 0.0, "p75": 0.0, "p90": 0.0, "p95": 0.0,
    })


@dataclass
class ThresholdResult:
    threshold: float
    strategy: str
    confidence: float
    reasoning: str = ""
    query_type: Optional[str] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "threshold": self.threshold,
            "strategy": self.strategy,
            "confidence": self.confidence,
            "reasoning": self.reasoning,
            "query_type": self.query_type,
        }


def analyze_score_distribution(scores: Sequence[float]) -> ScoreDistribution:
    if not scores:
        return ScoreDistribution(scores=[])

    ordered = sorted(float(s) for s in scores)
    n = len(ordered)
    mean = sum(ordered) / n
    std_dev = math.sqrt(sum((s - mean) ** 2 for s in ordered) / n)
    median = ordered[n // 2]

    def percentile(p: float) -> float:
        return ordered[min(int(math.floor(n * p)), n - 1)]

    return ScoreDistribution(
        scores=ordered,
        mean=mean,
        median=median,
        std_dev=std_dev,
        min=ordered[0],
        max=ordered[-1],
        percentiles={
            "p25": percentile(0.25),
            "p50": median,
            "p75": percentile(0.75),
            "p90": percentile(0.90),
            "p95": percentile(0.95),
        },
    )


class ThresholdOptimizerService:
    """Service for adaptive minimum-score selection"""

    def __init__(self, config: Optional[ThresholdConfig] = None):
        self.config = config or ThresholdConfig()

    def _clamp(self, value: float) -> float:
        return max(self.config.min_threshold, min(self.config.max_threshold, value))

    def adaptive_threshold(self, distribution: ScoreDistribution) -> float:
        config = self.config
        if not distribution.scores:
            return config.default_threshold

        p = config.percentile_threshold
        pct = distribution.percentiles
        if p == 0.75:
            threshold = pct["p75"]
        elif p == 0.90:
            threshold = pct["p90"]
        elif p == 0.95:
            threshold = pct["p95"]
        else:
            threshold = pct["p50"] + (pct["p75"] - pct["p50"]) * (p - 0.5) / 0.25

        threshold = self._clamp(threshold)
        if distribution.std_dev < 0.1 and distribution.mean > 0.5:
            threshold = max(threshold, distribution.mean - 0.1)
        return threshold

    def calculate_threshold(
        self,
        query: str,
        initial_scores: Optional[Sequence[float]] = None,
        *,
        min_results: int = 3,
        max_results: int = 10,
    ) -> ThresholdResult:
        config = self.config
        min_results = min_results or 3
        max_results = max_results or 10

        if not config.adaptive_enabled:
            return ThresholdResult(
                threshold=config.default_threshold,
                strategy="default",
                confidence=1.0,
                reasoning="Adaptive thresholds disabled, using default",
            )

        query_type = detect_query_type(query)
        threshold = config.query_type_thresholds.get(query_type, config.default_threshold)
        strategy = "query-type"
        confidence = 0.7
        reasoning = f"Query type: {query_type}, using type-specific threshold"

        if initial_scores and config.use_distribution_analysis:
            distribution = analyze_score_distribution(initial_scores)
            adaptive = self.adaptive_threshold(distribution)
            if config.min_threshold <= adaptive <= config.max_threshold:
                threshold = adaptive
                strategy = "distribution"
                confidence = 0.8
                reasoning = (
                    f"Distribution-based threshold (mean: {distribution.mean:.3f}, "
                    f"p75: {distribution.percentiles['p75']:.3f})"
                )

        if config.fallback_enabled and initial_scores is not None:
            count = len(initial_scores)
            if count < min_results and threshold > config.min_threshold:
                original = threshold
                threshold = max(config.min_threshold, threshold - 0.1)
                strategy, confidence = "fallback", 0.6
                reasoning = (
                    f"Fallback: Lowered threshold from {original:.3f} to {threshold:.3f} "
                    f"to get more results (had {count}, need {min_results})"
                )
            if count > max_results and threshold < config.max_threshold:
                original = threshold
                threshold = min(config.max_threshold, threshold + 0.05)
                strategy, confidence = "fallback", 0.6
                reasoning = (
                    f"Fallback: Raised threshold from {original:.3f} to {threshold:.3f} "
                    f"to get fewer results (had {count}, want max {max_results})"
                )

        return ThresholdResult(
            threshold=self._clamp(threshold),
            strategy=strategy,
            confidence=confidence,
            reasoning=reasoning,
            query_type=query_type,
        )

    async def optimize_threshold(
        self,
        query: str,
        search_fn: Callable[[float], Awaitable[Sequence[object]]],
        *,
        min_results: int = 3,
        max_results: int = 10,
        max_iterations: int = 5,
    ) -> ThresholdResult:
        """Step the threshold by 0.05 until `search_fn` returns a count inside the bounds."""
        query_type = detect_query_type(query)
        threshold = self.config.query_type_thresholds.get(query_type, self.config.default_threshold)
        target = (min_results + max_results) / 2
        best_threshold = threshold
        best_distance: Optional[float] = None

        for iteration in range(max(1, max_iterations)):
            results = await search_fn(threshold)
            count = len(results)
            logger.debug("[Threshold] iteration=%d threshold=%.3f results=%d", iteration, threshold, count)

            if min_results <= count <= max_results:
                return ThresholdResult(
                    threshold=threshold,
                    strategy="adaptive",
                    confidence=0.9,
                    reasoning=f"Optimized threshold after {iteration + 1} iterations",
                    query_type=query_type,
                )

            distance = abs(count - target)
            if best_distance is None or distance < best_distance:
                best_threshold, best_distance = threshold, distance

            if count < min_results:
                threshold = max(self.config.min_threshold, threshold - 0.05)
            else:
                threshold = min(self.config.max_threshold, threshold + 0.05)

        return ThresholdResult(
            threshold=best_threshold,
            strategy="adaptive",
            confidence=0.7,
            reasoning=f"Best threshold after {max_iterations} iterations",
            query_type=query_type,
        )
