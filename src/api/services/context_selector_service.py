"""
Context Selector Service

Decides how many document chunks a question deserves from its length,
keyword density, intent and query type.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from .threshold_optimizer_service import detect_query_type

logger = logging.getLogger(__name__)

STOPWORDS = frozenset({
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for", "of", "with", "by",
    "is", "are", "was", "were", "be", "been", "being", "have", "has", "had", "do", "does", "did",
    "will", "would", "should", "could", "may", "might", "can", "this", "that", "these", "those",
    "what", "which", "who", "whom", "whose", "where", "when", "why", "how",
})

_PUNCTUATION_RE = re.compile(r"[^\w\s]")


@dataclass
class QueryComplexity:
    length: int
    word_count: int
    keyword_count: int
    keywords: List[str]
    intent_complexity: str
    query_type: str
    complexity_score: float

    def to_dict(self) -> Dict[str, object]:
        return {
            "length": self.length,
            "word_count": self.word_count,
            "keyword_count": self.keyword_count,
            "keywords": list(self.keywords),
            "intent_complexity": self.intent_complexity,
            "query_type": self.query_type,
            "complexity_score": self.complexity_score,
        }


@dataclass
class ContextSelectionConfig:
    min_chunks: int = 3
    max_chunks: int = 20
    default_chunks: int = 5
    complexity_multipliers: Dict[str, float] = field(default_factory=lambda: {
        "simple": 0.6,
        "moderate": 1.0,
        "complex": 1.5,
    })
    length_thresholds: Tuple[int, int, int] = (20, 100, 200)
    length_multipliers: Tuple[float, float, float] = (0.7, 1.0, 1.3)
    type_adjustments: Dict[str, int] = field(default_factory=lambda: {
        "factual": 0,
        "conceptual": 2,
        "procedural": 1,
        "exploratory": 3,
        "unknown": 0,
    })


@dataclass
class ContextSelection:
    chunk_count: int
    complexity: QueryComplexity
    reasoning: str


def extract_keywords(query: str) -> List[str]:
    words = _PUNCTUATION_RE.sub(" ", str(query or "").lower()).split()
    return [w for w in words if len(w) > 2 and w not in STOPWORDS]


def _intent_complexity(length: int, keyword_count: int, query_type: str) -> str:
    if length < 50 and keyword_count <= 2 and query_type == "factual":
        return "simple"
    if (length > 150 or keyword_count > 5) and query_type in ("exploratory", "conceptual"):
        return "complex"
    return "moderate"


class ContextSelectorService:
    """Service for sizing the document context of a question"""

    def __init__(self, config: Optional[ContextSelectionConfig] = None):
        self.config = config or ContextSelectionConfig()

    @staticmethod
    def analyze_query_complexity(query: str) -> QueryComplexity:
        text = str(query or "").strip()
        length = len(text)
        word_count = len(text.split())
        keywords = extract_keywords(text)
        query_type = detect_query_type(text)
        intent = _intent_complexity(length, len(keywords), query_type)

        intent_score = {"simple": 0.3, "moderate": 0.6, "complex": 0.9}[intent]
        type_score = {"exploratory": 0.9, "conceptual": 0.7}.get(query_type, 0.5)
        score = (
            min(1.0, length / 200) * 0.2
            + min(1.0, len(keywords) / 10) * 0.3
            + intent_score * 0.3
            + type_score * 0.2
        )
        return QueryComplexity(
            length=length,
            word_count=word_count,
            keyword_count=len(keywords),
            keywords=keywords,
            intent_complexity=intent,
            query_type=query_type,
            complexity_score=min(1.0, score),
        )

    def _length_multiplier(self, length: int) -> float:
        short, medium, _ = self.config.length_thresholds
        short_mult, medium_mult, long_mult = self.config.length_multipliers
        if length <= short:
            return short_mult
        if length <= medium:
            return medium_mult
        return long_mult

    def select_context_size(
        self,
        query: str,
        *,
        min_chunks: Optional[int] = None,
        max_chunks: Optional[int] = None,
        default_chunks: Optional[int] = None,
    ) -> ContextSelection:
        config = self.config
        min_chunks = config.min_chunks if min_chunks is None else min_chunks
        max_chunks = config.max_chunks if max_chunks is None else max_chunks
        base = config.default_chunks if default_chunks is None else default_chunks

        complexity = self.analyze_query_complexity(query)
        reasons: List[str] = []

        count = float(base)
        multiplier = config.complexity_multipliers.get(complexity.intent_complexity, 1.0)
        count *= multiplier
        reasons.append(f"Intent complexity: {complexity.intent_complexity} (x{multiplier})")

        length_mult = self._length_multiplier(complexity.length)
        count *= length_mult
        reasons.append(f"Query length: {complexity.length} chars (x{length_mult})")

        type_adjustment = config.type_adjustments.get(complexity.query_type, 0)
        count += type_adjustment
        if type_adjustment:
            reasons.append(f"Query type: {complexity.query_type} (+{type_adjustment})")

        complexity_adjustment = round((complexity.complexity_score - 0.5) * 4)
        count += complexity_adjustment
        if complexity_adjustment:
            reasons.append(f"Complexity score: {complexity.complexity_score:.2f} ({complexity_adjustment:+d})")

        chunk_count = max(min_chunks, min(max_chunks, int(round(count))))
        reasoning = "; ".join(reasons)
        logger.debug("[ContextSelector] %d chunks for %r: %s", chunk_count, query[:100], reasoning)
        return ContextSelection(chunk_count=chunk_count, complexity=complexity, reasoning=reasoning)

    def get_chunk_count(self, query: str, **kwargs) -> int:
        return self.select_context_size(query, **kwargs).chunk_count

    def is_complex_query(self, query: str) -> bool:
        return self.analyze_query_complexity(query).complexity_score > 0.6

    def get_chunk_count_range(self, query: str) -> Tuple[int, int, int]:
        """(min, recommended, max) around the recommended count."""
        config = self.config
        recommended = self.get_chunk_count(query)
        spread = round((config.max_chunks - config.min_chunks) * 0.3)
        return (
            max(config.min_chunks, recommended - spread),
            recommended,
            min(config.max_chunks, recommended + spread),
        )
