"""
Query Expansion Service

Optional pre-retrieval expansion of the user query with related terms.
Strategies: llm, embedding (synonym map), hybrid, none.
"""
from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

EXPANSION_STRATEGIES = ("llm", "embedding", "hybrid", "none")
CACHE_TTL_SECONDS = 3600
CACHE_MAX_ENTRIES = 1000

SYNONYM_MAP: Dict[str, List[str]] = {
    "ai": ["artificial intelligence", "machine learning", "neural network"],
    "ml": ["machine learning", "artificial intelligence", "deep learning"],
    "learn": ["study", "understand", "comprehend", "grasp"],
    "help": ["assist", "support", "aid", "guide"],
    "create": ["make", "build", "generate", "produce"],
    "find": ["search", "locate", "discover", "identify"],
    "explain": ["describe", "clarify", "elaborate", "detail"],
}


@dataclass
class ExpandedQuery:
    """Result payload for a query expansion attempt."""

    original_query: str
    expanded_terms: List[str] = field(default_factory=list)
    expanded_query: str = ""
    strategy: str = "none"
    confidence: float = 1.0

    def __post_init__(self):
        if not self.expanded_query:
            self.expanded_query = self.original_query


def _join(query: str, terms: List[str]) -> str:
    return f"{query} {' '.join(terms)}" if terms else query


class QueryExpansionService:
    """Service for optional query expansion before retrieval."""

    def __init__(self, llm_service=None, *, clock: Callable[[], float] = time.monotonic):
        if llm_service is None:
            from .llm_service import LlmService

            llm_service = LlmService(timeout_seconds=15)
        self.llm_service = llm_service
        self._clock = clock
        self._cache: Dict[str, Tuple[ExpandedQuery, float]] = {}

    @staticmethod
    def normalize_query(query: str) -> str:
        return re.sub(r"\s+", " ", str(query or "").strip().lower())

    def _get_cached(self, query: str) -> Optional[ExpandedQuery]:
        key = self.normalize_query(query)
        entry = self._cache.get(key)
        if entry is None:
            return None
        expansion, stored_at = entry
        if self._clock() - stored_at > CACHE_TTL_SECONDS:
            del self._cache[key]
            return None
        return replace(
            expansion,
            original_query=query,
            expanded_query=_join(query, expansion.expanded_terms),
        )

    def _store(self, query: str, expansion: ExpandedQuery) -> None:
        now = self._clock()
        self._cache[self.normalize_query(query)] = (expansion, now)
        if len(self._cache) > CACHE_MAX_ENTRIES:
            for key in [k for k, (_, ts) in self._cache.items() if now - ts > CACHE_TTL_SECONDS]:
                del self._cache[key]

    @staticmethod
    def _build_llm_prompt(query: str, max_terms: int, context: Optional[str]) -> str:
        context_line = f"\nContext: {context}" if context else ""
        return (
            f"Given the following search query, generate {max_terms} related terms, synonyms, "
            "or alternative phrasings that would help find relevant information. "
            "Return only the terms, separated by commas, without explanations.\n\n"
            f'Query: "{query}"{context_line}\n\n'
            "Related terms:"
        )

    @staticmethod
    def parse_llm_terms(query: str, content: str, max_terms: int) -> List[str]:
        """Split comma-separated terms, dropping ones already covered by the query."""
        query_lower = query.lower()
        terms: List[str] = []
        for raw in str(content or "").split(","):
            term = raw.strip().strip('"').strip()
            if not term:
                continue
            term_lower = term.lower()
            if term_lower in query_lower or query_lower in term_lower:
                continue
            if term not in terms:
                terms.append(term)
        return terms[:max_terms]

    async def expand_with_llm(self, query: str, max_terms: int, context: Optional[str] = None) -> ExpandedQuery:
        messages = [
            {
                "role": "system",
                "content": "You are a helpful assistant that generates search query expansions. "
                "Return only comma-separated terms.",
            },
            {"role": "user", "content": self._build_llm_prompt(query, max_terms, context)},
        ]
        result = await self.llm_service.complete(messages, temperature=0.7, max_tokens=100)
        if not result.text.strip():
            raise ValueError("LLM returned empty expansion")
        terms = self.parse_llm_terms(query, result.text, max_terms)
        logger.info("[QueryExpansion] llm produced %d terms", len(terms))
        return ExpandedQuery(query, terms, _join(query, terms), "llm", 0.8)

    @staticmethod
    def expand_with_synonyms(query: str, max_terms: int) -> ExpandedQuery:
        words = [w for w in query.lower().split() if len(w) > 2 or w in SYNONYM_MAP]
        terms: List[str] = []
        for word in words:
            for synonym in SYNONYM_MAP.get(word.strip("?.,!"), []):
                if synonym not in terms and synonym != query.lower():
                    terms.append(synonym)
        terms = terms[:max_terms]
        return ExpandedQuery(query, terms, _join(query, terms), "embedding", 0.6)

    async def expand_with_hybrid(self, query: str, max_terms: int, context: Optional[str] = None) -> ExpandedQuery:
        parts = []
        try:
            parts.append(await self.expand_with_llm(query, max_terms, context))
        except Exception as e:
            logger.warning("[QueryExpansion] llm branch failed in hybrid mode: %s", e)
        parts.append(self.expand_with_synonyms(query, max_terms))

        terms: List[str] = []
        for part in parts:
            for term in part.expanded_terms:
                if term not in terms:
                    terms.append(term)
        terms = terms[:max_terms]

        confidences = [p.confidence for p in parts if p.confidence > 0]
        confidence = sum(confidences) / len(confidences) if confidences else 0.5
        return ExpandedQuery(query, terms, _join(query, terms), "hybrid", confidence)

    async def expand_query(
        self,
        query: str,
        *,
        strategy: str = "hybrid",
        max_terms: int = 5,
        context: Optional[str] = None,
        use_cache: bool = True,
    ) -> ExpandedQuery:
        """Expand `query`. Raises on LLM failure for the pure `llm` strategy."""
        strategy = strategy if strategy in EXPANSION_STRATEGIES else "hybrid"
        max_terms = max(1, int(max_terms))

        if use_cache:
            cached = self._get_cached(query)
            if cached is not None:
                return cached

        if strategy == "llm":
            expansion = await self.expand_with_llm(query, max_terms, context)
        elif strategy == "embedding":
            expansion = self.expand_with_synonyms(query, max_terms)
        elif strategy == "hybrid":
            expansion = await self.expand_with_hybrid(query, max_terms, context)
        else:
            expansion = ExpandedQuery(query, [], query, "none", 1.0)

        if use_cache:
            self._store(query, expansion)
        return expansion

    def clear_cache(self) -> None:
        self._cache.clear()

    def get_cache_stats(self) -> Dict[str, int]:
        now = self._clock()
        valid = sum(1 for _, ts in self._cache.values() if now - ts <= CACHE_TTL_SECONDS)
        return {"size": len(self._cache), "entries": valid}
