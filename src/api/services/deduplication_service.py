"""
Deduplication Service

Three passes over retrieved chunks: exact (content hash), near-duplicate,
and similar-content. The higher-scoring copy of a duplicate pair survives.
"""
from __future__ import annotations

import hashlib
import logging
import time
from dataclasses import dataclass
from difflib import SequenceMatcher
from typing import Dict, List, Optional, Tuple

from ..models.rag_context import DocumentContext

logger = logging.getLogger(__name__)


@dataclass
class DeduplicationStats:
    original_count: int = 0
    deduplicated_count: int = 0
    exact_duplicates_removed: int = 0
    near_duplicates_removed: int = 0
    similarity_duplicates_removed: int = 0
    processing_time_ms: float = 0.0

    @property
    def total_removed(self) -> int:
        return self.exact_duplicates_removed + self.near_duplicates_removed + self.similarity_duplicates_removed

    def to_dict(self) -> Dict[str, float]:
        return {
            "original_count": self.original_count,
            "deduplicated_count": self.deduplicated_count,
            "exact_duplicates_removed": self.exact_duplicates_removed,
            "near_duplicates_removed": self.near_duplicates_removed,
            "similarity_duplicates_removed": self.similarity_duplicates_removed,
            "total_removed": self.total_removed,
            "processing_time_ms": self.processing_time_ms,
        }


def _normalize(text: str) -> str:
    return str(text or "").lower().strip()


def content_hash(text: str) -> str:
    return hashlib.sha1(_normalize(text).encode("utf-8", errors="ignore")).hexdigest()


def jaccard_similarity(text1: str, text2: str) -> float:
    words1 = set(_normalize(text1).split())
    words2 = set(_normalize(text2).split())
    if not words1 and not words2:
        return 1.0
    if not words1 or not words2:
        return 0.0
    return len(words1 & words2) / len(words1 | words2)


def character_similarity(text1: str, text2: str) -> float:
    """Common-subsequence length over the longer text's length."""
    a, b = _normalize(text1), _normalize(text2)
    if a == b:
        return 1.0
    if not a or not b:
        return 0.0
    matcher = SequenceMatcher(None, a, b, autojunk=False)
    matched = sum(block.size for block in matcher.get_matching_blocks())
    return matched / max(len(a), len(b))


def fuzzy_similarity(doc1: DocumentContext, doc2: DocumentContext) -> float:
    if doc1.key == doc2.key:
        return 1.0
    return character_similarity(doc1.content, doc2.content) * 0.6 + jaccard_similarity(doc1.content, doc2.content) * 0.4


class DeduplicationService:
    """Service for removing duplicate and near-duplicate chunks"""

    def __init__(
        self,
        *,
        near_duplicate_threshold: float = 0.95,
        similarity_threshold: float = 0.85,
        use_fuzzy_matching: bool = True,
    ):
        self.near_duplicate_threshold = near_duplicate_threshold
        self.similarity_threshold = similarity_threshold
        self.use_fuzzy_matching = use_fuzzy_matching

    @staticmethod
    def remove_exact(results: List[DocumentContext]) -> List[DocumentContext]:
        kept: Dict[str, DocumentContext] = {}
        for result in results:
            digest = content_hash(result.content)
            existing = kept.get(digest)
            if existing is None or result.ranking_score > existing.ranking_score:
                kept[digest] = result
        survivors = {id(item) for item in kept.values()}
        return [r for r in results if id(r) in survivors]

    def _similarity(self, doc1: DocumentContext, doc2: DocumentContext) -> float:
        if self.use_fuzzy_matching:
            return fuzzy_similarity(doc1, doc2)
        if doc1.key == doc2.key:
            return 1.0
        return jaccard_similarity(doc1.content, doc2.content)

    def remove_similar(self, results: List[DocumentContext], threshold: float) -> List[DocumentContext]:
        kept: List[DocumentContext] = []
        for result in results:
            best_index, best_similarity = -1, 0.0
            for index, existing in enumerate(kept):
                similarity = self._similarity(result, existing)
                if similarity >= threshold and similarity > best_similarity:
                    best_index, best_similarity = index, similarity
            if best_index < 0:
                kept.append(result)
            elif result.ranking_score > kept[best_index].ranking_score:
                kept[best_index] = result
        return kept

    def deduplicate(
        self, results: List[DocumentContext], near_duplicate_threshold: Optional[float] = None
    ) -> Tuple[List[DocumentContext], DeduplicationStats]:
        near = self.near_duplicate_threshold if near_duplicate_threshold is None else near_duplicate_threshold
        start = time.monotonic()
        stats = DeduplicationStats(original_count=len(results))
        current = list(results)

        if len(current) > 1:
            before = len(current)
            current = self.remove_exact(current)
            stats.exact_duplicates_removed = before - len(current)

            if near < 1.0:
                before = len(current)
                current = self.remove_similar(current, near)
                stats.near_duplicates_removed = before - len(current)

            if self.similarity_threshold < near:
                before = len(current)
                current = self.remove_similar(current, self.similarity_threshold)
                stats.similarity_duplicates_removed = before - len(current)

        stats.deduplicated_count = len(current)
        stats.processing_time_ms = (time.monotonic() - start) * 1000
        if stats.total_removed:
            logger.info(
                "[Dedup] removed %d (exact=%d near=%d similar=%d)",
                stats.total_removed,
                stats.exact_duplicates_removed,
                stats.near_duplicates_removed,
                stats.similarity_duplicates_removed,
            )
        return current, stats
