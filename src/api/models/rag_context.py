"""
RAG context data models

Transient retrieval results and the assembled per-question context.
"""
from __future__ import annotations

from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional


def _known_fields(cls, data: Dict[str, Any]) -> Dict[str, Any]:
    names = {f.name for f in fields(cls)}
    return {key: value for key, value in (data or {}).items() if key in names}


@dataclass
class DocumentContext:
    """One retrieved document chunk"""
    document_id: str
    document_name: str
    content: str
    score: float
    chunk_index: int = 0
    chunk_id: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)
    semantic_score: Optional[float] = None
    keyword_score: Optional[float] = None
    combined_score: Optional[float] = None
    search_source: Optional[str] = None
    rerank_score: Optional[float] = None
    rank_change: Optional[int] = None
    priority: Optional[float] = None
    high_priority: bool = False

    @property
    def key(self) -> str:
        return f"{self.document_id}_{self.chunk_index}"

    @property
    def ranking_score(self) -> float:
        """Fused score when hybrid search ran, otherwise the raw score."""
        return self.combined_score if self.combined_score is not None else self.score

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "document_id": self.document_id,
            "document_name": self.document_name,
            "content": self.content,
            "score": self.score,
            "chunk_index": self.chunk_index,
            "chunk_id": self.chunk_id,
            "metadata": dict(self.metadata),
            "high_priority": self.high_priority,
        }
        for name in (
            "semantic_score", "keyword_score", "combined_score", "search_source", "rerank_score", "rank_change", "priority",
        ):
            value = getattr(self, name)
            if value is not None:
                data[name] = value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DocumentContext":
        return cls(**_known_fields(cls, data))


@dataclass
class WebSearchResult:
    """One web search hit, stamped with the time it was fetched"""
    title: str
    url: str
    content: str
    score: Optional[float] = None
    published_date: Optional[str] = None
    author: Optional[str] = None
    access_date: Optional[str] = None
    priority: Optional[float] = None
    high_priority: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "title": self.title,
            "url": self.url,
            "content": self.content,
            "high_priority": self.high_priority,
        }
        for name in ("score", "published_date", "author", "access_date", "priority"):
            value = getattr(self, name)
            if value is not None:
                data[name] = value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WebSearchResult":
        return cls(**_known_fields(cls, data))


@dataclass
class RagContext:
    """
    Context assembled for one question.

    Both lists are always present; an empty list means the source was
    searched (or skipped) and produced nothing.
    """
    document_contexts: List[DocumentContext] = field(default_factory=list)
    web_search_results: List[WebSearchResult] = field(default_factory=list)
    degraded: bool = False
    degradation_level: str = "none"
    partial: bool = False
    from_cache: bool = False
    stats: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.document_contexts is None:
            self.document_contexts = []
        if self.web_search_results is None:
            self.web_search_results = []

    @property
    def is_empty(self) -> bool:
        return not self.document_contexts and not self.web_search_results

    def to_dict(self) -> Dict[str, Any]:
        return {
            "document_contexts": [item.to_dict() for item in self.document_contexts],
            "web_search_results": [item.to_dict() for item in self.web_search_results],
            "degraded": self.degraded,
            "degradation_level": self.degradation_level,
            "partial": self.partial,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RagContext":
        data = data or {}
        return cls(
            document_contexts=[DocumentContext.from_dict(item) for item in data.get("document_contexts") or []],
            web_search_results=[WebSearchResult.from_dict(item) for item in data.get("web_search_results") or []],
            degraded=bool(data.get("degraded", False)),
            degradation_level=str(data.get("degradation_level") or "none"),
            partial=bool(data.get("partial", False)),
        )
