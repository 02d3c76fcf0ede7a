"""Shared lightweight type contracts for service-layer composition."""

from __future__ import annotations

from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, Sequence, Union

from ..models.rag_context import RagContext, WebSearchResult

MessagePayload = Dict[str, str]
StreamEvent = Dict[str, Any]
StreamItem = Union[str, StreamEvent]


class EmbeddingGateway(Protocol):
    """Text-to-vector gateway consumed by retrieval and the similarity cache."""

    def is_configured(self) -> bool: ...

    async def embed(self, text: str) -> List[float]: ...


class VectorIndexGateway(Protocol):
    """Filtered nearest-neighbour search over the user's document chunks."""

    def is_configured(self) -> bool: ...

    async def search(
        self,
        vector: List[float],
        *,
        user_id: str,
        topic_id: Optional[str] = None,
        document_ids: Optional[Sequence[str]] = None,
        top_k: int = 10,
    ) -> List[Dict[str, Any]]: ...


class KeywordIndexGateway(Protocol):
    """Synchronous BM25 search; callers run it in a worker thread."""

    def search(
        self,
        *,
        user_id: str,
        query: str,
        top_k: int,
        topic_id: Optional[str] = None,
        document_ids: Optional[Sequence[str]] = None,
    ) -> List[Dict[str, Any]]: ...


class WebSearchGateway(Protocol):
    """Web search gateway returning normalized results."""

    def is_configured(self) -> bool: ...

    async def search(self, query: str, *, max_results: int = 5, filters: Any = None) -> List[WebSearchResult]: ...


class CompletionGateway(Protocol):
    """Chat completion gateway (one-shot and streamed)."""

    def is_configured(self) -> bool: ...

    async def complete(
        self,
        messages: List[MessagePayload],
        *,
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
    ) -> Any: ...

    def stream(
        self,
        messages: List[MessagePayload],
        *,
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
        usage_sink: Optional[Dict[str, int]] = None,
    ) -> AsyncIterator[str]: ...


class DocumentStoreLike(Protocol):
    """Document, topic, and conversation rows consumed by the answer pipeline."""

    async def get_documents_by_ids(
        self, document_ids: Sequence[str], user_id: Optional[str] = None
    ) -> Dict[str, Dict[str, Any]]: ...

    async def get_topic(self, topic_id: str, user_id: Optional[str] = None) -> Optional[Dict[str, Any]]: ...

    async def get_conversation_messages(
        self,
        conversation_id: str,
        user_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]: ...

    async def create_message(self, conversation_id: str, **kwargs) -> str: ...


class ContextCacheLike(Protocol):
    """Per-user context cache with an optional embedding-similarity lookup."""

    def is_configured(self) -> bool: ...

    def build_key(self, query: str, user_id: str, filters: Dict[str, Any]) -> str: ...

    async def get(self, key: str) -> Optional[RagContext]: ...

    async def find_similar(
        self,
        embedding: List[float],
        *,
        user_id: str,
        filters: Dict[str, Any],
        threshold: float,
    ) -> Optional[RagContext]: ...

    async def set_with_embedding(
        self,
        key: str,
        context: RagContext,
        embedding: Optional[List[float]],
        *,
        filters: Dict[str, Any],
        ttl: Optional[int] = None,
    ) -> None: ...
