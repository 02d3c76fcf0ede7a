"""
Vector Index Service

Nearest-neighbour search against a Pinecone index over its data-plane REST
API. Every query is filtered by user; topic and document filters are optional.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence

import httpx

from ..config import settings
from ..errors import ConfigurationError, UpstreamServiceError

logger = logging.getLogger(__name__)


class VectorIndexService:
    """Thin async client for Pinecone `query` calls."""

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        index_host: Optional[str] = None,
        namespace: Optional[str] = None,
        timeout_seconds: Optional[int] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.pinecone_api_key
        host = index_host if index_host is not None else settings.pinecone_index_host
        host = str(host or "").strip().rstrip("/")
        if host and not host.startswith(("http://", "https://")):
            host = f"https://{host}"
        self.index_host = host
        self.namespace = namespace if namespace is not None else settings.pinecone_namespace
        self.timeout_seconds = int(timeout_seconds or settings.pinecone_timeout_seconds)

    def is_configured(self) -> bool:
        return bool(self.api_key and self.index_host)

    @staticmethod
    def build_filter(
        user_id: str,
        topic_id: Optional[str] = None,
        document_ids: Optional[Sequence[str]] = None,
    ) -> Dict[str, Any]:
        if not user_id:
            raise ValueError("user_id is required for vector search")
        flt: Dict[str, Any] = {"userId": {"$eq": user_id}}
        if topic_id:
            flt["topicId"] = {"$eq": topic_id}
        if document_ids:
            flt["documentId"] = {"$in": list(document_ids)}
        return flt

    async def search(
        self,
        vector: List[float],
        *,
        user_id: str,
        topic_id: Optional[str] = None,
        document_ids: Optional[Sequence[str]] = None,
        top_k: int = 10,
    ) -> List[Dict[str, Any]]:
        """Return hits as dicts: chunk_id, document_id, content, chunk_index, score, metadata."""
        if not self.is_configured():
            raise ConfigurationError("Vector index is not configured")

        payload: Dict[str, Any] = {
            "vector": vector,
            "topK": max(1, int(top_k)),
            "filter": self.build_filter(user_id, topic_id, document_ids),
            "includeMetadata": True,
            "includeValues": False,
        }
        if self.namespace:
            payload["namespace"] = self.namespace

        headers = {
            "Api-Key": self.api_key,
            "Content-Type": "application/json",
        }
        timeout = httpx.Timeout(self.timeout_seconds)
        async with httpx.AsyncClient(timeout=timeout) as client:
            response = await client.post(f"{self.index_host}/query", json=payload, headers=headers)
            if response.status_code >= 400:
                raise UpstreamServiceError(
                    f"Vector index query failed: HTTP {response.status_code}",
                    service="pinecone",
                    status=response.status_code,
                )
            data = response.json()

        return self._parse_matches(data)

    @staticmethod
    def _parse_matches(data: Dict[str, Any]) -> List[Dict[str, Any]]:
        hits: List[Dict[str, Any]] = []
        for match in data.get("matches", []) or []:
            if not isinstance(match, dict):
                continue
            metadata = dict(match.get("metadata") or {})
            document_id = str(metadata.pop("documentId", "") or "")
            if not document_id:
                continue
            content = str(metadata.pop("content", "") or metadata.pop("text", "") or "")
            chunk_index = int(metadata.pop("chunkIndex", 0) or 0)
            hits.append(
                {
                    "chunk_id": str(match.get("id") or f"{document_id}_{chunk_index}"),
                    "document_id": document_id,
                    "content": content,
                    "chunk_index": chunk_index,
                    "score": float(match.get("score") or 0.0),
                    "metadata": metadata,
                }
            )
        return hits
