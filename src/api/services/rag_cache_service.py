"""
RAG Cache Service

Redis-backed cache of assembled RAG contexts. Entries carry the query
embedding so a differently worded but semantically close question can reuse
them. Every failure is counted and reported as a miss.

Key layout: `{prefix}:{user_id}:{topic_id or "_"}:{sha256(query + filters)}`
"""
from __future__ import annotations

import hashlib
import json
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import redis.asyncio as redis

from ..config import settings
from ..models.rag_context import RagContext
from .embedding_service import cosine_similarity

logger = logging.getLogger(__name__)

EARLY_STOP_SIMILARITY = 0.95
_SCAN_COUNT = 100
_BATCH_SIZE = 50


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    sets: int = 0
    similarity_hits: int = 0
    deletes: int = 0
    errors: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return round(self.hits / total * 100, 2) if total else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "sets": self.sets,
            "similarity_hits": self.similarity_hits,
            "deletes": self.deletes,
            "errors": self.errors,
            "hit_rate": self.hit_rate,
        }


def normalize_query(query: str) -> str:
    return re.sub(r"\s+", " ", str(query or "").strip().lower())


def filters_digest(filters: Dict[str, Any]) -> str:
    payload = json.dumps(filters or {}, sort_keys=True, default=str)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]


class RagCacheService:
    """Exact-key and embedding-similarity cache for RagContext values"""

    def __init__(
        self,
        client=None,
        *,
        redis_url: Optional[str] = None,
        prefix: str = "rag",
        enabled: Optional[bool] = None,
        default_ttl_seconds: int = 3600,
        web_ttl_seconds: int = 1800,
        max_scan_keys: int = 1000,
    ):
        self._client = client
        self.redis_url = redis_url or settings.redis_url
        self.prefix = prefix
        self.enabled = settings.rag_cache_enabled if enabled is None else enabled
        self.default_ttl_seconds = default_ttl_seconds
        self.web_ttl_seconds = web_ttl_seconds
        self.max_scan_keys = max_scan_keys
        self.stats = CacheStats()

    @classmethod
    def from_config(cls, cache_config: Any, client=None) -> "RagCacheService":
        return cls(
            client,
            prefix=cache_config.prefix,
            enabled=settings.rag_cache_enabled and bool(cache_config.enabled),
            default_ttl_seconds=int(cache_config.default_ttl_seconds),
            web_ttl_seconds=int(cache_config.web_ttl_seconds),
            max_scan_keys=int(cache_config.max_scan_keys),
        )

    def is_configured(self) -> bool:
        return self.enabled and (self._client is not None or bool(self.redis_url))

    def _get_client(self):
        if self._client is None:
            self._client = redis.Redis.from_url(
                self.redis_url,
                decode_responses=True,
                socket_timeout=2.0,
                socket_connect_timeout=2.0,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None and hasattr(self._client, "aclose"):
            await self._client.aclose()

    # Keys

    def scope_pattern(self, user_id: str, topic_id: Optional[str] = None) -> str:
        if topic_id:
            return f"{self.prefix}:{user_id}:{topic_id}:*"
        return f"{self.prefix}:{user_id}:*"

    def build_key(self, query: str, user_id: str, filters: Dict[str, Any]) -> str:
        topic = (filters or {}).get("topic_id") or "_"
        digest = hashlib.sha256(
            f"{normalize_query(query)}|{filters_digest(filters)}".encode("utf-8")
        ).hexdigest()[:32]
        return f"{self.prefix}:{user_id}:{topic}:{digest}"

    def ttl_for(self, context: RagContext, override: Optional[int] = None) -> int:
        if override and override > 0:
            return int(override)
        return self.web_ttl_seconds if context.web_search_results else self.default_ttl_seconds

    # Reads

    async def get(self, key: str) -> Optional[RagContext]:
        if not self.is_configured():
            self.stats.misses += 1
            return None
        try:
            raw = await self._get_client().get(key)
        except Exception as e:
            self.stats.errors += 1
            logger.warning("[Cache] get failed for %s: %s", key, e)
            return None
        if raw is None:
            self.stats.misses += 1
            return None
        try:
            entry = json.loads(raw)
            value = entry["value"] if isinstance(entry, dict) and "value" in entry else entry
            context = RagContext.from_dict(value)
        except (ValueError, TypeError, KeyError) as e:
            self.stats.errors += 1
            logger.warning("[Cache] unreadable entry %s: %s", key, e)
            return None
        self.stats.hits += 1
        logger.debug("[Cache] hit %s", key)
        return context

    async def _scan(self, pattern: str, limit: Optional[int] = None) -> List[str]:
        client = self._get_client()
        keys: List[str] = []
        async for key in client.scan_iter(match=pattern, count=_SCAN_COUNT):
            keys.append(key)
            if limit is not None and len(keys) >= limit:
                break
        return keys

    async def find_similar(
        self,
        embedding: List[float],
        *,
        user_id: str,
        filters: Dict[str, Any],
        threshold: float = 0.85,
    ) -> Optional[RagContext]:
        """Best entry in the same user/topic scope with matching filters and similarity >= threshold."""
        if not self.is_configured() or not embedding:
            return None
        digest = filters_digest(filters)
        pattern = self.scope_pattern(user_id, (filters or {}).get("topic_id") or "_")
        best_value: Optional[Dict[str, Any]] = None
        best_similarity = -1.0
        try:
            client = self._get_client()
            keys = await self._scan(pattern, self.max_scan_keys)
            for start in range(0, len(keys), _BATCH_SIZE):
                batch = keys[start:start + _BATCH_SIZE]
                values = await client.mget(batch)
                for raw in values:
                    if not raw:
                        continue
                    try:
                        entry = json.loads(raw)
                    except ValueError:
                        continue
                    if not isinstance(entry, dict) or entry.get("filters") != digest:
                        continue
                    similarity = cosine_similarity(embedding, entry.get("embedding") or [])
                    if similarity >= threshold and similarity > best_similarity:
                        best_value, best_similarity = entry.get("value"), similarity
                if best_similarity >= EARLY_STOP_SIMILARITY:
                    break
        except Exception as e:
            self.stats.errors += 1
            logger.warning("[Cache] similarity lookup failed: %s", e)
            return None

        if best_value is None:
            return None
        try:
            context = RagContext.from_dict(best_value)
        except (TypeError, ValueError) as e:
            self.stats.errors += 1
            logger.warning("[Cache] unreadable similar entry: %s", e)
            return None
        self.stats.similarity_hits += 1
        logger.info("[Cache] similarity hit (%.3f)", best_similarity)
        return context

    # Writes

    async def set_with_embedding(
        self,
        key: str,
        context: RagContext,
        embedding: Optional[List[float]],
        *,
        filters: Dict[str, Any],
        ttl: Optional[int] = None,
    ) -> bool:
        if not self.is_configured():
            return False
        ttl_seconds = self.ttl_for(context, ttl)
        entry = {
            "value": context.to_dict(),
            "embedding": list(embedding or []),
            "filters": filters_digest(filters),
            "created_at": time.time(),
            "ttl": ttl_seconds,
        }
        try:
            await self._get_client().setex(key, ttl_seconds, json.dumps(entry))
        except Exception as e:
            self.stats.errors += 1
            logger.warning("[Cache] set failed for %s: %s", key, e)
            return False
        self.stats.sets += 1
        logger.debug("[Cache] set %s ttl=%ds", key, ttl_seconds)
        return True

    async def delete_pattern(self, pattern: str) -> int:
        if not self.is_configured():
            return 0
        try:
            keys = await self._scan(pattern)
            if not keys:
                return 0
            deleted = int(await self._get_client().delete(*keys))
        except Exception as e:
            self.stats.errors += 1
            logger.warning("[Cache] delete pattern %s failed: %s", pattern, e)
            return 0
        self.stats.deletes += deleted
        logger.info("[Cache] deleted %d keys matching %s", deleted, pattern)
        return deleted

    async def invalidate_user(self, user_id: str, topic_id: Optional[str] = None) -> int:
        return await self.delete_pattern(self.scope_pattern(user_id, topic_id))

    async def invalidate_document(self, user_id: str, document_id: str) -> int:
        """Delete the user's entries whose context includes a chunk of `document_id`."""
        if not self.is_configured():
            return 0
        try:
            client = self._get_client()
            doomed: List[str] = []
            for key in await self._scan(self.scope_pattern(user_id)):
                raw = await client.get(key)
                if raw and f'"document_id": "{document_id}"' in raw:
                    doomed.append(key)
            if not doomed:
                return 0
            deleted = int(await client.delete(*doomed))
        except Exception as e:
            self.stats.errors += 1
            logger.warning("[Cache] document invalidation failed: %s", e)
            return 0
        self.stats.deletes += deleted
        return deleted

    async def clear_all(self) -> int:
        return await self.delete_pattern(f"{self.prefix}:*")

    def get_stats(self) -> Dict[str, Any]:
        return {"enabled": self.enabled, **self.stats.to_dict()}

    def reset_stats(self) -> None:
        self.stats = CacheStats()
