"""Unit tests for the Redis-backed RAG context cache."""

import asyncio
import fnmatch
import json

from src.api.models.rag_context import DocumentContext, RagContext, WebSearchResult
from src.api.services.rag_cache_service import RagCacheService, normalize_query


class _FakeRedis:
    def __init__(self):
        self.data = {}
        self.ttls = {}

    async def get(self, key):
        return self.data.get(key)

    async def mget(self, keys):
        return [self.data.get(key) for key in keys]

    async def setex(self, key, ttl, value):
        self.data[key] = value
        self.ttls[key] = ttl

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            if self.data.pop(key, None) is not None:
                removed += 1
        return removed

    async def scan_iter(self, match=None, count=None):
        for key in list(self.data):
            if match is None or fnmatch.fnmatchcase(key, match):
                yield key


class _BrokenRedis(_FakeRedis):
    async def get(self, key):
        raise ConnectionError("redis down")


FILTERS = {"topic_id": None, "docs": True, "web": True}


def _cache(client=None):
    return RagCacheService(client or _FakeRedis(), enabled=True, redis_url="redis://test")


def _doc_context(document_id="doc-1"):
    return RagContext(
        document_contexts=[
            DocumentContext(document_id=document_id, document_name="Guide", content="alpha", score=0.9)
        ]
    )


def test_build_key_normalizes_query_and_scopes_by_user_and_topic():
    cache = _cache()

    key_a = cache.build_key("  What is AI? ", "user-1", FILTERS)
    key_b = cache.build_key("what   is ai?", "user-1", FILTERS)
    key_other_user = cache.build_key("what is ai?", "user-2", FILTERS)
    key_topic = cache.build_key("what is ai?", "user-1", {**FILTERS, "topic_id": "t9"})

    assert normalize_query("  What   is AI? ") == "what is ai?"
    assert key_a == key_b
    assert key_a.startswith("rag:user-1:_:")
    assert key_other_user.startswith("rag:user-2:_:")
    assert key_topic.startswith("rag:user-1:t9:")
    assert key_a != key_topic


def test_set_then_get_round_trips_context_and_counts_hits():
    client = _FakeRedis()
    cache = _cache(client)
    key = cache.build_key("q", "user-1", FILTERS)

    assert asyncio.run(cache.set_with_embedding(key, _doc_context(), [1.0, 0.0], filters=FILTERS)) is True
    cached = asyncio.run(cache.get(key))
    missing = asyncio.run(cache.get("rag:user-1:_:missing"))

    assert cached.document_contexts[0].document_name == "Guide"
    assert missing is None
    stats = cache.get_stats()
    assert stats["hits"] == 1
    assert stats["misses"] == 1
    assert stats["sets"] == 1
    assert client.ttls[key] == 3600


def test_web_results_use_shorter_ttl():
    client = _FakeRedis()
    cache = _cache(client)
    context = RagContext(web_search_results=[WebSearchResult(title="t", url="https://u", content="c")])

    asyncio.run(cache.set_with_embedding("rag:user-1:_:k", context, None, filters=FILTERS))

    assert client.ttls["rag:user-1:_:k"] == 1800


def test_find_similar_hits_above_threshold_and_misses_below():
    cache = _cache()
    key = cache.build_key("what is ai", "user-1", FILTERS)
    asyncio.run(cache.set_with_embedding(key, _doc_context(), [1.0, 0.0], filters=FILTERS))

    # cosine([0.9, 0.43589], [1, 0]) = 0.9; cosine([0.5, 0.866], [1, 0]) = 0.5
    close = asyncio.run(cache.find_similar([0.9, 0.43589], user_id="user-1", filters=FILTERS, threshold=0.85))
    far = asyncio.run(cache.find_similar([0.5, 0.866], user_id="user-1", filters=FILTERS, threshold=0.85))

    assert close is not None
    assert close.document_contexts[0].document_id == "doc-1"
    assert far is None
    assert cache.get_stats()["similarity_hits"] == 1


def test_find_similar_never_crosses_users_or_filters():
    cache = _cache()
    key = cache.build_key("what is ai", "user-1", FILTERS)
    asyncio.run(cache.set_with_embedding(key, _doc_context(), [1.0, 0.0], filters=FILTERS))

    other_user = asyncio.run(cache.find_similar([1.0, 0.0], user_id="user-2", filters=FILTERS))
    other_filters = asyncio.run(
        cache.find_similar([1.0, 0.0], user_id="user-1", filters={**FILTERS, "web": False})
    )

    assert other_user is None
    assert other_filters is None


def test_invalidate_user_and_topic_scopes():
    client = _FakeRedis()
    cache = _cache(client)
    for user_id, topic in (("user-1", "_"), ("user-1", "t1"), ("user-2", "_")):
        client.data[f"rag:{user_id}:{topic}:abc"] = json.dumps({"value": {}})

    assert asyncio.run(cache.invalidate_user("user-1", "t1")) == 1
    assert asyncio.run(cache.invalidate_user("user-1")) == 1
    assert list(client.data) == ["rag:user-2:_:abc"]


def test_invalidate_document_removes_only_entries_citing_it():
    client = _FakeRedis()
    cache = _cache(client)
    asyncio.run(cache.set_with_embedding("rag:user-1:_:a", _doc_context("doc-1"), None, filters=FILTERS))
    asyncio.run(cache.set_with_embedding("rag:user-1:_:b", _doc_context("doc-2"), None, filters=FILTERS))

    deleted = asyncio.run(cache.invalidate_document("user-1", "doc-1"))

    assert deleted == 1
    assert list(client.data) == ["rag:user-1:_:b"]


def test_clear_all_removes_every_prefixed_key():
    client = _FakeRedis()
    cache = _cache(client)
    client.data.update({"rag:u:_:a": "{}", "rag:v:_:b": "{}", "other:key": "{}"})

    assert asyncio.run(cache.clear_all()) == 2
    assert list(client.data) == ["other:key"]


def test_backend_errors_are_counted_and_read_as_miss():
    cache = _cache(_BrokenRedis())

    assert asyncio.run(cache.get("rag:user-1:_:k")) is None
    assert cache.get_stats()["errors"] == 1


def test_disabled_cache_is_inert():
    client = _FakeRedis()
    cache = RagCacheService(client, enabled=False)

    assert cache.is_configured() is False
    assert asyncio.run(cache.set_with_embedding("k", _doc_context(), None, filters=FILTERS)) is False
    assert asyncio.run(cache.get("k")) is None
    assert client.data == {}
