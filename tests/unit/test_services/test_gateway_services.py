import pytest

from src.api.errors import ConfigurationError, UpstreamServiceError
from src.api.services.embedding_service import EmbeddingService, cosine_similarity
from src.api.services.search_service import SearchService, WebSearchFilters
from src.api.services.vector_index_service import VectorIndexService


class FakeResponse:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self._payload = payload or {}

    def json(self):
        return self._payload


def _fake_client(seen, response):
    class FakeAsyncClient:
        def __init__(self, timeout):
            self.timeout = timeout

        async def __aenter__(self):
            return self

        async def __aexit__(self, exc_type, exc, tb):
            return False

        async def post(self, url, json=None, headers=None):
            seen["url"] = url
            seen["json"] = json
            seen["headers"] = headers
            return response

    return FakeAsyncClient


def test_cosine_similarity():
    assert cosine_similarity([1.0, 0.0], [1.0, 0.0]) == pytest.approx(1.0)
    assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)
    assert cosine_similarity([1.0], [1.0, 2.0]) == -1.0
    assert cosine_similarity([0.0, 0.0], [1.0, 1.0]) == -1.0


def test_embedding_requires_api_key():
    service = EmbeddingService(api_key="")

    assert service.is_configured() is False
    with pytest.raises(ConfigurationError):
        service.get_embedding_function()


@pytest.mark.asyncio
async def test_embedding_rejects_empty_text():
    service = EmbeddingService(api_key="sk-test")

    with pytest.raises(ValueError):
        await service.embed("   ")
    assert await service.embed_batch([]) == []


def test_search_payload_keeps_only_known_filters():
    payload = SearchService.build_payload(
        "rates",
        50,
        WebSearchFilters(topic="News", time_range="bogus", start_date="2024-01-01", country=" US "),
    )

    assert payload["max_results"] == 20
    assert payload["topic"] == "news"
    assert "time_range" not in payload
    assert payload["start_date"] == "2024-01-01"
    assert payload["country"] == "us"


def test_parse_results_skips_entries_without_url():
    results = SearchService.parse_results(
        {"results": [{"title": "A", "url": "https://a.com", "content": "x", "score": "0.8"}, {"title": "no url"}]},
        access_date="2024-06-01T00:00:00+00:00",
    )

    assert len(results) == 1
    assert results[0].score == 0.8
    assert results[0].access_date == "2024-06-01T00:00:00+00:00"


@pytest.mark.asyncio
async def test_search_posts_to_tavily(monkeypatch):
    seen = {}
    response = FakeResponse(payload={"results": [{"title": "T", "url": "https://t.com", "content": "c"}]})
    monkeypatch.setattr("httpx.AsyncClient", _fake_client(seen, response))

    results = await SearchService(api_key="tv-key").search("what is new", max_results=3)

    assert seen["url"] == "https://api.tavily.com/search"
    assert seen["headers"]["Authorization"] == "Bearer tv-key"
    assert seen["json"]["max_results"] == 3
    assert [r.url for r in results] == ["https://t.com"]
    assert results[0].access_date


@pytest.mark.asyncio
async def test_search_http_error_is_upstream_error(monkeypatch):
    monkeypatch.setattr("httpx.AsyncClient", _fake_client({}, FakeResponse(status_code=503)))

    with pytest.raises(UpstreamServiceError) as exc_info:
        await SearchService(api_key="tv-key").search("q")

    assert exc_info.value.status == 503


@pytest.mark.asyncio
async def test_search_without_key_or_query():
    assert await SearchService(api_key="").search("  ") == []
    with pytest.raises(ConfigurationError):
        await SearchService(api_key="").search("q")


def test_vector_filter_always_scopes_user():
    assert VectorIndexService.build_filter("u1") == {"userId": {"$eq": "u1"}}
    assert VectorIndexService.build_filter("u1", "t1", ["d1"]) == {
        "userId": {"$eq": "u1"},
        "topicId": {"$eq": "t1"},
        "documentId": {"$in": ["d1"]},
    }
    with pytest.raises(ValueError):
        VectorIndexService.build_filter("")


def test_parse_matches():
    hits = VectorIndexService._parse_matches({
        "matches": [
            {"id": "c1", "score": 0.91, "metadata": {"documentId": "d1", "content": "text", "chunkIndex": 2, "page": 4}},
            {"id": "c2", "score": 0.5, "metadata": {"content": "orphan"}},
            "junk",
        ]
    })

    assert hits == [
        {"chunk_id": "c1", "document_id": "d1", "content": "text", "chunk_index": 2, "score": 0.91,
         "metadata": {"page": 4}},
    ]


@pytest.mark.asyncio
async def test_vector_search_posts_filtered_query(monkeypatch):
    seen = {}
    monkeypatch.setattr("httpx.AsyncClient", _fake_client(seen, FakeResponse(payload={"matches": []})))
    service = VectorIndexService(api_key="pc-key", index_host="idx.pinecone.io", namespace="prod")

    hits = await service.search([0.1, 0.2], user_id="u1", topic_id="t1", top_k=4)

    assert hits == []
    assert seen["url"] == "https://idx.pinecone.io/query"
    assert seen["headers"]["Api-Key"] == "pc-key"
    assert seen["json"]["topK"] == 4
    assert seen["json"]["namespace"] == "prod"
    assert seen["json"]["filter"]["topicId"] == {"$eq": "t1"}


@pytest.mark.asyncio
async def test_vector_search_requires_configuration():
    with pytest.raises(ConfigurationError):
        await VectorIndexService(api_key="", index_host="").search([0.1], user_id="u1")
