"""Unit tests for the question answering and operations endpoints."""

import json

import pytest
from fastapi.testclient import TestClient

from src.api.errors import AppError, ValidationError
from src.api.main import app
from src.api.models.question import QuestionResponse, Source
from src.api.services.health_registry import HealthRegistry


class _FakeAIService:
    def __init__(self, error=None, stream_error=None):
        self.error = error
        self.stream_error = stream_error
        self.calls = []

    async def answer_question(self, body, user_id):
        self.calls.append((body, user_id))
        if self.error is not None:
            raise self.error
        return QuestionResponse(
            answer="Refunds take 30 days [Document 1].",
            model="gpt-3.5-turbo",
            sources=[Source(type="document", title="Handbook", document_id="d1", snippet="Refunds")],
            follow_up_questions=["What about exchanges?"],
        )

    async def answer_question_stream(self, body, user_id):
        self.calls.append((body, user_id))
        yield "Refunds "
        yield "take 30 days."
        if self.stream_error is not None:
            raise self.stream_error
        yield {"followUpQuestions": ["What about exchanges?"]}
        yield {"sources": []}
        yield {"citations": {}}
        yield {"done": True, "model": "gpt-3.5-turbo"}


class _FakeCache:
    def __init__(self):
        self.calls = []

    def get_stats(self):
        return {"hits": 2, "misses": 1}

    async def clear_all(self):
        self.calls.append(("clear_all",))
        return 5

    async def invalidate_user(self, user_id, topic_id=None):
        self.calls.append(("user", user_id, topic_id))
        return 3

    async def invalidate_document(self, user_id, document_id):
        self.calls.append(("document", user_id, document_id))
        return 1


@pytest.fixture
def client():
    app.state.ai_service = _FakeAIService()
    app.state.health = HealthRegistry()
    app.state.rag_cache = _FakeCache()
    yield TestClient(app)
    for name in ("ai_service", "health", "rag_cache"):
        if hasattr(app.state, name):
            delattr(app.state, name)


def _events(response):
    return [json.loads(line[len("data: "):]) for line in response.text.splitlines() if line.startswith("data: ")]


def test_ask_requires_user_header(client):
    response = client.post("/api/ai/ask", json={"question": "What is covered?"})

    assert response.status_code == 401


def test_ask_returns_camel_case_payload(client):
    response = client.post(
        "/api/ai/ask",
        json={"question": "What is covered?", "enableWebSearch": False},
        headers={"X-User-Id": "user-1"},
    )

    assert response.status_code == 200
    payload = response.json()
    assert payload["followUpQuestions"] == ["What about exchanges?"]
    assert payload["sources"][0]["documentId"] == "d1"
    assert payload["degradationLevel"] == "none"
    body, user_id = app.state.ai_service.calls[0]
    assert user_id == "user-1"
    assert body.enable_web_search is False


def test_ask_maps_app_errors(client):
    app.state.ai_service = _FakeAIService(error=ValidationError("Question is required"))

    response = client.post("/api/ai/ask", json={"question": ""}, headers={"X-User-Id": "user-1"})

    assert response.status_code == 400
    assert response.json() == {"detail": "Question is required", "code": "VALIDATION_ERROR"}


def test_ask_rejects_out_of_range_switches(client):
    response = client.post(
        "/api/ai/ask",
        json={"question": "q", "minScore": 1.5},
        headers={"X-User-Id": "user-1"},
    )

    assert response.status_code == 422


def test_stream_emits_chunks_then_metadata(client):
    response = client.post("/api/ai/ask/stream", json={"question": "q"}, headers={"X-User-Id": "user-1"})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    events = _events(response)
    assert events[0] == {"chunk": "Refunds "}
    assert events[1] == {"chunk": "take 30 days."}
    assert [next(iter(e)) for e in events[2:5]] == ["followUpQuestions", "sources", "citations"]
    assert events[-1]["done"] is True


def test_stream_reports_errors_as_events(client):
    app.state.ai_service = _FakeAIService(stream_error=AppError("AI service is down", 503, "AI_SERVICE_UNAVAILABLE"))

    response = client.post("/api/ai/ask/stream", json={"question": "q"}, headers={"X-User-Id": "user-1"})

    events = _events(response)
    assert events[-1] == {"error": "AI service is down", "code": "AI_SERVICE_UNAVAILABLE"}


def test_stream_hides_unexpected_error_details(client):
    app.state.ai_service = _FakeAIService(stream_error=RuntimeError("secret stack detail"))

    response = client.post("/api/ai/ask/stream", json={"question": "q"}, headers={"X-User-Id": "user-1"})

    assert _events(response)[-1] == {"error": "Failed to generate answer", "code": "INTERNAL_ERROR"}


def test_degradation_and_circuit_controls(client):
    healthy = client.get("/api/ai/degradation").json()
    assert healthy["degradation_level"] == "none"
    assert healthy["degraded"] is False

    opened = client.post("/api/ai/circuits/openai-embeddings/open")
    assert opened.json() == {"name": "openai-embeddings", "state": "open"}

    degraded = client.get("/api/ai/degradation").json()
    assert degraded["degraded"] is True
    assert degraded["circuit_health"]["open_circuits"] == ["openai-embeddings"]

    closed = client.post("/api/ai/circuits/openai-embeddings/close")
    assert closed.json()["state"] == "closed"
    assert client.post("/api/ai/circuits/openai-embeddings/explode").status_code == 404


def test_cache_endpoints(client):
    assert client.get("/api/ai/cache/stats").json() == {"hits": 2, "misses": 1}
    assert client.delete("/api/ai/cache").json() == {"deleted": 5}
    assert client.delete("/api/ai/cache/users/u1", params={"topic_id": "t1"}).json() == {"deleted": 3}
    assert client.delete("/api/ai/cache/users/u1", params={"document_id": "d9"}).json() == {"deleted": 1}
    assert app.state.rag_cache.calls[1:] == [("user", "u1", "t1"), ("document", "u1", "d9")]


def test_health_endpoint_reports_level(client):
    assert client.get("/api/health").json() == {"status": "ok", "degradation_level": "none"}
