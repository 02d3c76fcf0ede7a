"""Unit tests for the RAG config endpoints."""

from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from src.api.main import app
from src.api.services.rag_config_service import RagConfigService


@pytest.fixture
def config_service(tmp_path):
    service = RagConfigService(config_path=str(tmp_path / "rag_config.yaml"))
    app.state.rag_config_service = service
    app.state.ai_service = SimpleNamespace(config=None)
    yield service
    for name in ("rag_config_service", "ai_service"):
        if hasattr(app.state, name):
            delattr(app.state, name)


def test_get_config_returns_flat_fields(config_service):
    response = TestClient(app).get("/api/rag/config")

    assert response.status_code == 200
    payload = response.json()
    assert payload["retrieval_hard_min_score"] == 0.6
    assert payload["cache_web_ttl_seconds"] == 1800
    assert payload["resilience_failure_threshold"] == 5


def test_update_config_persists_and_refreshes_ai_service(config_service):
    response = TestClient(app).put(
        "/api/rag/config",
        json={"retrieval_max_document_chunks": 8, "generation_temperature": 0.1},
    )

    assert response.status_code == 200
    assert config_service.config.retrieval.max_document_chunks == 8
    assert app.state.ai_service.config is config_service.config
    assert app.state.ai_service.config.generation.temperature == 0.1


def test_update_config_rejects_empty_payload(config_service):
    assert TestClient(app).put("/api/rag/config", json={}).status_code == 400


def test_update_config_rejects_floor_above_min_score(config_service):
    response = TestClient(app).put("/api/rag/config", json={"retrieval_hard_min_score": 0.8})

    assert response.status_code == 400
    assert config_service.config.retrieval.hard_min_score == 0.6


def test_update_config_validates_ranges(config_service):
    response = TestClient(app).put("/api/rag/config", json={"generation_followup_count": 9})

    assert response.status_code == 422
