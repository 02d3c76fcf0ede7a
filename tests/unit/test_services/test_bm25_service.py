import pytest

from src.api.services.bm25_service import Bm25Service


def _seed(service):
    service.upsert_document_chunks(
        user_id="user-a",
        document_id="doc_1",
        topic_id="history",
        chunks=[
            {"chunk_id": "c1", "chunk_index": 0, "content": "hari seldon psychohistory trantor empire"},
            {"chunk_id": "c2", "chunk_index": 1, "content": "seldon heard rumors in the streets"},
        ],
    )
    service.upsert_document_chunks(
        user_id="user-b",
        document_id="doc_2",
        chunks=[{"chunk_id": "c3", "chunk_index": 0, "content": "seldon psychohistory notes of another user"}],
    )


def test_bm25_search_is_scoped_to_user(tmp_path):
    service = Bm25Service(db_path=str(tmp_path / "bm25.sqlite3"))
    _seed(service)

    rows = service.search(user_id="user-a", query="hari seldon psychohistory", top_k=5)

    assert [row["chunk_id"] for row in rows] == ["c1", "c2"]
    assert rows[0]["score"] == 1.0
    assert rows[-1]["score"] == 0.0
    assert rows[0]["document_id"] == "doc_1"
    assert rows[0]["topic_id"] == "history"


def test_bm25_search_filters_topic_and_documents(tmp_path):
    service = Bm25Service(db_path=str(tmp_path / "bm25.sqlite3"))
    _seed(service)

    assert service.search(user_id="user-a", query="seldon", top_k=5, topic_id="other") == []
    assert service.search(user_id="user-b", query="seldon", top_k=5, document_ids=["doc_1"]) == []
    rows = service.search(user_id="user-b", query="seldon", top_k=5, document_ids=["doc_2"])
    assert [row["chunk_id"] for row in rows] == ["c3"]


def test_bm25_search_requires_user(tmp_path):
    service = Bm25Service(db_path=str(tmp_path / "bm25.sqlite3"))

    with pytest.raises(ValueError):
        service.search(user_id="", query="seldon", top_k=5)


def test_blank_query_returns_nothing(tmp_path):
    service = Bm25Service(db_path=str(tmp_path / "bm25.sqlite3"))
    _seed(service)

    assert service.search(user_id="user-a", query="  ?! ", top_k=5) == []


def test_upsert_document_chunks_refreshes_fts_without_duplicates(tmp_path):
    service = Bm25Service(db_path=str(tmp_path / "bm25.sqlite3"))

    service.upsert_document_chunks(
        user_id="user-a",
        document_id="doc_1",
        chunks=[{"chunk_id": "c1", "chunk_index": 0, "content": "alpha beta gamma"}],
    )
    written = service.upsert_document_chunks(
        user_id="user-a",
        document_id="doc_1",
        chunks=[{"chunk_id": "c1", "chunk_index": 0, "content": "alpha beta gamma delta"}],
    )

    rows = service.search(user_id="user-a", query="alpha", top_k=10)
    assert written == 1
    assert [row["chunk_id"] for row in rows] == ["c1"]
    assert rows[0]["content"] == "alpha beta gamma delta"


def test_delete_document_chunks(tmp_path):
    service = Bm25Service(db_path=str(tmp_path / "bm25.sqlite3"))
    _seed(service)

    removed = service.delete_document_chunks(user_id="user-a", document_id="doc_1")

    assert removed == 2
    assert service.search(user_id="user-a", query="seldon", top_k=5) == []
    assert len(service.search(user_id="user-b", query="seldon", top_k=5)) == 1


def test_tokenize_text_drops_punctuation():
    assert Bm25Service.tokenize_text("Hello, World!") == ["hello", "world"]
    assert Bm25Service.tokenize_text("   ") == []
