"""
BM25 Service

SQLite FTS5 keyword index over document chunks, partitioned by user.
Text is segmented with jieba so mixed CJK / Latin content matches.
"""
from __future__ import annotations

import logging
import re
import sqlite3
from pathlib import Path
from threading import Lock
from typing import Dict, List, Optional, Sequence

import jieba

from ..config import settings
from ..paths import repo_root

logger = logging.getLogger(__name__)

_PUNCT_RE = re.compile(r"[\W_]+")


class Bm25Service:
    """Chunk-level BM25 indexing and retrieval."""

    def __init__(self, db_path: Optional[str] = None):
        db_path_obj = Path(db_path) if db_path is not None else Path(settings.keyword_index_path)
        if not db_path_obj.is_absolute():
            db_path_obj = repo_root() / db_path_obj
        db_path_obj.parent.mkdir(parents=True, exist_ok=True)

        self.db_path = db_path_obj
        self._lock = Lock()
        self._ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), timeout=30, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS keyword_chunks (
                    chunk_id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    topic_id TEXT,
                    document_id TEXT NOT NULL,
                    chunk_index INTEGER NOT NULL,
                    content TEXT NOT NULL,
                    tokenized TEXT NOT NULL,
                    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_keyword_chunks_owner ON keyword_chunks (user_id, document_id)"
            )
            conn.execute(
                """
                CREATE VIRTUAL TABLE IF NOT EXISTS keyword_fts
                USING fts5(
                    chunk_id UNINDEXED,
                    tokenized,
                    tokenize='unicode61'
                )
                """
            )
            conn.commit()

    @staticmethod
    def tokenize_text(text: str) -> List[str]:
        raw = (text or "").strip()
        if not raw:
            return []
        tokens = [tok.strip().lower() for tok in jieba.lcut_for_search(raw)]
        return [tok for tok in tokens if tok and not _PUNCT_RE.fullmatch(tok)]

    @classmethod
    def _match_expression(cls, query: str) -> str:
        unique: List[str] = []
        for tok in cls.tokenize_text(query):
            if tok not in unique:
                unique.append(tok)
        quoted = ['"' + tok.replace('"', '""') + '"' for tok in unique]
        return " OR ".join(quoted)

    def upsert_document_chunks(
        self,
        *,
        user_id: str,
        document_id: str,
        chunks: List[Dict[str, object]],
        topic_id: Optional[str] = None,
    ) -> int:
        """Replace all indexed chunks of one document. Returns rows written."""
        if not user_id or not document_id:
            raise ValueError("user_id and document_id are required")

        written = 0
        with self._lock, self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute("BEGIN")
            try:
                self._delete_rows(cursor, "user_id = ? AND document_id = ?", (user_id, document_id))
                for row in chunks:
                    chunk_index = int(row.get("chunk_index", 0) or 0)
                    chunk_id = str(row.get("chunk_id") or f"{document_id}_{chunk_index}")
                    content = str(row.get("content") or "")
                    tokenized = " ".join(self.tokenize_text(content))
                    cursor.execute(
                        """
                        INSERT OR REPLACE INTO keyword_chunks (
                            chunk_id, user_id, topic_id, document_id, chunk_index, content, tokenized, updated_at
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, CURRENT_TIMESTAMP)
                        """,
                        (chunk_id, user_id, topic_id, document_id, chunk_index, content, tokenized),
                    )
                    cursor.execute(
                        "INSERT INTO keyword_fts (chunk_id, tokenized) VALUES (?, ?)",
                        (chunk_id, tokenized),
                    )
                    written += 1
                conn.commit()
            except Exception:
                conn.rollback()
                raise
        return written

    @staticmethod
    def _delete_rows(cursor: sqlite3.Cursor, where: str, params: Sequence[object]) -> int:
        rows = cursor.execute(f"SELECT chunk_id FROM keyword_chunks WHERE {where}", params).fetchall()
        chunk_ids = [str(item["chunk_id"]) for item in rows]
        if chunk_ids:
            placeholders = ",".join("?" for _ in chunk_ids)
            cursor.execute(f"DELETE FROM keyword_fts WHERE chunk_id IN ({placeholders})", chunk_ids)
            cursor.execute(f"DELETE FROM keyword_chunks WHERE chunk_id IN ({placeholders})", chunk_ids)
        return len(chunk_ids)

    def delete_document_chunks(self, *, user_id: str, document_id: str) -> int:
        with self._lock, self._connect() as conn:
            removed = self._delete_rows(conn.cursor(), "user_id = ? AND document_id = ?", (user_id, document_id))
            conn.commit()
        return removed

    def search(
        self,
        *,
        user_id: str,
        query: str,
        top_k: int,
        topic_id: Optional[str] = None,
        document_ids: Optional[Sequence[str]] = None,
    ) -> List[Dict[str, object]]:
        """
        BM25 search restricted to one user's chunks.

        Scores are min-max normalized so the best hit is 1.0 (SQLite bm25()
        returns lower-is-better negatives).
        """
        if not user_id:
            raise ValueError("user_id is required for keyword search")
        match_expr = self._match_expression(query)
        if not match_expr:
            return []

        where = ["keyword_fts.tokenized MATCH ?", "c.user_id = ?"]
        params: List[object] = [match_expr, user_id]
        if topic_id:
            where.append("c.topic_id = ?")
            params.append(topic_id)
        if document_ids:
            ids = [str(doc_id) for doc_id in document_ids]
            where.append(f"c.document_id IN ({','.join('?' for _ in ids)})")
            params.extend(ids)
        params.append(max(1, int(top_k)))

        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT
                    c.chunk_id,
                    c.topic_id,
                    c.document_id,
                    c.chunk_index,
                    c.content,
                    bm25(keyword_fts) AS bm25_score
                FROM keyword_fts
                JOIN keyword_chunks c ON c.chunk_id = keyword_fts.chunk_id
                WHERE {' AND '.join(where)}
                ORDER BY bm25_score ASC
                LIMIT ?
                """,
                params,
            ).fetchall()

        if not rows:
            return []

        raw_scores = [float(row["bm25_score"]) for row in rows]
        low, high = min(raw_scores), max(raw_scores)
        if high - low <= 1e-12:
            normalized = [1.0] * len(raw_scores)
        else:
            normalized = [(high - val) / (high - low) for val in raw_scores]

        return [
            {
                "chunk_id": str(row["chunk_id"]),
                "document_id": str(row["document_id"]),
                "topic_id": row["topic_id"],
                "chunk_index": int(row["chunk_index"]),
                "content": str(row["content"]),
                "score": float(normalized[i]),
                "bm25_score": float(row["bm25_score"]),
            }
            for i, row in enumerate(rows)
        ]
