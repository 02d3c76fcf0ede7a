"""
Document Store

Row store for documents and topics (JSON files written with aiofiles).
Conversation messages are delegated to ConversationStore.
"""
import asyncio
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import aiofiles

from ..paths import data_state_dir
from .conversation_store import ConversationStore

logger = logging.getLogger(__name__)


class DocumentStore:
    """Batch-get / get / put access to document and topic rows."""

    def __init__(self, base_dir: Optional[Path] = None):
        self.base_dir = Path(base_dir) if base_dir is not None else data_state_dir() / "rag_store"
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self.documents_path = self.base_dir / "documents.json"
        self.topics_path = self.base_dir / "topics.json"
        self.conversations = ConversationStore(self.base_dir / "conversations")
        self._write_lock = asyncio.Lock()

    async def _read_table(self, path: Path) -> Dict[str, Dict[str, Any]]:
        if not path.exists():
            return {}
        async with aiofiles.open(path, 'r', encoding='utf-8') as f:
            raw = await f.read()
        if not raw.strip():
            return {}
        data = json.loads(raw)
        return data if isinstance(data, dict) else {}

    async def _write_table(self, path: Path, table: Dict[str, Dict[str, Any]]) -> None:
        tmp_path = path.with_suffix(".tmp")
        async with aiofiles.open(tmp_path, 'w', encoding='utf-8') as f:
            await f.write(json.dumps(table, ensure_ascii=False, indent=2))
        tmp_path.replace(path)

    async def get_documents_by_ids(self, document_ids: Sequence[str], user_id: Optional[str] = None) -> Dict[str, Dict[str, Any]]:
        """Return {document_id: row} for the ids that exist (and belong to user_id, if given)."""
        wanted = {str(doc_id) for doc_id in document_ids if doc_id}
        if not wanted:
            return {}
        table = await self._read_table(self.documents_path)
        rows = {}
        for doc_id in wanted:
            row = table.get(doc_id)
            if row is None:
                continue
            if user_id and row.get("user_id") and row.get("user_id") != user_id:
                continue
            rows[doc_id] = row
        return rows

    async def put_document(self, document: Dict[str, Any]) -> Dict[str, Any]:
        doc_id = str(document.get("id") or "").strip()
        if not doc_id:
            raise ValueError("Document id is required")
        async with self._write_lock:
            table = await self._read_table(self.documents_path)
            row = dict(table.get(doc_id, {}))
            row.update(document)
            row["id"] = doc_id
            row.setdefault("created_at", datetime.now().isoformat())
            row["updated_at"] = datetime.now().isoformat()
            table[doc_id] = row
            await self._write_table(self.documents_path, table)
        return row

    async def get_topic(self, topic_id: str, user_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        if not topic_id:
            return None
        table = await self._read_table(self.topics_path)
        row = table.get(str(topic_id))
        if row is None:
            return None
        if user_id and row.get("user_id") and row.get("user_id") != user_id:
            return None
        return row

    async def put_topic(self, topic: Dict[str, Any]) -> Dict[str, Any]:
        topic_id = str(topic.get("id") or "").strip()
        if not topic_id:
            raise ValueError("Topic id is required")
        async with self._write_lock:
            table = await self._read_table(self.topics_path)
            row = dict(table.get(topic_id, {}))
            row.update(topic)
            row["id"] = topic_id
            table[topic_id] = row
            await self._write_table(self.topics_path, table)
        return row

    async def get_conversation_messages(
        self,
        conversation_id: str,
        user_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Most recent messages of a conversation, oldest first."""
        messages = await self.conversations.get_messages(conversation_id, user_id=user_id)
        if limit is not None and limit >= 0:
            messages = messages[-limit:] if limit else []
        return messages

    async def create_message(self, conversation_id: str, **kwargs) -> str:
        return await self.conversations.append_message(conversation_id, **kwargs)
