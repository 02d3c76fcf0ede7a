"""Conversation storage using Markdown files with YAML frontmatter."""

import asyncio
import json
import re
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiofiles
import frontmatter

_HEADER_RE = re.compile(r'^## (User|Assistant) \((\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2})\)$')
_COMMENT_RE = re.compile(r'^<!-- (message_id|sources|usage): (.+) -->$')
_SAFE_ID_RE = re.compile(r'^[A-Za-z0-9_.-]{1,128}$')


class ConversationStore:
    """Stores question/answer turns, one .md file per conversation.

    Frontmatter holds conversation metadata (conversation_id, user_id,
    topic_id, created_at); the body holds timestamped messages.
    """

    def __init__(self, conversations_dir: Path):
        self.conversations_dir = Path(conversations_dir)
        self.conversations_dir.mkdir(parents=True, exist_ok=True)
        # Per-file locks to prevent concurrent read-modify-write corruption
        self._file_locks: Dict[str, asyncio.Lock] = {}

    def _path(self, conversation_id: str) -> Path:
        if not _SAFE_ID_RE.match(str(conversation_id or "")):
            raise ValueError(f"Invalid conversation id: {conversation_id!r}")
        return self.conversations_dir / f"{conversation_id}.md"

    def _lock(self, conversation_id: str) -> asyncio.Lock:
        lock = self._file_locks.get(conversation_id)
        if lock is None:
            lock = asyncio.Lock()
            self._file_locks[conversation_id] = lock
        return lock

    async def _read_post(self, path: Path) -> Optional[frontmatter.Post]:
        if not path.exists():
            return None
        async with aiofiles.open(path, 'r', encoding='utf-8') as f:
            content = await f.read()
        return frontmatter.loads(content)

    async def get_messages(self, conversation_id: str, user_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Load messages in order. Missing or foreign conversations return []."""
        post = await self._read_post(self._path(conversation_id))
        if post is None:
            return []
        owner = post.metadata.get("user_id")
        if user_id and owner and owner != user_id:
            return []
        return self._parse_messages(post.content)

    async def append_message(
        self,
        conversation_id: str,
        *,
        role: str,
        content: str,
        user_id: Optional[str] = None,
        topic_id: Optional[str] = None,
        sources: Optional[List[Dict[str, Any]]] = None,
        usage: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Append one message, creating the conversation file on first write."""
        if role not in ("user", "assistant"):
            raise ValueError(f"Unsupported role: {role}")
        path = self._path(conversation_id)
        message_id = str(uuid.uuid4())
        timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')

        async with self._lock(conversation_id):
            post = await self._read_post(path)
            if post is None:
                post = frontmatter.Post("")
                post.metadata = {
                    "conversation_id": conversation_id,
                    "user_id": user_id,
                    "topic_id": topic_id,
                    "created_at": timestamp,
                }

            lines = [f"## {role.capitalize()} ({timestamp})", f'<!-- message_id: "{message_id}" -->']
            if sources:
                lines.append(f"<!-- sources: {json.dumps(sources, ensure_ascii=False)} -->")
            if usage:
                lines.append(f"<!-- usage: {json.dumps(usage)} -->")
            lines.append("")
            lines.append(content)
            body = post.content.rstrip("\n")
            post.content = (body + "\n\n" if body else "") + "\n".join(lines) + "\n"
            post.metadata["updated_at"] = timestamp

            async with aiofiles.open(path, 'w', encoding='utf-8') as f:
                await f.write(frontmatter.dumps(post))

        return message_id

    @staticmethod
    def _parse_messages(content: str) -> List[Dict[str, Any]]:
        messages: List[Dict[str, Any]] = []
        current: Optional[Dict[str, Any]] = None
        body_lines: List[str] = []

        def _flush():
            if current is not None:
                current["content"] = "\n".join(body_lines).strip()
                messages.append(current)

        for line in content.split('\n'):
            header = _HEADER_RE.match(line)
            if header:
                _flush()
                current = {"role": header.group(1).lower(), "created_at": header.group(2)}
                body_lines = []
                continue
            if current is None:
                continue
            comment = _COMMENT_RE.match(line.strip())
            if comment:
                key, raw = comment.groups()
                if key == "message_id":
                    current["message_id"] = raw.strip('"')
                else:
                    try:
                        current[key] = json.loads(raw)
                    except json.JSONDecodeError:
                        current[key] = None
                continue
            body_lines.append(line)

        _flush()
        return messages
