"""
Chat History Store.

FOCUS: Per-session message list shared across instances (Redis) or per process
MUST: Capped per session, expires after inactivity
AVOID: Failing a chat request because history could not be read or written
"""

import json
import logging
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Optional

from ..caching.backends import CacheBackend, CacheBackendError, MemoryBackend
from ..config import settings

logger = logging.getLogger(__name__)

VALID_ROLES = frozenset({"user", "assistant", "system"})


@dataclass
class ChatMessage:
    """Single conversation message."""
    role: str  # "user", "assistant" or "system"
    content: str
    at: str

    @classmethod
    def normalize(cls, message: dict) -> "ChatMessage":
        """Unknown roles become "user"; non-string content becomes empty."""
        role = message.get("role")
        role = role.lower() if isinstance(role, str) else "user"
        if role not in VALID_ROLES:
            role = "user"
        content = message.get("content")
        at = message.get("at") or datetime.now(timezone.utc).isoformat()
        return cls(role=role, content=content if isinstance(content, str) else "", at=str(at))


class ChatHistory:
    """
    Capped per-session history.

    Usage:
        history = ChatHistory(backend=RedisBackend(client))
        await history.append_message(session_id, {"role": "user", "content": "Who is eligible?"})
        messages = await history.get_history(session_id)  # oldest first
    """

    def __init__(
        self,
        backend: Optional[CacheBackend] = None,
        namespace: Optional[str] = None,
        per_session_limit: Optional[int] = None,
        session_ttl_seconds: Optional[int] = None,
        memory_max_sessions: Optional[int] = None,
    ):
        cfg = settings.cache
        self.namespace = namespace or cfg.chat_history_namespace
        limit = per_session_limit if per_session_limit is not None else cfg.chat_history_limit
        self.per_session_limit = limit if limit > 0 else 30
        self.session_ttl_seconds = (
            cfg.chat_history_ttl_seconds if session_ttl_seconds is None else session_ttl_seconds
        )

        if backend is None:
            backend = MemoryBackend(max_items=memory_max_sessions or cfg.chat_history_memory_max_sessions)
            logger.warning("Redis not configured; chat history is using in-memory LRU")
        self.backend = backend

    def key(self, session_id: str) -> str:
        return f"{self.namespace}:s:{session_id}"

    async def append_message(self, session_id: str, message: dict) -> None:
        if not session_id:
            return
        payload = ChatMessage.normalize(message or {})
        try:
            await self.backend.lpush_capped(
                self.key(session_id),
                json.dumps(asdict(payload)),
                limit=self.per_session_limit,
                ttl_seconds=self.session_ttl_seconds,
            )
        except CacheBackendError as e:
            logger.warning(f"ChatHistory append failed for session={session_id}: {e}")

    async def get_history(self, session_id: str) -> list[dict]:
        """Messages oldest first; unreadable entries are skipped."""
        if not session_id:
            return []
        try:
            raws = await self.backend.lrange(self.key(session_id), self.per_session_limit)
        except CacheBackendError as e:
            logger.warning(f"ChatHistory read failed for session={session_id}: {e}")
            return []

        messages = []
        for raw in raws:
            try:
                messages.append(json.loads(raw))
            except (TypeError, ValueError):
                continue
        messages.reverse()
        return messages

    async def clear(self, session_id: str) -> None:
        if not session_id:
            return
        try:
            await self.backend.delete(self.key(session_id))
        except CacheBackendError as e:
            logger.warning(f"ChatHistory clear failed for session={session_id}: {e}")
