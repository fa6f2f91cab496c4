from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Optional

from cortex_chat.core.types import now_iso

DEFAULT_TITLE = "New chat"
TITLE_WORDS = 7
TITLE_MAX_CHARS = 60

_WHITESPACE_RE = re.compile(r"\s+")


def derive_title(text: str) -> str:
    cleaned = _WHITESPACE_RE.sub(" ", text or "").strip()
    if not cleaned:
        return DEFAULT_TITLE
    words = " ".join(cleaned.split(" ")[:TITLE_WORDS])
    if len(words) > TITLE_MAX_CHARS:
        return f"{words[:TITLE_MAX_CHARS - 3]}..."
    return words


@dataclass(frozen=True)
class ChatMessage:
    id: str
    thread_id: str
    role: str
    content: str
    created_at: str = field(default_factory=now_iso)
    meta: Optional[Dict[str, Any]] = None
    is_streaming: bool = False

    @classmethod
    def user(cls, thread_id: str, content: str) -> "ChatMessage":
        return cls(id=f"user-{uuid.uuid4()}", thread_id=thread_id, role="user", content=content)

    @classmethod
    def assistant_placeholder(cls, thread_id: str) -> "ChatMessage":
        return cls(
            id=f"assistant-{uuid.uuid4()}",
            thread_id=thread_id,
            role="assistant",
            content="",
            is_streaming=True,
        )

    @classmethod
    def from_payload(cls, payload: Dict[str, Any], thread_id: str) -> Optional["ChatMessage"]:
        role = payload.get("role")
        content = payload.get("content")
        if role not in {"user", "assistant"} or not isinstance(content, str):
            return None
        meta = payload.get("meta")
        return cls(
            id=str(payload.get("id") or f"{role}-{uuid.uuid4()}"),
            thread_id=str(payload.get("threadId") or thread_id),
            role=role,
            content=content,
            created_at=str(payload.get("createdAt") or now_iso()),
            meta=meta if isinstance(meta, dict) else None,
        )

    def append(self, chunk: str) -> "ChatMessage":
        return replace(self, content=self.content + chunk)

    def finish(self) -> "ChatMessage":
        return replace(self, is_streaming=False)


@dataclass
class ChatThread:
    id: str
    title: Optional[str] = None
    created_at: str = field(default_factory=now_iso)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> Optional["ChatThread"]:
        thread_id = payload.get("id")
        if not isinstance(thread_id, str) or not thread_id:
            return None
        title = payload.get("title")
        return cls(
            id=thread_id,
            title=title if isinstance(title, str) else None,
            created_at=str(payload.get("createdAt") or now_iso()),
        )

    @property
    def is_untitled(self) -> bool:
        return not (self.title or "").strip()
