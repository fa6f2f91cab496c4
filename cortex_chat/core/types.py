from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

LOCAL_THREAD_PREFIX = "local-"
DRAFT_THREAD_PREFIX = "draft-"

ROUTE_AGENT = "agent"
ROUTE_AGENT_FALLBACK = "agent_fallback"
ROUTE_MEMORY_DIRECT = "memory_direct"


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def normalize_timestamp(raw: Any) -> str:
    if isinstance(raw, datetime):
        value = raw if raw.tzinfo else raw.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat()
    if isinstance(raw, str) and raw.strip():
        text = raw.strip()
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return text
        return normalize_timestamp(parsed)
    return now_iso()


def is_local_thread_id(thread_id: str) -> bool:
    return thread_id.startswith(LOCAL_THREAD_PREFIX)


def is_draft_thread_id(thread_id: str) -> bool:
    return thread_id.startswith(DRAFT_THREAD_PREFIX)


def is_unpersisted_thread_id(thread_id: str) -> bool:
    return is_local_thread_id(thread_id) or is_draft_thread_id(thread_id)


@dataclass
class ThreadRecord:
    id: str
    user_id: str
    title: Optional[str]
    created_at: str

    def to_payload(self) -> Dict[str, Any]:
        return {"id": self.id, "userId": self.user_id, "title": self.title, "createdAt": self.created_at}


@dataclass
class EventRecord:
    id: str
    thread_id: str
    role: str
    content: str
    created_at: str
    meta: Optional[Dict[str, Any]] = None

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "threadId": self.thread_id,
            "role": self.role,
            "content": self.content,
            "createdAt": self.created_at,
        }
        if self.meta:
            payload["meta"] = self.meta
        return payload


@dataclass
class ContextMessage:
    role: str
    content: str

    def to_payload(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass
class RouteDecision:
    mode: str
    warning: Optional[str] = None


@dataclass
class AgentStep:
    action: str
    tool: Optional[str] = None
    success: Optional[bool] = None
    reason: Optional[str] = None


@dataclass
class AgentTrace:
    action: str
    reason: Optional[str] = None
    confidence: Optional[float] = None
    capabilities: List[str] = field(default_factory=list)
    steps: List[AgentStep] = field(default_factory=list)

    def to_payload(self, *, include_steps: bool = True) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"action": self.action, "capabilities": list(self.capabilities)}
        if self.reason:
            payload["reason"] = self.reason
        if self.confidence is not None:
            payload["confidence"] = self.confidence
        if include_steps and self.steps:
            payload["steps"] = [
                {key: value for key, value in asdict(step).items() if value is not None} for step in self.steps
            ]
        return payload
