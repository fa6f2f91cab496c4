from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional
from urllib.parse import quote

import httpx

from cortex_chat.core.cancellation import CancelToken
from cortex_chat.core.errors import MemoryApiError, UnsupportedCapabilityError, read_error_message
from cortex_chat.core.settings import Settings
from cortex_chat.core.types import ContextMessage, EventRecord, ThreadRecord, normalize_timestamp

logger = logging.getLogger(__name__)

ALLOWED_REACTIONS = ("thumbs_up", "heart", "angry", "sad", "brain")


class MemoryCapability(str, Enum):
    CHAT = "chat"
    LIST_THREADS = "list_threads"
    RENAME_THREAD = "rename_thread"
    DELETE_THREAD = "delete_thread"
    PROMOTE_THREAD = "promote_thread"
    SUMMARY = "summary"
    REACTIONS = "reactions"


class MemoryProvider(ABC):
    """Contract with the external memory service.

    The thread/event core is mandatory. Everything else is advertised through
    ``capabilities`` and callers probe with ``supports()`` before using it; the
    default implementations raise ``UnsupportedCapabilityError``.
    """

    capabilities: FrozenSet[MemoryCapability] = frozenset()

    def supports(self, capability: MemoryCapability) -> bool:
        return capability in self.capabilities

    def with_authorization(self, authorization: Optional[str]) -> "MemoryProvider":
        return self

    @abstractmethod
    async def start_thread(self, user_id: str, title: Optional[str] = None) -> str:
        ...

    @abstractmethod
    async def add_event(self, thread_id: str, role: str, content: str, meta: Optional[Dict[str, Any]] = None) -> str:
        ...

    @abstractmethod
    async def get_recent_events(self, thread_id: str, limit: int = 30) -> List[EventRecord]:
        ...

    @abstractmethod
    async def build_memory_context(
        self, thread_id: str, latest_user_text: str, short_term_limit: int = 30
    ) -> List[ContextMessage]:
        ...

    async def add_user_event(self, thread_id: str, text: str, meta: Optional[Dict[str, Any]] = None) -> str:
        return await self.add_event(thread_id, "user", text, meta)

    async def add_assistant_event(self, thread_id: str, text: str, meta: Optional[Dict[str, Any]] = None) -> str:
        return await self.add_event(thread_id, "assistant", text, meta)

    async def open_chat(self, thread_id: str, text: str, cancel: Optional[CancelToken] = None) -> httpx.Response:
        raise UnsupportedCapabilityError(MemoryCapability.CHAT.value)

    async def list_threads(self, user_id: str, limit: int = 50) -> List[ThreadRecord]:
        raise UnsupportedCapabilityError(MemoryCapability.LIST_THREADS.value)

    async def rename_thread(self, thread_id: str, title: str) -> None:
        raise UnsupportedCapabilityError(MemoryCapability.RENAME_THREAD.value)

    async def delete_thread(self, thread_id: str) -> None:
        raise UnsupportedCapabilityError(MemoryCapability.DELETE_THREAD.value)

    async def promote_thread(self, thread_id: str) -> Dict[str, Any]:
        raise UnsupportedCapabilityError(MemoryCapability.PROMOTE_THREAD.value)

    async def get_active_summary(self, thread_id: str) -> Optional[str]:
        raise UnsupportedCapabilityError(MemoryCapability.SUMMARY.value)

    async def set_event_reaction(self, thread_id: str, event_id: str, reaction: Optional[str]) -> Dict[str, Any]:
        raise UnsupportedCapabilityError(MemoryCapability.REACTIONS.value)


def _path_id(value: str) -> str:
    return quote(value, safe="")


def _parse_event(row: Dict[str, Any], thread_id: str) -> Optional[EventRecord]:
    role = row.get("role") or row.get("actor")
    content = row.get("content")
    if role not in {"user", "assistant"} or not isinstance(content, str):
        return None
    meta = row.get("meta")
    return EventRecord(
        id=str(row.get("id") or ""),
        thread_id=str(row.get("thread_id") or thread_id),
        role=role,
        content=content,
        created_at=normalize_timestamp(row.get("created_at")),
        meta=meta if isinstance(meta, dict) and meta else None,
    )


class CortexHttpProvider(MemoryProvider):
    capabilities = frozenset(MemoryCapability)

    def __init__(
        self,
        settings: Settings,
        client: httpx.AsyncClient,
        *,
        authorization: Optional[str] = None,
    ) -> None:
        self._settings = settings
        self._client = client
        self._base_url = settings.memory_base_url
        self._timeout = settings.memory_timeout_ms / 1000.0
        self.authorization = authorization

    def with_authorization(self, authorization: Optional[str]) -> "CortexHttpProvider":
        return CortexHttpProvider(self._settings, self._client, authorization=authorization)

    def _headers(self) -> Dict[str, str]:
        headers = {"content-type": "application/json"}
        if self._settings.memory_api_key:
            headers["x-api-key"] = self._settings.memory_api_key
        if self.authorization:
            headers["authorization"] = self.authorization
        return headers

    async def _request_json(
        self,
        method: str,
        path: str,
        *,
        body: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        try:
            response = await self._client.request(
                method,
                f"{self._base_url}{path}",
                json=body,
                params=params,
                headers=self._headers(),
                timeout=self._timeout,
            )
        except httpx.TransportError as exc:
            logger.warning("memory api %s %s unreachable: %s", method, path, exc)
            raise MemoryApiError(f"Memory API is unreachable: {exc}", 503) from exc

        payload: Any = None
        if response.content:
            try:
                payload = response.json()
            except ValueError:
                payload = None

        if response.status_code >= 400:
            message = read_error_message(payload) or f"Memory API request failed with status {response.status_code}."
            raise MemoryApiError(message, response.status_code)
        return payload if isinstance(payload, dict) else {}

    async def start_thread(self, user_id: str, title: Optional[str] = None) -> str:
        body: Dict[str, Any] = {"user_id": user_id}
        if title:
            body["title"] = title
        payload = await self._request_json("POST", "/v1/threads", body=body)
        thread_id = payload.get("thread_id")
        if not thread_id:
            raise MemoryApiError("Missing thread_id from memory API.", 502)
        return str(thread_id)

    async def open_chat(self, thread_id: str, text: str, cancel: Optional[CancelToken] = None) -> httpx.Response:
        """Open a streamed chat response; the caller owns closing it."""
        request = self._client.build_request(
            "POST",
            f"{self._base_url}/v1/threads/{_path_id(thread_id)}/chat",
            json={"text": text},
            headers=self._headers(),
            timeout=self._timeout,
        )
        sending = self._client.send(request, stream=True)
        try:
            response = await (cancel.run(sending) if cancel else sending)
        except httpx.TransportError as exc:
            logger.warning("memory chat unreachable thread=%s: %s", thread_id, exc)
            raise MemoryApiError(f"Memory API is unreachable: {exc}", 503) from exc

        if response.status_code >= 400:
            raw = await response.aread()
            await response.aclose()
            detail = raw.decode("utf-8", errors="replace").strip()
            try:
                message = read_error_message(json.loads(detail)) if detail else None
            except ValueError:
                message = None
            raise MemoryApiError(
                message or detail or f"Memory API chat request failed with status {response.status_code}.",
                response.status_code,
            )
        return response

    async def list_threads(self, user_id: str, limit: int = 50) -> List[ThreadRecord]:
        payload = await self._request_json("GET", "/v1/threads", params={"user_id": user_id, "limit": limit})
        threads: List[ThreadRecord] = []
        for row in payload.get("threads") or []:
            if not isinstance(row, dict):
                continue
            threads.append(
                ThreadRecord(
                    id=str(row.get("id") or ""),
                    user_id=str(row.get("user_id") or user_id),
                    title=row.get("title") if isinstance(row.get("title"), str) else None,
                    created_at=normalize_timestamp(row.get("created_at")),
                )
            )
        return threads

    async def rename_thread(self, thread_id: str, title: str) -> None:
        await self._request_json("PATCH", f"/v1/threads/{_path_id(thread_id)}", body={"title": title})

    async def delete_thread(self, thread_id: str) -> None:
        await self._request_json("DELETE", f"/v1/threads/{_path_id(thread_id)}")

    async def add_event(self, thread_id: str, role: str, content: str, meta: Optional[Dict[str, Any]] = None) -> str:
        payload = await self._request_json(
            "POST",
            f"/v1/threads/{_path_id(thread_id)}/events",
            body={"actor": role, "content": content, "meta": meta or {}},
        )
        event_id = payload.get("event_id")
        if not event_id:
            raise MemoryApiError("Missing event_id from memory API.", 502)
        return str(event_id)

    async def build_memory_context(
        self, thread_id: str, latest_user_text: str, short_term_limit: int = 30
    ) -> List[ContextMessage]:
        payload = await self._request_json(
            "POST",
            f"/v1/threads/{_path_id(thread_id)}/memory-context",
            body={"latest_user_text": latest_user_text, "short_term_limit": short_term_limit},
        )
        context: List[ContextMessage] = []
        for row in payload.get("messages") or []:
            if not isinstance(row, dict):
                continue
            role = row.get("role")
            content = row.get("content")
            if role in {"system", "user", "assistant"} and isinstance(content, str):
                context.append(ContextMessage(role=role, content=content))
        return context

    async def get_recent_events(self, thread_id: str, limit: int = 30) -> List[EventRecord]:
        payload = await self._request_json(
            "GET", f"/v1/threads/{_path_id(thread_id)}/events", params={"limit": limit}
        )
        events: List[EventRecord] = []
        for row in payload.get("messages") or []:
            if not isinstance(row, dict):
                continue
            event = _parse_event(row, thread_id)
            if event is not None:
                events.append(event)
        return events

    async def get_active_summary(self, thread_id: str) -> Optional[str]:
        payload = await self._request_json("GET", f"/v1/threads/{_path_id(thread_id)}/summary")
        summary = payload.get("summary")
        if isinstance(summary, str) and summary.strip():
            return summary.strip()
        return None

    async def promote_thread(self, thread_id: str) -> Dict[str, Any]:
        payload = await self._request_json("POST", f"/v1/threads/{_path_id(thread_id)}/promote")
        summary = payload.get("summary")
        return {
            "summary": summary if isinstance(summary, str) else None,
            "summaryUpdated": bool(payload.get("summary_updated")),
            "isCoreMemory": bool(payload.get("is_core_memory", True)),
        }

    async def set_event_reaction(self, thread_id: str, event_id: str, reaction: Optional[str]) -> Dict[str, Any]:
        payload = await self._request_json(
            "POST",
            f"/v1/threads/{_path_id(thread_id)}/events/{_path_id(event_id)}/reaction",
            body={"reaction": reaction},
        )
        stored = payload.get("reaction")
        return {
            "reaction": stored if isinstance(stored, str) else None,
            "summaryUpdated": bool(payload.get("summary_updated")),
        }
