from __future__ import annotations

import codecs
import logging
from typing import Any, AsyncIterator, Dict, List, Optional
from urllib.parse import quote

import httpx

from cortex_chat.client.models import ChatMessage, ChatThread
from cortex_chat.core.cancellation import CancelToken
from cortex_chat.core.errors import read_error_message
from cortex_chat.core.router import AGENT_TRACE_HEADER, ROUTE_MODE_HEADER, ROUTE_WARNING_HEADER
from cortex_chat.core.sse import iter_sse_tokens
from cortex_chat.core.trace import decode_trace_header

logger = logging.getLogger(__name__)


class ChatApiError(Exception):
    def __init__(self, message: str, status_code: int = 0, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.details = details


def _error_details(payload: Any) -> Optional[Dict[str, Any]]:
    if isinstance(payload, dict) and isinstance(payload.get("error"), dict):
        details = payload["error"].get("details")
        if isinstance(details, dict):
            return details
    return None


def _path_id(value: str) -> str:
    return quote(value, safe="")


async def _raise_for_error(response: httpx.Response, default_message: str) -> None:
    if response.status_code < 400:
        return
    raw = await response.aread()
    payload: Any = None
    if raw:
        try:
            payload = response.json()
        except ValueError:
            payload = None
    message = read_error_message(payload) or default_message
    raise ChatApiError(message, response.status_code, _error_details(payload))


class MessageStream:
    """An open assistant reply. Iterate ``chunks()`` for decoded text, then ``aclose()``."""

    def __init__(self, response: httpx.Response, cancel: CancelToken) -> None:
        self._response = response
        self._cancel = cancel
        self.route_mode: Optional[str] = response.headers.get(ROUTE_MODE_HEADER)
        self.route_warning: Optional[str] = response.headers.get(ROUTE_WARNING_HEADER)
        self.trace: Optional[Dict[str, Any]] = decode_trace_header(response.headers.get(AGENT_TRACE_HEADER))

    @property
    def is_event_stream(self) -> bool:
        return self._response.headers.get("content-type", "").lower().startswith("text/event-stream")

    async def _plain_text(self) -> AsyncIterator[str]:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        async for raw in self._response.aiter_bytes():
            text = decoder.decode(raw)
            if text:
                yield text
        tail = decoder.decode(b"", final=True)
        if tail:
            yield tail

    async def chunks(self) -> AsyncIterator[str]:
        source = iter_sse_tokens(self._response.aiter_bytes()) if self.is_event_stream else self._plain_text()
        while True:
            try:
                chunk = await self._cancel.run(source.__anext__())
            except StopAsyncIteration:
                return
            if chunk:
                yield chunk

    async def aclose(self) -> None:
        await self._response.aclose()


class ChatApiClient:
    """HTTP client for the chat gateway's ``/api/chat`` routes."""

    def __init__(
        self,
        base_url: str,
        client: Optional[httpx.AsyncClient] = None,
        headers: Optional[Dict[str, str]] = None,
        timeout: float = 60.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._headers = dict(headers or {})

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _request(self, method: str, path: str, default_message: str, **kwargs) -> Dict[str, Any]:
        try:
            response = await self._client.request(method, f"{self.base_url}{path}", headers=self._headers, **kwargs)
        except httpx.TransportError as exc:
            raise ChatApiError(f"{default_message} ({exc})") from exc
        await _raise_for_error(response, default_message)
        try:
            payload = response.json()
        except ValueError:
            return {}
        return payload if isinstance(payload, dict) else {}

    async def list_threads(self) -> Dict[str, Any]:
        payload = await self._request("GET", "/api/chat/threads", "Failed to load threads.")
        threads: List[ChatThread] = []
        for row in payload.get("threads") or []:
            if isinstance(row, dict):
                thread = ChatThread.from_payload(row)
                if thread is not None:
                    threads.append(thread)
        return {
            "user_id": payload.get("userId"),
            "threads": threads,
            "degraded": bool(payload.get("degraded")),
            "warning": payload.get("warning"),
        }

    async def create_thread(self, title: Optional[str] = None) -> ChatThread:
        body = {"title": title} if title else {}
        payload = await self._request("POST", "/api/chat/threads", "Unable to create a new chat thread.", json=body)
        thread_id = payload.get("threadId")
        if not isinstance(thread_id, str) or not thread_id:
            raise ChatApiError("Unable to create a new chat thread.", 502)
        if payload.get("degraded"):
            logger.warning("thread created in degraded mode id=%s warning=%s", thread_id, payload.get("warning"))
        return ChatThread(id=thread_id, title=title)

    async def rename_thread(self, thread_id: str, title: str) -> None:
        await self._request("PATCH", f"/api/chat/{_path_id(thread_id)}", "Failed to rename thread.", json={"title": title})

    async def delete_thread(self, thread_id: str) -> None:
        await self._request("DELETE", f"/api/chat/{_path_id(thread_id)}", "Failed to delete thread.")

    async def list_messages(self, thread_id: str) -> List[ChatMessage]:
        payload = await self._request("GET", f"/api/chat/{_path_id(thread_id)}/messages", "Failed to load messages.")
        messages: List[ChatMessage] = []
        for row in payload.get("messages") or []:
            if isinstance(row, dict):
                message = ChatMessage.from_payload(row, thread_id)
                if message is not None:
                    messages.append(message)
        return messages

    async def open_message_stream(self, thread_id: str, text: str, cancel: CancelToken) -> MessageStream:
        request = self._client.build_request(
            "POST",
            f"{self.base_url}/api/chat/{_path_id(thread_id)}/messages",
            json={"text": text},
            headers=self._headers,
        )
        try:
            response = await cancel.run(self._client.send(request, stream=True))
        except httpx.TransportError as exc:
            raise ChatApiError(f"Assistant request failed ({exc})") from exc
        try:
            await _raise_for_error(response, "Assistant request failed.")
        except ChatApiError:
            await response.aclose()
            raise
        return MessageStream(response, cancel)
