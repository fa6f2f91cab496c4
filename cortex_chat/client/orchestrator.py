from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

import httpx

from cortex_chat.client.api import ChatApiClient, ChatApiError, MessageStream
from cortex_chat.client.models import ChatMessage, ChatThread, derive_title
from cortex_chat.client.session_cache import ThreadSessionCache
from cortex_chat.core.cancellation import CancelToken
from cortex_chat.core.errors import OperationCancelled
from cortex_chat.core.metrics import metrics
from cortex_chat.core.types import LOCAL_THREAD_PREFIX, is_unpersisted_thread_id

logger = logging.getLogger(__name__)

OFFLINE_APOLOGY = (
    "I could not reach the assistant backend, so this is an offline placeholder reply. "
    "Your message was kept and you can send it again once the connection is back."
)
DEFAULT_MAX_MESSAGE_CHARS = 6000


class TurnState(str, Enum):
    IDLE = "idle"
    CREATING_THREAD = "creating_thread"
    SUBMITTING = "submitting"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REJECTED = "rejected"


@dataclass
class TurnResult:
    state: TurnState
    thread_id: Optional[str] = None
    assistant_message_id: Optional[str] = None
    content: str = ""
    error: Optional[str] = None
    status_code: Optional[int] = None
    route_mode: Optional[str] = None
    route_warning: Optional[str] = None
    degraded: bool = False


def _patch_message(message_id: str, change: Callable[[ChatMessage], ChatMessage]):
    def updater(existing: List[ChatMessage]) -> List[ChatMessage]:
        return [change(message) if message.id == message_id else message for message in existing]

    return updater


class ChatTurnOrchestrator:
    """Drives chat turns from submitted text to a finished assistant message.

    One turn runs at a time. Every turn writes into the cache entry of the thread
    it started on, whichever thread is on screen when the chunks arrive.
    """

    def __init__(
        self,
        api: ChatApiClient,
        cache: Optional[ThreadSessionCache] = None,
        *,
        allow_local_fallback: bool = True,
        max_message_chars: int = DEFAULT_MAX_MESSAGE_CHARS,
    ) -> None:
        self.api = api
        self.cache = cache or ThreadSessionCache()
        self.allow_local_fallback = allow_local_fallback
        self.max_message_chars = max_message_chars
        self.threads: List[ChatThread] = []
        self.error: Optional[str] = None
        self.state = TurnState.IDLE
        self.is_bootstrapping = False
        self._active_cancel: Optional[CancelToken] = None
        self._background: Set[asyncio.Task] = set()
        self._load_counter = 0

    @property
    def thread_id(self) -> Optional[str]:
        return self.cache.active_thread_id

    @property
    def messages(self) -> List[ChatMessage]:
        return self.cache.rendered

    @property
    def is_streaming(self) -> bool:
        return self._active_cancel is not None

    def clear_error(self) -> None:
        self.error = None

    def find_thread(self, thread_id: str) -> Optional[ChatThread]:
        for thread in self.threads:
            if thread.id == thread_id:
                return thread
        return None

    def _set_title(self, thread_id: str, title: str) -> None:
        self.threads = [replace(thread, title=title) if thread.id == thread_id else thread for thread in self.threads]

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def wait_background(self) -> None:
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def aclose(self) -> None:
        self.cancel_active_turn("closing")
        await self.wait_background()

    def cancel_active_turn(self, reason: str = "cancelled by user") -> bool:
        if self._active_cancel is None:
            return False
        self._active_cancel.cancel(reason)
        return True

    async def _create_thread(self, cancel: CancelToken) -> ChatThread:
        try:
            return await cancel.run(self.api.create_thread())
        except ChatApiError as exc:
            if not self.allow_local_fallback:
                raise
            metrics.inc("chat_client_local_thread_total")
            logger.warning("thread create failed, continuing with a local thread: %s", exc)
            return ChatThread(id=f"{LOCAL_THREAD_PREFIX}{uuid.uuid4()}")

    async def _persist_title(self, thread_id: str, title: str) -> None:
        if is_unpersisted_thread_id(thread_id):
            return
        try:
            await self.api.rename_thread(thread_id, title)
        except (ChatApiError, httpx.HTTPError) as exc:
            logger.info("auto title not saved thread=%s: %s", thread_id, exc)

    def _auto_title(self, thread_id: str, text: str) -> None:
        thread = self.find_thread(thread_id)
        if thread is not None and not thread.is_untitled:
            return
        title = derive_title(text)
        self._set_title(thread_id, title)
        self._spawn(self._persist_title(thread_id, title))

    def _rejected(self, message: str, status_code: int) -> TurnResult:
        metrics.inc("chat_client_turn_total", {"state": TurnState.REJECTED.value})
        return TurnResult(TurnState.REJECTED, thread_id=self.thread_id, error=message, status_code=status_code)

    async def send_message(self, text: str) -> TurnResult:
        trimmed = (text or "").strip()
        if not trimmed:
            return self._rejected("Message text is required.", 400)
        if len(trimmed) > self.max_message_chars:
            return self._rejected("Message text exceeds max length.", 422)
        if self._active_cancel is not None:
            return self._rejected("A reply is still streaming.", 409)

        cancel = CancelToken()
        self._active_cancel = cancel
        self.error = None
        result = TurnResult(TurnState.IDLE)
        thread_id = self.cache.active_thread_id
        placeholder: Optional[ChatMessage] = None
        stream: Optional[MessageStream] = None
        try:
            if thread_id is None:
                self.state = TurnState.CREATING_THREAD
                thread = await self._create_thread(cancel)
                result.degraded = thread.id.startswith(LOCAL_THREAD_PREFIX)
                self.threads = [thread] + [item for item in self.threads if item.id != thread.id]
                thread_id = thread.id
                self.cache.select(thread_id)
            result.thread_id = thread_id

            self.state = TurnState.SUBMITTING
            user_message = ChatMessage.user(thread_id, trimmed)
            placeholder = ChatMessage.assistant_placeholder(thread_id)
            result.assistant_message_id = placeholder.id
            self.cache.update(thread_id, lambda existing: existing + [user_message, placeholder])
            self._auto_title(thread_id, trimmed)

            stream = await self.api.open_message_stream(thread_id, trimmed, cancel)
            result.route_mode = stream.route_mode
            result.route_warning = stream.route_warning
            if stream.trace is not None:
                trace = stream.trace
                self.cache.update(thread_id, _patch_message(placeholder.id, lambda m: _with_meta(m, "agent_trace", trace)))

            self.state = TurnState.STREAMING
            async for chunk in stream.chunks():
                self.cache.update(thread_id, _patch_message(placeholder.id, lambda m, chunk=chunk: m.append(chunk)))
            result.state = TurnState.COMPLETED
        except OperationCancelled as exc:
            result.state = TurnState.CANCELLED
            logger.info("turn cancelled thread=%s reason=%s", thread_id, exc)
        except Exception as exc:
            result.state = TurnState.FAILED
            result.error = str(exc) or "Failed to stream assistant output."
            if isinstance(exc, ChatApiError):
                result.status_code = exc.status_code or None
            self.error = result.error
            logger.warning("turn failed thread=%s: %s", thread_id, result.error)
        finally:
            if stream is not None:
                await stream.aclose()
            if placeholder is not None and thread_id is not None:
                failed = result.state is TurnState.FAILED
                self.cache.update(thread_id, _patch_message(placeholder.id, lambda m: _finish(m, failed)))
                for message in self.cache.get(thread_id):
                    if message.id == placeholder.id:
                        result.content = message.content
            self._active_cancel = None
            self.state = TurnState.IDLE
            metrics.inc("chat_client_turn_total", {"state": result.state.value})
        return result

    async def bootstrap(self) -> None:
        self.is_bootstrapping = True
        try:
            listing = await self.api.list_threads()
            if listing["degraded"]:
                raise ChatApiError(listing.get("warning") or "Chat backend is currently unavailable.", 503)
            self.threads = list(listing["threads"])
            first_id = self.threads[0].id if self.threads else None
            self.cache.select(first_id)
            if first_id:
                await self.load_thread_messages(first_id, use_cache=False)
        except ChatApiError as exc:
            logger.warning("chat bootstrap failed: %s", exc)
            self.threads = []
            self.cache.select(None)
            self.error = exc.message
        finally:
            self.is_bootstrapping = False

    async def load_thread_messages(self, thread_id: str, use_cache: bool = True) -> None:
        if use_cache and self.cache.has(thread_id):
            self.cache.set(thread_id, self.cache.get(thread_id))
            return
        if is_unpersisted_thread_id(thread_id):
            self.cache.set(thread_id, [])
            return

        self._load_counter += 1
        current_load = self._load_counter
        try:
            messages = await self.api.list_messages(thread_id)
        except ChatApiError as exc:
            logger.warning("message load failed thread=%s: %s", thread_id, exc)
            if current_load == self._load_counter:
                self.cache.set(thread_id, [])
            return
        if current_load != self._load_counter:
            return
        self.cache.set(thread_id, messages)

    async def select_thread(self, thread_id: str) -> None:
        if not thread_id or thread_id == self.thread_id:
            return
        self.error = None
        self.cache.select(thread_id)
        await self.load_thread_messages(thread_id)

    def new_thread(self) -> None:
        self.error = None
        self.cache.select(None)

    async def rename_thread(self, thread_id: str, title: str) -> bool:
        next_title = (title or "").strip()
        if not next_title:
            return False
        previous = list(self.threads)
        self._set_title(thread_id, next_title)
        if is_unpersisted_thread_id(thread_id):
            return True
        try:
            await self.api.rename_thread(thread_id, next_title)
        except ChatApiError as exc:
            self.threads = previous
            self.error = exc.message
            logger.warning("rename failed thread=%s: %s", thread_id, exc)
            return False
        return True

    async def delete_thread(self, thread_id: str) -> bool:
        previous_threads = list(self.threads)
        previous_active = self.thread_id
        previous_cache = self.cache.snapshot()

        remaining = [thread for thread in self.threads if thread.id != thread_id]
        self.threads = remaining
        self.cache.delete(thread_id)
        if previous_active == thread_id:
            next_active = remaining[0].id if remaining else None
            self.cache.select(next_active)
            if next_active:
                await self.load_thread_messages(next_active)

        if is_unpersisted_thread_id(thread_id):
            return True
        try:
            await self.api.delete_thread(thread_id)
        except ChatApiError as exc:
            self.threads = previous_threads
            self.cache.restore(previous_cache, previous_active)
            self.error = exc.message
            logger.warning("delete failed thread=%s: %s", thread_id, exc)
            return False
        return True


def _with_meta(message: ChatMessage, key: str, value: Any) -> ChatMessage:
    meta: Dict[str, Any] = dict(message.meta or {})
    meta[key] = value
    return replace(message, meta=meta)


def _finish(message: ChatMessage, failed: bool) -> ChatMessage:
    if failed and not message.content:
        message = replace(message, content=OFFLINE_APOLOGY)
    return message.finish()
