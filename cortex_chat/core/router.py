from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from cortex_chat.core.agent import AgentClient
from cortex_chat.core.cancellation import CancelToken
from cortex_chat.core.errors import MemoryApiError, OperationCancelled, read_error_message
from cortex_chat.core.intent import agent_unavailable_reply, detect_tool_intent
from cortex_chat.core.llm import LlmProvider
from cortex_chat.core.memory import MemoryCapability, MemoryProvider
from cortex_chat.core.metrics import metrics
from cortex_chat.core.settings import Settings
from cortex_chat.core.trace import encode_trace_header, extract_response_text, parse_agent_payload
from cortex_chat.core.types import (
    ROUTE_AGENT,
    ROUTE_AGENT_FALLBACK,
    ROUTE_MEMORY_DIRECT,
    AgentTrace,
    ContextMessage,
    RouteDecision,
)

logger = logging.getLogger(__name__)

ROUTE_MODE_HEADER = "x-cortex-route-mode"
ROUTE_WARNING_HEADER = "x-cortex-route-warning"
AGENT_TRACE_HEADER = "x-cortex-agent-trace"
TEXT_PLAIN = "text/plain; charset=utf-8"
MAX_WARNING_CHARS = 200

RETRYABLE_AGENT_STATUSES = frozenset({404, 500, 502, 503, 504})

_WHITESPACE_RE = re.compile(r"\s+")


def sanitize_header_value(value: str, max_len: int = MAX_WARNING_CHARS) -> str:
    text = _WHITESPACE_RE.sub(" ", str(value or "")).strip()
    text = text.encode("ascii", errors="ignore").decode("ascii")
    return text[:max_len]


def _is_json_response(response: httpx.Response) -> bool:
    content_type = response.headers.get("content-type", "").lower()
    return content_type.startswith("application/json") or "+json" in content_type


async def _read_json(response: httpx.Response) -> Any:
    try:
        raw = await response.aread()
    finally:
        await response.aclose()
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return raw.decode("utf-8", errors="replace")


async def _read_error_message(response: httpx.Response) -> str:
    payload = await _read_json(response)
    message = read_error_message(payload)
    if message:
        return message
    if isinstance(payload, str) and payload.strip():
        return payload.strip()[:500]
    return f"Agent request failed with status {response.status_code}."


async def _single_chunk(text: str) -> AsyncIterator[bytes]:
    if text:
        yield text.encode("utf-8")


async def _passthrough(response: httpx.Response, cancel: CancelToken, mode: str) -> AsyncIterator[bytes]:
    chunks = response.aiter_bytes().__aiter__()
    try:
        while True:
            try:
                chunk = await cancel.run(chunks.__anext__())
            except StopAsyncIteration:
                break
            if chunk:
                yield chunk
    except OperationCancelled:
        metrics.inc("chat_stream_cancelled_total", {"mode": mode})
        logger.info("upstream stream cancelled mode=%s reason=%s", mode, cancel.reason)
    except httpx.TransportError as exc:
        metrics.inc("chat_stream_broken_total", {"mode": mode})
        logger.warning("upstream stream broke mode=%s: %s", mode, exc)
        raise
    finally:
        await response.aclose()


@dataclass
class RoutedResponse:
    status_code: int
    content_type: str
    decision: RouteDecision
    body: AsyncIterator[bytes]
    trace: Optional[AgentTrace] = None
    upstream: Optional[httpx.Response] = field(default=None, repr=False)

    @property
    def headers(self) -> Dict[str, str]:
        headers = {ROUTE_MODE_HEADER: self.decision.mode}
        if self.decision.warning:
            warning = sanitize_header_value(self.decision.warning)
            if warning:
                headers[ROUTE_WARNING_HEADER] = warning
        if self.trace is not None:
            headers[AGENT_TRACE_HEADER] = encode_trace_header(self.trace)
        return headers

    async def aclose(self) -> None:
        aclose = getattr(self.body, "aclose", None)
        if aclose is not None:
            await aclose()
        if self.upstream is not None:
            await self.upstream.aclose()


class BackendRouter:
    """Routes one chat turn to the agent tier or the memory tier.

    The agent tier is tried once. Transport failures and the statuses in
    ``RETRYABLE_AGENT_STATUSES`` fall back to the memory tier exactly once;
    other failures are raised as ``MemoryApiError`` carrying the upstream status.

    A memory backend without its own chat endpoint is answered by the model
    provider over the memory context, and both turns are written back as events.
    """

    def __init__(
        self,
        settings: Settings,
        memory: MemoryProvider,
        agent: Optional[AgentClient] = None,
        llm: Optional[LlmProvider] = None,
    ) -> None:
        self._settings = settings
        self._memory = memory
        self._agent = agent
        self._llm = llm

    @property
    def agent_enabled(self) -> bool:
        return self._agent is not None and self._settings.agent_routing_enabled

    async def route(
        self,
        thread_id: str,
        text: str,
        cancel: CancelToken,
        authorization: Optional[str] = None,
    ) -> RoutedResponse:
        memory = self._memory.with_authorization(authorization)
        if not self.agent_enabled:
            return await self._memory_tier(memory, thread_id, text, cancel, RouteDecision(ROUTE_MEMORY_DIRECT))

        try:
            response = await self._agent.open_chat(thread_id, text, cancel, authorization)
        except httpx.TransportError as exc:
            warning = f"Agent tier unreachable ({type(exc).__name__}); answered by the memory tier without tools."
            return await self._fallback(memory, thread_id, text, cancel, "unreachable", warning)

        status_code = int(response.status_code)
        if status_code in RETRYABLE_AGENT_STATUSES:
            await response.aclose()
            warning = f"Agent tier returned HTTP {status_code}; answered by the memory tier without tools."
            return await self._fallback(memory, thread_id, text, cancel, f"http_{status_code}", warning)
        if status_code >= 400:
            message = await _read_error_message(response)
            metrics.inc("chat_route_total", {"mode": ROUTE_AGENT, "result": f"http_{status_code}"})
            logger.warning("agent tier failed thread=%s status=%s message=%s", thread_id, status_code, message)
            raise MemoryApiError(message, status_code)

        metrics.inc("chat_route_total", {"mode": ROUTE_AGENT, "result": "ok"})
        decision = RouteDecision(ROUTE_AGENT)
        if _is_json_response(response):
            reply, trace = parse_agent_payload(await _read_json(response))
            if trace is not None:
                logger.info(
                    "agent tier answered thread=%s action=%s capabilities=%s",
                    thread_id,
                    trace.action,
                    ",".join(trace.capabilities),
                )
            return RoutedResponse(200, TEXT_PLAIN, decision, _single_chunk(reply), trace=trace)
        return RoutedResponse(
            status_code,
            response.headers.get("content-type") or TEXT_PLAIN,
            decision,
            _passthrough(response, cancel, ROUTE_AGENT),
            upstream=response,
        )

    async def _fallback(
        self,
        memory: MemoryProvider,
        thread_id: str,
        text: str,
        cancel: CancelToken,
        reason: str,
        warning: str,
    ) -> RoutedResponse:
        metrics.inc("chat_route_fallback_total", {"reason": reason})
        logger.warning("agent tier fallback thread=%s reason=%s", thread_id, reason)
        decision = RouteDecision(ROUTE_AGENT_FALLBACK, warning)
        routed = await self._memory_tier(memory, thread_id, text, cancel, decision)

        intent = detect_tool_intent(text)
        if intent is None:
            return routed
        await routed.aclose()
        metrics.inc("chat_route_tool_apology_total", {"intent": intent})
        logger.info("tool intent %s needs the agent tier; sending apology thread=%s", intent, thread_id)
        return RoutedResponse(200, TEXT_PLAIN, decision, _single_chunk(agent_unavailable_reply(intent)))

    async def _memory_tier(
        self,
        memory: MemoryProvider,
        thread_id: str,
        text: str,
        cancel: CancelToken,
        decision: RouteDecision,
    ) -> RoutedResponse:
        if not memory.supports(MemoryCapability.CHAT):
            if self._llm is None:
                raise MemoryApiError("Selected memory backend does not implement chat.", 500)
            return await self._model_tier(memory, thread_id, text, cancel, decision)
        try:
            response = await memory.open_chat(thread_id, text, cancel)
        except MemoryApiError as exc:
            metrics.inc("chat_route_total", {"mode": decision.mode, "result": f"http_{exc.status_code}"})
            raise
        metrics.inc("chat_route_total", {"mode": decision.mode, "result": "ok"})
        if _is_json_response(response):
            reply = extract_response_text(await _read_json(response))
            return RoutedResponse(200, TEXT_PLAIN, decision, _single_chunk(reply))
        return RoutedResponse(
            int(response.status_code),
            response.headers.get("content-type") or TEXT_PLAIN,
            decision,
            _passthrough(response, cancel, decision.mode),
            upstream=response,
        )

    async def _model_tier(
        self,
        memory: MemoryProvider,
        thread_id: str,
        text: str,
        cancel: CancelToken,
        decision: RouteDecision,
    ) -> RoutedResponse:
        try:
            await cancel.run(memory.add_user_event(thread_id, text))
        except MemoryApiError as exc:
            metrics.inc("memory_event_write_failed_total", {"role": "user"})
            logger.warning("user event not stored thread=%s: %s", thread_id, exc)
        context = await cancel.run(memory.build_memory_context(thread_id, text))

        # the first fragment is read here so a model failure still maps to a status
        fragments = self._llm.stream_chat(context, cancel).__aiter__()
        try:
            first: Optional[str] = await cancel.run(fragments.__anext__())
        except StopAsyncIteration:
            first = None
        except httpx.TransportError as exc:
            metrics.inc("chat_route_total", {"mode": decision.mode, "result": "model_unreachable"})
            logger.warning("model endpoint unreachable thread=%s: %s", thread_id, exc)
            raise MemoryApiError(f"Model endpoint is unreachable: {exc}", 502) from exc
        except MemoryApiError as exc:
            metrics.inc("chat_route_total", {"mode": decision.mode, "result": f"model_http_{exc.status_code}"})
            raise
        metrics.inc("chat_route_total", {"mode": decision.mode, "result": "model"})
        return RoutedResponse(
            200,
            TEXT_PLAIN,
            decision,
            self._stream_model(memory, thread_id, first, fragments, cancel),
        )

    async def _stream_model(
        self,
        memory: MemoryProvider,
        thread_id: str,
        first: Optional[str],
        fragments: AsyncIterator[str],
        cancel: CancelToken,
    ) -> AsyncIterator[bytes]:
        parts: List[str] = []
        if first:
            parts.append(first)
            yield first.encode("utf-8")
        try:
            while first is not None:
                try:
                    fragment = await cancel.run(fragments.__anext__())
                except StopAsyncIteration:
                    break
                parts.append(fragment)
                yield fragment.encode("utf-8")
        except OperationCancelled:
            metrics.inc("chat_stream_cancelled_total", {"mode": "model"})
            logger.info("model stream cancelled thread=%s reason=%s", thread_id, cancel.reason)
            return
        except (MemoryApiError, httpx.TransportError) as exc:
            metrics.inc("chat_stream_error_total", {"mode": "model"})
            logger.warning("model stream failed thread=%s: %s", thread_id, exc)
            yield f"\n[Stream error: {exc}. Please retry.]\n".encode("utf-8")

        reply = "".join(parts).strip()
        if not reply:
            return
        try:
            await memory.add_assistant_event(thread_id, reply)
        except MemoryApiError as exc:
            metrics.inc("memory_event_write_failed_total", {"role": "assistant"})
            logger.warning("assistant event not stored thread=%s: %s", thread_id, exc)
