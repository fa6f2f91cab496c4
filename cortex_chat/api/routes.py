import asyncio
import logging
import uuid
from typing import Any, AsyncIterator, Optional

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, StreamingResponse

from cortex_chat.api.schemas import (
    ErrorBody,
    ErrorResponse,
    MessageRequest,
    ReactionRequest,
    ThreadCreateRequest,
    ThreadCreateResponse,
    ThreadListResponse,
    ThreadOut,
    ThreadRenameRequest,
    text_field,
)
from cortex_chat.core.cancellation import CancelToken
from cortex_chat.core.errors import MemoryApiError, OperationCancelled, is_auth_error
from cortex_chat.core.identity import (
    USER_ID_COOKIE,
    hash_to_uuid,
    request_authorization,
    request_user_id,
)
from cortex_chat.core.memory import ALLOWED_REACTIONS, MemoryCapability, MemoryProvider
from cortex_chat.core.metrics import metrics
from cortex_chat.core.router import TEXT_PLAIN, RoutedResponse
from cortex_chat.core.settings import Settings
from cortex_chat.core.state import ServiceContainer
from cortex_chat.core.types import (
    LOCAL_THREAD_PREFIX,
    ContextMessage,
    is_draft_thread_id,
    is_local_thread_id,
    is_unpersisted_thread_id,
)

router = APIRouter()
logger = logging.getLogger(__name__)

SESSION_EXPIRED_MESSAGE = "Your session expired. Please sign in again."
STREAM_HEADERS = {"cache-control": "no-cache, no-transform"}
MESSAGE_HISTORY_LIMIT = 100
THREAD_LIST_LIMIT = 50


def _services(request: Request) -> ServiceContainer:
    return request.app.state.services


def _memory(request: Request) -> MemoryProvider:
    return _services(request).memory.with_authorization(request_authorization(request))


def _json_error(message: str, status_code: int = 400, details: Optional[dict] = None) -> JSONResponse:
    body = ErrorResponse(error=ErrorBody(message=message, details=details))
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True))


def _session_expired(error: BaseException, settings: Settings) -> bool:
    if isinstance(error, MemoryApiError) and error.status_code == 401:
        return True
    return settings.auth_mode == "bearer" and is_auth_error(error)


def _error_response(
    error: Exception,
    settings: Settings,
    fallback_message: str,
    fallback_status: int = 503,
) -> JSONResponse:
    if _session_expired(error, settings):
        metrics.inc("chat_session_expired_total")
        return _json_error(SESSION_EXPIRED_MESSAGE, 401)
    if isinstance(error, MemoryApiError):
        return _json_error(error.message, error.status_code, error.details)
    return _json_error(fallback_message, fallback_status, {"cause": str(error) or type(error).__name__})


async def _read_payload(request: Request, model):
    try:
        raw = await request.json()
    except ValueError:
        raw = {}
    if not isinstance(raw, dict):
        raw = {}
    return model.model_validate(raw)


def _remember_user(response: JSONResponse, request: Request, user_id: str) -> JSONResponse:
    if not request.cookies.get(USER_ID_COOKIE):
        response.set_cookie(USER_ID_COOKIE, user_id, httponly=True, samesite="lax", path="/")
    return response


def _rate_limit_key(request: Request) -> str:
    authorization = request_authorization(request)
    if authorization:
        return f"auth:{hash_to_uuid(authorization)}"
    for value in (request.headers.get("x-user-id"), request.cookies.get(USER_ID_COOKIE)):
        if value and value.strip():
            return f"user:{value.strip()}"
    host = request.client.host if request.client else "anonymous"
    return f"ip:{host}"


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/metrics")
def metrics_endpoint():
    return metrics.snapshot()


@router.get("/api/chat/threads")
async def list_threads(request: Request):
    user_id = request_user_id(request)
    memory = _memory(request)
    try:
        records = []
        if memory.supports(MemoryCapability.LIST_THREADS):
            records = await memory.list_threads(user_id, THREAD_LIST_LIMIT)
        body = ThreadListResponse(userId=user_id, threads=[ThreadOut(**record.to_payload()) for record in records])
    except Exception as exc:
        metrics.inc("chat_threads_degraded_total", {"operation": "list"})
        logger.warning("thread list degraded user=%s: %s", user_id, exc)
        body = ThreadListResponse(userId=user_id, threads=[], degraded=True, warning=str(exc) or "unknown")
    return _remember_user(JSONResponse(content=body.model_dump(exclude_none=True)), request, user_id)


@router.post("/api/chat/threads")
async def create_thread(request: Request):
    user_id = request_user_id(request)
    payload = await _read_payload(request, ThreadCreateRequest)
    title = text_field(payload.title) or None
    try:
        thread_id = await _memory(request).start_thread(user_id, title)
        body = ThreadCreateResponse(userId=user_id, threadId=thread_id)
        metrics.inc("chat_threads_created_total", {"result": "ok"})
    except Exception as exc:
        thread_id = f"{LOCAL_THREAD_PREFIX}{uuid.uuid4()}"
        metrics.inc("chat_threads_created_total", {"result": "local"})
        logger.warning("thread create failed user=%s, issuing %s: %s", user_id, thread_id, exc)
        body = ThreadCreateResponse(userId=user_id, threadId=thread_id, degraded=True, warning=str(exc) or "unknown")
    response = JSONResponse(status_code=201, content=body.model_dump(exclude_none=True))
    return _remember_user(response, request, user_id)


@router.patch("/api/chat/{thread_id}")
async def rename_thread(thread_id: str, request: Request):
    settings = _services(request).settings
    payload = await _read_payload(request, ThreadRenameRequest)
    title = text_field(payload.title)
    if not title:
        return _json_error("title is required.", 400)
    if len(title) > settings.max_title_chars:
        return _json_error("title exceeds max length.", 422, {"maxLength": settings.max_title_chars})
    if is_unpersisted_thread_id(thread_id):
        return {"threadId": thread_id, "title": title, "ok": True}

    memory = _memory(request)
    if not memory.supports(MemoryCapability.RENAME_THREAD):
        return _json_error("Selected memory backend does not support thread rename.", 501)
    try:
        await memory.rename_thread(thread_id, title)
    except Exception as exc:
        logger.warning("thread rename failed thread=%s: %s", thread_id, exc)
        return _error_response(exc, settings, "Could not rename thread right now.")
    return {"threadId": thread_id, "title": title, "ok": True}


@router.delete("/api/chat/{thread_id}")
async def delete_thread(thread_id: str, request: Request):
    settings = _services(request).settings
    if is_draft_thread_id(thread_id):
        return _json_error("threadId is invalid.", 400)
    if is_local_thread_id(thread_id):
        return {"threadId": thread_id, "ok": True}

    memory = _memory(request)
    if not memory.supports(MemoryCapability.DELETE_THREAD):
        return _json_error("Selected memory backend does not support thread delete.", 501)
    try:
        await memory.delete_thread(thread_id)
    except Exception as exc:
        logger.warning("thread delete failed thread=%s: %s", thread_id, exc)
        return _error_response(exc, settings, "Could not delete thread right now.")
    return {"threadId": thread_id, "ok": True}


@router.get("/api/chat/{thread_id}/messages")
async def list_messages(thread_id: str, request: Request):
    settings = _services(request).settings
    if is_unpersisted_thread_id(thread_id):
        return {"threadId": thread_id, "messages": []}
    try:
        events = await _memory(request).get_recent_events(thread_id, MESSAGE_HISTORY_LIMIT)
    except MemoryApiError as exc:
        logger.warning("message history failed thread=%s: %s", thread_id, exc)
        return _error_response(exc, settings, "Could not load messages right now.")
    except Exception as exc:
        if _session_expired(exc, settings):
            return _json_error(SESSION_EXPIRED_MESSAGE, 401)
        metrics.inc("chat_threads_degraded_total", {"operation": "messages"})
        logger.warning("message history degraded thread=%s: %s", thread_id, exc)
        return {"threadId": thread_id, "messages": [], "degraded": True, "warning": str(exc) or "unknown"}
    return {"threadId": thread_id, "messages": [event.to_payload() for event in events]}


@router.get("/api/chat/{thread_id}/summary")
async def get_summary(thread_id: str, request: Request):
    settings = _services(request).settings
    if is_unpersisted_thread_id(thread_id):
        return {"threadId": thread_id, "summary": None}
    memory = _memory(request)
    if not memory.supports(MemoryCapability.SUMMARY):
        return {"threadId": thread_id, "summary": None}
    try:
        summary = await memory.get_active_summary(thread_id)
    except Exception as exc:
        if _session_expired(exc, settings):
            return _json_error(SESSION_EXPIRED_MESSAGE, 401)
        metrics.inc("chat_threads_degraded_total", {"operation": "summary"})
        logger.warning("summary degraded thread=%s: %s", thread_id, exc)
        return {"threadId": thread_id, "summary": None, "degraded": True, "warning": str(exc) or "unknown"}
    return {"threadId": thread_id, "summary": summary}


@router.post("/api/chat/{thread_id}/promote")
async def promote_thread(thread_id: str, request: Request):
    settings = _services(request).settings
    if is_unpersisted_thread_id(thread_id):
        return _json_error("threadId is invalid.", 400)
    memory = _memory(request)
    if not memory.supports(MemoryCapability.PROMOTE_THREAD):
        return _json_error("Selected memory backend does not support core memory promotion.", 501)
    try:
        result = await memory.promote_thread(thread_id)
    except Exception as exc:
        logger.warning("promote failed thread=%s: %s", thread_id, exc)
        return _error_response(exc, settings, "Could not promote thread to core memory right now.")
    return {"threadId": thread_id, **result, "ok": True}


@router.post("/api/chat/{thread_id}/messages/{message_id}/reaction")
async def set_reaction(thread_id: str, message_id: str, request: Request):
    settings = _services(request).settings
    payload = await _read_payload(request, ReactionRequest)
    reaction = text_field(payload.reaction) or None
    if reaction and reaction not in ALLOWED_REACTIONS:
        return _json_error("Unsupported reaction.", 422, {"allowed": list(ALLOWED_REACTIONS)})
    if is_unpersisted_thread_id(thread_id):
        return _json_error("threadId is invalid.", 400)

    memory = _memory(request)
    if not memory.supports(MemoryCapability.REACTIONS):
        return _json_error("Selected memory backend does not support reactions.", 501)
    try:
        result = await memory.set_event_reaction(thread_id, message_id, reaction)
    except Exception as exc:
        logger.warning("reaction failed thread=%s message=%s: %s", thread_id, message_id, exc)
        return _error_response(exc, settings, "Failed to persist reaction.")
    return {"threadId": thread_id, "messageId": message_id, **result}


async def _demo_stream(services: ServiceContainer, text: str, cancel: CancelToken) -> AsyncIterator[bytes]:
    completed = False
    try:
        async for chunk in services.llm.stream_chat([ContextMessage("user", text)], cancel):
            yield chunk.encode("utf-8")
        completed = True
    except OperationCancelled:
        logger.info("demo stream cancelled reason=%s", cancel.reason)
    except Exception as exc:
        metrics.inc("chat_stream_error_total", {"mode": "demo"})
        logger.warning("demo stream failed: %s", exc)
        yield f"\n[Stream error: {exc}. Please retry.]\n".encode("utf-8")
        completed = True
    finally:
        if not completed:
            cancel.cancel("client disconnected")


async def _relay(request: Request, routed: RoutedResponse, cancel: CancelToken) -> AsyncIterator[bytes]:
    completed = False
    try:
        async for chunk in routed.body:
            yield chunk
            if await request.is_disconnected():
                break
        else:
            completed = True
    finally:
        if not completed:
            cancel.cancel("client disconnected")
            metrics.inc("chat_stream_disconnect_total", {"mode": routed.decision.mode})
        # the close must finish even when this task is being cancelled
        await asyncio.shield(routed.aclose())


@router.post("/api/chat/{thread_id}/messages")
async def post_message(thread_id: str, request: Request):
    services = _services(request)
    settings = services.settings
    payload = await _read_payload(request, MessageRequest)
    text = text_field(payload.text)
    if not text:
        metrics.inc("chat_message_rejected_total", {"reason": "empty"})
        return _json_error("Message text is required.", 400)
    if len(text) > settings.max_message_chars:
        metrics.inc("chat_message_rejected_total", {"reason": "too_long"})
        return _json_error("Message text exceeds max length.", 422, {"maxLength": settings.max_message_chars})

    limit_key = _rate_limit_key(request)
    if not services.limiter.allow(limit_key):
        metrics.inc("chat_message_rejected_total", {"reason": "rate_limited"})
        response = _json_error("Too many messages. Please wait a moment and try again.", 429)
        response.headers["retry-after"] = str(services.limiter.retry_after(limit_key))
        return response

    cancel = CancelToken()
    if settings.demo_mode or is_unpersisted_thread_id(thread_id):
        metrics.inc("chat_message_total", {"mode": "demo"})
        return StreamingResponse(
            _demo_stream(services, text, cancel),
            media_type=TEXT_PLAIN,
            headers=dict(STREAM_HEADERS),
        )

    try:
        with metrics.timed("chat_route_latency_ms"):
            routed = await services.router.route(thread_id, text, cancel, request_authorization(request))
    except Exception as exc:
        if isinstance(exc, MemoryApiError) or _session_expired(exc, settings):
            logger.warning("message submission failed thread=%s: %s", thread_id, exc)
            return _error_response(exc, settings, "Failed to stream assistant output.")
        logger.exception("message submission crashed thread=%s", thread_id)
        return _json_error("Failed to stream assistant output.", 500, {"cause": str(exc) or type(exc).__name__})

    metrics.inc("chat_message_total", {"mode": routed.decision.mode})
    headers: dict[str, Any] = dict(STREAM_HEADERS)
    headers.update(routed.headers)
    return StreamingResponse(
        _relay(request, routed, cancel),
        status_code=routed.status_code,
        media_type=routed.content_type,
        headers=headers,
    )
