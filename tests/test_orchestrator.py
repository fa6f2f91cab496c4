import asyncio
import json

import httpx

from conftest import Recorder, ScriptedStream
from cortex_chat.client.api import ChatApiClient
from cortex_chat.client.models import ChatMessage, ChatThread
from cortex_chat.client.orchestrator import OFFLINE_APOLOGY, ChatTurnOrchestrator, TurnState

GATEWAY = "http://gateway.test"
TEXT_HEADERS = {"content-type": "text/plain; charset=utf-8"}


def _orchestrator(recorder: Recorder, **kwargs) -> ChatTurnOrchestrator:
    client = httpx.AsyncClient(transport=httpx.MockTransport(recorder))
    return ChatTurnOrchestrator(ChatApiClient(GATEWAY, client=client), **kwargs)


def _reply(text: str, headers=None):
    return lambda request: httpx.Response(200, headers={**TEXT_HEADERS, **(headers or {})}, content=text.encode("utf-8"))


class GatedStream(httpx.AsyncByteStream):
    def __init__(self) -> None:
        self.first_sent = asyncio.Event()
        self.release = asyncio.Event()

    async def __aiter__(self):
        yield b"part one "
        self.first_sent.set()
        await self.release.wait()
        yield b"part two"


def test_first_message_creates_thread_and_titles_it(recorder):
    recorder.on("POST", f"{GATEWAY}/api/chat/threads", lambda request: httpx.Response(201, json={"userId": "u", "threadId": "t-new"}))
    recorder.on("PATCH", f"{GATEWAY}/api/chat/t-new", lambda request: httpx.Response(200, json={"ok": True}))
    recorder.on("POST", f"{GATEWAY}/api/chat/t-new/messages", _reply("Hi! How can I help?"))
    orchestrator = _orchestrator(recorder)
    first_render = []

    def watch(thread_id, messages):
        if len(messages) == 2 and not first_render:
            first_render.append([(m.role, m.content, m.is_streaming) for m in messages])

    orchestrator.cache.subscribe(watch)

    async def _go():
        result = await orchestrator.send_message("Hello")
        await orchestrator.wait_background()
        return result

    result = asyncio.run(_go())

    assert result.state is TurnState.COMPLETED
    assert result.thread_id == "t-new"
    assert orchestrator.thread_id == "t-new"
    assert first_render == [[("user", "Hello", False), ("assistant", "", True)]]
    messages = orchestrator.messages
    assert [(m.role, m.content, m.is_streaming) for m in messages] == [
        ("user", "Hello", False),
        ("assistant", "Hi! How can I help?", False),
    ]
    assert orchestrator.threads[0].title == "Hello"
    rename = [call for call in recorder.calls if call.method == "PATCH"]
    assert json.loads(rename[0].content) == {"title": "Hello"}
    assert orchestrator.is_streaming is False


def test_too_long_message_is_rejected_without_touching_cache(recorder):
    orchestrator = _orchestrator(recorder)
    orchestrator.cache.select("t-1", [])

    result = asyncio.run(orchestrator.send_message("x" * 6001))

    assert result.state is TurnState.REJECTED
    assert result.status_code == 422
    assert recorder.calls == []
    assert orchestrator.cache.get("t-1") == []


def test_empty_message_is_rejected(recorder):
    orchestrator = _orchestrator(recorder)

    result = asyncio.run(orchestrator.send_message("   "))

    assert result.state is TurnState.REJECTED
    assert recorder.calls == []


def test_mid_stream_network_failure_keeps_partial_content(recorder):
    stream = ScriptedStream([b"Work"], error=httpx.ReadError("connection reset"))
    recorder.on("POST", f"{GATEWAY}/api/chat/t-1/messages", lambda request: httpx.Response(200, headers=TEXT_HEADERS, stream=stream))
    orchestrator = _orchestrator(recorder)
    orchestrator.threads = [ChatThread(id="t-1", title="Existing")]
    orchestrator.cache.select("t-1", [])

    result = asyncio.run(orchestrator.send_message("Write a plan"))

    assert result.state is TurnState.FAILED
    assert result.content == "Work"
    assert "connection reset" in result.error
    assert orchestrator.error == result.error
    user, assistant = orchestrator.cache.get("t-1")
    assert user.content == "Write a plan"
    assert assistant.content == "Work"
    assert assistant.is_streaming is False


def test_failure_before_any_content_uses_offline_apology(recorder):
    recorder.on(
        "POST",
        f"{GATEWAY}/api/chat/t-1/messages",
        lambda request: httpx.Response(503, json={"error": {"message": "memory offline"}}),
    )
    orchestrator = _orchestrator(recorder)
    orchestrator.threads = [ChatThread(id="t-1", title="Existing")]
    orchestrator.cache.select("t-1", [])

    result = asyncio.run(orchestrator.send_message("hello"))

    assert result.state is TurnState.FAILED
    assert result.status_code == 503
    assert result.error == "memory offline"
    assistant = orchestrator.cache.get("t-1")[-1]
    assert assistant.content == OFFLINE_APOLOGY
    assert assistant.is_streaming is False


def test_second_submission_is_rejected_and_cancel_reaches_terminal_state(recorder):
    stream = ScriptedStream([b"partial"], hold=True)
    recorder.on("POST", f"{GATEWAY}/api/chat/t-1/messages", lambda request: httpx.Response(200, headers=TEXT_HEADERS, stream=stream))
    orchestrator = _orchestrator(recorder)
    orchestrator.threads = [ChatThread(id="t-1", title="Existing")]
    orchestrator.cache.select("t-1", [])

    async def _go():
        turn = asyncio.ensure_future(orchestrator.send_message("first"))
        while not orchestrator.cache.get("t-1") or orchestrator.cache.get("t-1")[-1].content != "partial":
            await asyncio.sleep(0.01)
        second = await orchestrator.send_message("second")
        cancelled = orchestrator.cancel_active_turn()
        return second, cancelled, await turn

    second, cancelled, first = asyncio.run(_go())

    assert second.state is TurnState.REJECTED
    assert cancelled is True
    assert first.state is TurnState.CANCELLED
    assert first.content == "partial"
    assistant = orchestrator.cache.get("t-1")[-1]
    assert assistant.is_streaming is False
    assert stream.closed is True
    assert len(orchestrator.cache.get("t-1")) == 2


def test_thread_switch_mid_stream_keeps_chunks_in_owning_thread(recorder):
    async def _go():
        stream = GatedStream()
        recorder.on("POST", f"{GATEWAY}/api/chat/t-a/messages", lambda request: httpx.Response(200, headers=TEXT_HEADERS, stream=stream))
        orchestrator = _orchestrator(recorder)
        orchestrator.threads = [ChatThread(id="t-a", title="A"), ChatThread(id="local-b", title="B")]
        orchestrator.cache.select("t-a", [])

        turn = asyncio.ensure_future(orchestrator.send_message("hello"))
        await stream.first_sent.wait()
        await orchestrator.select_thread("local-b")
        stream.release.set()
        result = await turn
        return orchestrator, result

    orchestrator, result = asyncio.run(_go())

    assert result.state is TurnState.COMPLETED
    assert orchestrator.thread_id == "local-b"
    assert orchestrator.messages == []
    assert orchestrator.cache.get("t-a")[-1].content == "part one part two"


def test_thread_create_failure_falls_back_to_local_thread(recorder):
    def down(request):
        raise httpx.ConnectError("refused", request=request)

    recorder.on("POST", f"{GATEWAY}/api/chat/threads", down)
    recorder.on("POST", f"{GATEWAY}/api/chat/local-", _reply("offline reply"))
    orchestrator = _orchestrator(recorder)

    result = asyncio.run(orchestrator.send_message("hi"))

    assert result.state is TurnState.COMPLETED
    assert result.degraded is True
    assert result.thread_id.startswith("local-")
    assert result.content == "offline reply"
    assert not [call for call in recorder.calls if call.method == "PATCH"]


def test_thread_create_failure_without_local_fallback_fails_cleanly(recorder):
    recorder.on("POST", f"{GATEWAY}/api/chat/threads", lambda request: httpx.Response(500, json={"error": {"message": "boom"}}))
    orchestrator = _orchestrator(recorder, allow_local_fallback=False)

    result = asyncio.run(orchestrator.send_message("hi"))

    assert result.state is TurnState.FAILED
    assert result.error == "boom"
    assert orchestrator.thread_id is None
    assert orchestrator.cache.snapshot() == {}


def test_route_headers_and_trace_are_recorded(recorder):
    headers = {
        "x-cortex-route-mode": "agent",
        "x-cortex-agent-trace": '{"action":"tool_call","capabilities":["gmail"]}',
    }
    recorder.on("POST", f"{GATEWAY}/api/chat/t-1/messages", _reply("Done.", headers))
    orchestrator = _orchestrator(recorder)
    orchestrator.threads = [ChatThread(id="t-1", title="Mail")]
    orchestrator.cache.select("t-1", [])

    result = asyncio.run(orchestrator.send_message("archive newsletters"))

    assert result.route_mode == "agent"
    assistant = orchestrator.cache.get("t-1")[-1]
    assert assistant.meta == {"agent_trace": {"action": "tool_call", "capabilities": ["gmail"]}}


def test_event_stream_replies_are_decoded(recorder):
    body = b'data: {"choices":[{"delta":{"content":"Hi"}}]}\n\ndata: {"choices":[{"delta":{"content":" there"}}]}\n\ndata: [DONE]\n\n'
    recorder.on(
        "POST",
        f"{GATEWAY}/api/chat/t-1/messages",
        lambda request: httpx.Response(200, headers={"content-type": "text/event-stream"}, content=body),
    )
    orchestrator = _orchestrator(recorder)
    orchestrator.threads = [ChatThread(id="t-1", title="x")]
    orchestrator.cache.select("t-1", [])

    result = asyncio.run(orchestrator.send_message("hello"))

    assert result.content == "Hi there"


def test_bootstrap_selects_first_thread_and_loads_messages(recorder):
    recorder.on(
        "GET",
        f"{GATEWAY}/api/chat/threads",
        lambda request: httpx.Response(
            200,
            json={"userId": "u", "threads": [{"id": "t-1", "title": "First", "createdAt": "2024-01-01T00:00:00+00:00"}]},
        ),
    )
    recorder.on(
        "GET",
        f"{GATEWAY}/api/chat/t-1/messages",
        lambda request: httpx.Response(200, json={"threadId": "t-1", "messages": [{"id": "e1", "role": "user", "content": "old"}]}),
    )
    orchestrator = _orchestrator(recorder)

    asyncio.run(orchestrator.bootstrap())

    assert orchestrator.thread_id == "t-1"
    assert [m.content for m in orchestrator.messages] == ["old"]
    assert orchestrator.is_bootstrapping is False


def test_bootstrap_reports_degraded_backend(recorder):
    recorder.on(
        "GET",
        f"{GATEWAY}/api/chat/threads",
        lambda request: httpx.Response(200, json={"userId": "u", "threads": [], "degraded": True, "warning": "db down"}),
    )
    orchestrator = _orchestrator(recorder)

    asyncio.run(orchestrator.bootstrap())

    assert orchestrator.error == "db down"
    assert orchestrator.threads == []
    assert orchestrator.thread_id is None


def test_cached_thread_is_not_refetched(recorder):
    orchestrator = _orchestrator(recorder)
    orchestrator.cache.set("t-2", [ChatMessage(id="m1", thread_id="t-2", role="user", content="cached")])

    asyncio.run(orchestrator.select_thread("t-2"))

    assert [m.content for m in orchestrator.messages] == ["cached"]
    assert recorder.calls == []


def test_rename_rolls_back_on_failure(recorder):
    recorder.on("PATCH", f"{GATEWAY}/api/chat/t-1", lambda request: httpx.Response(503, json={"error": {"message": "nope"}}))
    orchestrator = _orchestrator(recorder)
    orchestrator.threads = [ChatThread(id="t-1", title="Before")]

    ok = asyncio.run(orchestrator.rename_thread("t-1", "After"))

    assert ok is False
    assert orchestrator.threads[0].title == "Before"
    assert orchestrator.error == "nope"


def test_delete_rolls_back_on_failure(recorder):
    recorder.on("DELETE", f"{GATEWAY}/api/chat/t-1", lambda request: httpx.Response(503, json={"error": {"message": "nope"}}))
    orchestrator = _orchestrator(recorder)
    orchestrator.threads = [ChatThread(id="t-1", title="One"), ChatThread(id="local-2", title="Two")]
    orchestrator.cache.set("t-1", [ChatMessage(id="m1", thread_id="t-1", role="user", content="keep")])
    orchestrator.cache.select("t-1")

    ok = asyncio.run(orchestrator.delete_thread("t-1"))

    assert ok is False
    assert [thread.id for thread in orchestrator.threads] == ["t-1", "local-2"]
    assert orchestrator.thread_id == "t-1"
    assert [m.content for m in orchestrator.messages] == ["keep"]


def test_delete_moves_selection_to_next_thread(recorder):
    recorder.on("DELETE", f"{GATEWAY}/api/chat/t-1", lambda request: httpx.Response(200, json={"ok": True}))
    orchestrator = _orchestrator(recorder)
    orchestrator.threads = [ChatThread(id="t-1", title="One"), ChatThread(id="local-2", title="Two")]
    orchestrator.cache.select("t-1", [])

    ok = asyncio.run(orchestrator.delete_thread("t-1"))

    assert ok is True
    assert orchestrator.thread_id == "local-2"
    assert orchestrator.cache.has("t-1") is False


def test_auto_title_decode_error_is_swallowed(recorder, monkeypatch):
    def broken_rename(request):
        raise httpx.DecodingError("bad gzip body", request=request)

    recorder.on("POST", f"{GATEWAY}/api/chat/threads", lambda request: httpx.Response(201, json={"threadId": "t-new"}))
    recorder.on("PATCH", f"{GATEWAY}/api/chat/t-new", broken_rename)
    recorder.on("POST", f"{GATEWAY}/api/chat/t-new/messages", _reply("ok"))
    orchestrator = _orchestrator(recorder)
    spawned = []
    spawn = orchestrator._spawn

    def record(coro):
        task = spawn(coro)
        spawned.append(task)
        return task

    monkeypatch.setattr(orchestrator, "_spawn", record)

    async def _go():
        result = await orchestrator.send_message("Hello")
        await asyncio.gather(*spawned)
        return result

    result = asyncio.run(_go())

    assert result.state is TurnState.COMPLETED
    assert len(spawned) == 1
    assert orchestrator.threads[0].title == "Hello"
