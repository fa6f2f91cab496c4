import json

import httpx
from fastapi.testclient import TestClient

from conftest import MEMORY_URL, with_overrides
from cortex_chat.core.identity import USER_ID_COOKIE
from cortex_chat.core.state import build_services
from cortex_chat.main import create_app

USER_UUID = "2f1b5c1e-8d2a-4c7b-9e3f-0a1b2c3d4e5f"


def _client(settings, mock_client):
    return TestClient(create_app(services=build_services(settings, client=mock_client)))


def test_health_and_metrics(settings, mock_client):
    client = _client(settings, mock_client)

    assert client.get("/health").json() == {"status": "ok"}
    assert isinstance(client.get("/metrics").json(), dict)


def test_list_threads_maps_rows_and_sets_user_cookie(settings, recorder, mock_client):
    recorder.on(
        "GET",
        f"{MEMORY_URL}/v1/threads",
        lambda request: httpx.Response(
            200,
            json={"threads": [{"id": "t-1", "user_id": USER_UUID, "title": "Trip", "created_at": "2024-05-01T10:00:00Z"}]},
        ),
    )
    client = _client(settings, mock_client)

    response = client.get("/api/chat/threads", headers={"x-user-id": USER_UUID.upper()})

    body = response.json()
    assert response.status_code == 200
    assert body["userId"] == USER_UUID
    assert body["threads"] == [
        {"id": "t-1", "userId": USER_UUID, "title": "Trip", "createdAt": "2024-05-01T10:00:00+00:00"}
    ]
    assert recorder.calls[0].url.params["user_id"] == USER_UUID
    assert response.cookies.get(USER_ID_COOKIE) == USER_UUID


def test_list_threads_degrades_when_backend_fails(settings, recorder, mock_client):
    recorder.on("GET", f"{MEMORY_URL}/v1/threads", lambda request: httpx.Response(500, json={"detail": "db down"}))
    client = _client(settings, mock_client)

    body = client.get("/api/chat/threads").json()

    assert body["threads"] == []
    assert body["degraded"] is True
    assert body["warning"] == "db down"


def test_create_thread_returns_backend_id(settings, recorder, mock_client):
    recorder.on("POST", f"{MEMORY_URL}/v1/threads", lambda request: httpx.Response(200, json={"thread_id": "t-9"}))
    client = _client(settings, mock_client)

    response = client.post("/api/chat/threads", json={"title": "  Groceries "}, headers={"x-auth-sub": "auth0|abc"})

    assert response.status_code == 201
    assert response.json()["threadId"] == "t-9"
    sent = json.loads(recorder.calls[0].content)
    assert sent["title"] == "Groceries"
    assert sent["user_id"] == response.json()["userId"]


def test_create_thread_falls_back_to_local_id(settings, recorder, mock_client):
    def down(request):
        raise httpx.ConnectError("refused", request=request)

    recorder.on("POST", f"{MEMORY_URL}/v1/threads", down)
    client = _client(settings, mock_client)

    response = client.post("/api/chat/threads")

    body = response.json()
    assert response.status_code == 201
    assert body["threadId"].startswith("local-")
    assert body["degraded"] is True


def test_rename_validates_title(settings, recorder, mock_client):
    client = _client(settings, mock_client)

    missing = client.patch("/api/chat/t-1", json={"title": "  "})
    too_long = client.patch("/api/chat/t-1", json={"title": "x" * 121})

    assert missing.status_code == 400
    assert too_long.status_code == 422
    assert recorder.calls == []


def test_rename_forwards_to_backend(settings, recorder, mock_client):
    recorder.on("PATCH", f"{MEMORY_URL}/v1/threads/t-1", lambda request: httpx.Response(200, json={"ok": True}))
    client = _client(settings, mock_client)

    response = client.patch("/api/chat/t-1", json={"title": "Renamed"}, headers={"authorization": "Bearer tok"})

    assert response.json() == {"threadId": "t-1", "title": "Renamed", "ok": True}
    assert json.loads(recorder.calls[0].content) == {"title": "Renamed"}
    assert recorder.calls[0].headers["authorization"] == "Bearer tok"


def test_rename_of_local_thread_never_reaches_backend(settings, recorder, mock_client):
    client = _client(settings, mock_client)

    response = client.patch("/api/chat/local-1", json={"title": "Offline"})

    assert response.status_code == 200
    assert recorder.calls == []


def test_rename_backend_error_keeps_status(settings, recorder, mock_client):
    recorder.on("PATCH", f"{MEMORY_URL}/v1/threads/t-1", lambda request: httpx.Response(404, json={"detail": "Thread not found"}))
    client = _client(settings, mock_client)

    response = client.patch("/api/chat/t-1", json={"title": "Renamed"})

    assert response.status_code == 404
    assert response.json()["error"]["message"] == "Thread not found"


def test_delete_rules_for_draft_and_local_threads(settings, recorder, mock_client):
    client = _client(settings, mock_client)

    draft = client.delete("/api/chat/draft-1")
    local = client.delete("/api/chat/local-1")

    assert draft.status_code == 400
    assert local.json() == {"threadId": "local-1", "ok": True}
    assert recorder.calls == []


def test_delete_forwards_to_backend(settings, recorder, mock_client):
    recorder.on("DELETE", f"{MEMORY_URL}/v1/threads/t-1", lambda request: httpx.Response(200, json={}))
    client = _client(settings, mock_client)

    response = client.delete("/api/chat/t-1")

    assert response.json() == {"threadId": "t-1", "ok": True}
    assert recorder.hits(f"{MEMORY_URL}/v1/threads/t-1", "DELETE") == 1


def test_messages_for_persisted_and_local_threads(settings, recorder, mock_client):
    recorder.on(
        "GET",
        f"{MEMORY_URL}/v1/threads/t-1/events",
        lambda request: httpx.Response(
            200,
            json={
                "messages": [
                    {"id": "e1", "role": "user", "content": "hi", "created_at": "2024-05-01T10:00:00Z"},
                    {"id": "e2", "actor": "system", "content": "hidden"},
                    {"id": "e3", "role": "assistant", "content": "hello", "meta": {"reaction": "heart"}},
                ]
            },
        ),
    )
    client = _client(settings, mock_client)

    persisted = client.get("/api/chat/t-1/messages").json()
    local = client.get("/api/chat/local-1/messages").json()

    assert [message["id"] for message in persisted["messages"]] == ["e1", "e3"]
    assert persisted["messages"][1]["meta"] == {"reaction": "heart"}
    assert recorder.calls[0].url.params["limit"] == "100"
    assert local == {"threadId": "local-1", "messages": []}


def test_summary_degrades_on_failure(settings, recorder, mock_client):
    recorder.on("GET", f"{MEMORY_URL}/v1/threads/t-1/summary", lambda request: httpx.Response(500))
    client = _client(settings, mock_client)

    body = client.get("/api/chat/t-1/summary").json()

    assert body["summary"] is None
    assert body["degraded"] is True


def test_summary_returns_backend_text(settings, recorder, mock_client):
    recorder.on("GET", f"{MEMORY_URL}/v1/threads/t-1/summary", lambda request: httpx.Response(200, json={"summary": " short "}))
    client = _client(settings, mock_client)

    assert client.get("/api/chat/t-1/summary").json() == {"threadId": "t-1", "summary": "short"}


def test_promote_rejects_unpersisted_threads_and_forwards_others(settings, recorder, mock_client):
    recorder.on(
        "POST",
        f"{MEMORY_URL}/v1/threads/t-1/promote",
        lambda request: httpx.Response(200, json={"summary": "core", "summary_updated": True, "is_core_memory": True}),
    )
    client = _client(settings, mock_client)

    local = client.post("/api/chat/local-1/promote")
    promoted = client.post("/api/chat/t-1/promote")

    assert local.status_code == 400
    assert promoted.json() == {
        "threadId": "t-1",
        "summary": "core",
        "summaryUpdated": True,
        "isCoreMemory": True,
        "ok": True,
    }


def test_reaction_validation_and_forwarding(settings, recorder, mock_client):
    recorder.on(
        "POST",
        f"{MEMORY_URL}/v1/threads/t-1/events/e-1/reaction",
        lambda request: httpx.Response(200, json={"reaction": "heart", "summary_updated": False}),
    )
    client = _client(settings, mock_client)

    rejected = client.post("/api/chat/t-1/messages/e-1/reaction", json={"reaction": "fire"})
    accepted = client.post("/api/chat/t-1/messages/e-1/reaction", json={"reaction": "heart"})

    assert rejected.status_code == 422
    assert rejected.json()["error"]["details"]["allowed"] == ["thumbs_up", "heart", "angry", "sad", "brain"]
    assert accepted.json() == {"threadId": "t-1", "messageId": "e-1", "reaction": "heart", "summaryUpdated": False}
    assert json.loads(recorder.calls[0].content) == {"reaction": "heart"}


def test_sql_backend_reports_unsupported_operations(settings, mock_client):
    client = _client(with_overrides(settings, memory_backend="sql"), mock_client)

    rename = client.patch("/api/chat/t-1", json={"title": "x"})
    promote = client.post("/api/chat/t-1/promote")

    assert rename.status_code == 501
    assert promote.status_code == 501
