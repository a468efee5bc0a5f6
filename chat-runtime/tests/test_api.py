from __future__ import annotations

import asyncio
import contextlib
import json
from collections.abc import Iterator
from typing import Any

import httpx
import pytest
from chat_runtime.app.main import create_app
from chat_runtime.app.settings import Settings
from chat_runtime.modules.conversations.api import RunStreamingResponse
from chat_runtime.runtime.contracts import StreamProgress
from chat_runtime.runtime.history import HistoryLoader
from chat_runtime.runtime.run_adapter import RunAdapter
from chat_runtime.runtime.session_state import ConversationStateRegistry
from chat_runtime.runtime.thread import ThreadManager
from fastapi.testclient import TestClient

from tests.conftest import FakeBackend

AUTH = {"Authorization": "Bearer test-token"}


class _FakeBackendServer:
    """백엔드 HTTP 계약을 흉내 내는 MockTransport 핸들러예요."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.history: list[dict[str, Any]] = []
        self.active_session: dict[str, Any] | None = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path.endswith("/messages/"):
            return httpx.Response(200, json={"messages": self.history})
        if path.endswith("/active-session"):
            if self.active_session is None:
                return httpx.Response(404)
            return httpx.Response(200, json=self.active_session)
        if path.endswith("/message/"):
            return httpx.Response(200, content=_ndjson({"message": "안"}, {"message": "녕", "session_id": "s-new"}))
        if "/resume" in path:
            return httpx.Response(200, content=_ndjson({"message": "재개된 답변", "cursor": "5-0"}))
        if path.endswith("/stop/"):
            return httpx.Response(200, json={})
        return httpx.Response(404)

    def paths(self) -> list[str]:
        return [request.url.path for request in self.requests]


def _ndjson(*lines: dict[str, Any]) -> bytes:
    return "\n".join(json.dumps(line, ensure_ascii=False) for line in lines).encode("utf-8")


def _lines(response: httpx.Response) -> list[dict[str, Any]]:
    return [json.loads(line) for line in response.text.splitlines() if line.strip()]


@pytest.fixture
def backend_server() -> _FakeBackendServer:
    return _FakeBackendServer()


@pytest.fixture
def client(backend_server: _FakeBackendServer) -> Iterator[TestClient]:
    settings = Settings(
        api_token="test-token",
        backend_base_url="http://backend.test",
        multimodal_enabled=True,
        resume_history_wait_seconds=1.0,
        json_logs=False,
    )
    app = create_app(settings, transport=httpx.MockTransport(backend_server))
    with TestClient(app) as test_client:
        yield test_client


def test_health_endpoints(client: TestClient) -> None:
    assert client.get("/v1/health/live").json() == {"status": "ok"}
    assert client.get("/v1/health/ready").json() == {"status": "ok"}


def test_run_requires_bearer_token(client: TestClient) -> None:
    response = client.post("/v1/conversations/c1/runs", json={"text": "hi"})
    assert response.status_code == 401


def test_run_streams_ndjson_updates_and_records_messages(client: TestClient, backend_server: _FakeBackendServer) -> None:
    response = client.post(
        "/v1/conversations/c1/runs",
        json={"text": "안녕?", "selected_nodes": [{"id": "n1"}]},
        headers=AUTH,
    )

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("application/x-ndjson")
    lines = _lines(response)
    assert lines[-1]["content"][-1] == {"type": "text", "text": "안녕"}
    assert "/api/v1/conversations/c1/message/" in backend_server.paths()

    messages = client.get("/v1/conversations/c1/messages", headers=AUTH).json()["messages"]
    assert [message["role"] for message in messages] == ["user", "assistant"]
    assert messages[1]["status"] == "complete"


def test_run_with_unknown_attachment_is_not_found(client: TestClient) -> None:
    response = client.post(
        "/v1/conversations/c1/runs",
        json={"text": "이미지", "attachment_ids": ["missing"]},
        headers=AUTH,
    )

    assert response.status_code == 404
    assert response.json()["error_code"] == "NOT_FOUND"


def test_uploaded_image_is_sent_with_the_run(client: TestClient, backend_server: _FakeBackendServer) -> None:
    rejected = client.post(
        "/v1/attachments",
        files={"file": ("notes.txt", b"hello", "text/plain")},
        headers=AUTH,
    )
    assert rejected.status_code == 400
    assert rejected.json()["error_code"] == "VALIDATION_FAILED"

    uploaded = client.post(
        "/v1/attachments",
        files={"file": ("cat.png", b"\x89PNG", "image/png")},
        headers=AUTH,
    )
    assert uploaded.status_code == 201
    attachment_id = uploaded.json()["id"]

    response = client.post(
        "/v1/conversations/c1/runs",
        json={"text": "고양이 봐줘", "attachment_ids": [attachment_id]},
        headers=AUTH,
    )

    assert response.status_code == 200
    sent = next(request for request in backend_server.requests if request.url.path.endswith("/message/"))
    assert b'filename="cat.png"' in sent.content


def test_remove_attachment_returns_no_content(client: TestClient) -> None:
    uploaded = client.post("/v1/attachments", files={"file": ("a.png", b"x", "image/png")}, headers=AUTH)

    response = client.delete(f"/v1/attachments/{uploaded.json()['id']}", headers=AUTH)

    assert response.status_code == 204


def test_attach_without_active_session_returns_no_content(
    client: TestClient,
    backend_server: _FakeBackendServer,
) -> None:
    response = client.post("/v1/conversations/c1/attach", headers=AUTH)

    assert response.status_code == 204
    assert "/api/v1/conversations/c1/active-session" in backend_server.paths()


def test_attach_resumes_active_session(client: TestClient, backend_server: _FakeBackendServer) -> None:
    backend_server.active_session = {"session_id": "s-1", "cursor": "2-0", "status": "active"}
    backend_server.history = [{"id": "u1", "sender": "user", "text": "진행 중이던 질문"}]

    response = client.post("/v1/conversations/c1/attach", headers=AUTH)

    assert response.status_code == 200
    assert _lines(response)[-1]["content"][-1]["text"] == "재개된 답변"
    resume = next(request for request in backend_server.requests if "/resume" in request.url.path)
    assert resume.url.path == "/api/v1/conversations/c1/sessions/s-1/resume"
    assert resume.url.params["cursor"] == "2-0"
    assert not any(path.endswith("/message/") for path in backend_server.paths())


def test_cancel_without_active_run(client: TestClient) -> None:
    response = client.delete("/v1/conversations/c1/runs/current", headers=AUTH)

    assert response.status_code == 200
    assert response.json() == {"conversation_id": "c1", "cancelled": False}


@pytest.mark.asyncio
async def test_run_is_closed_when_client_leaves_before_first_line(registry: ConversationStateRegistry) -> None:
    backend = FakeBackend([StreamProgress(text="a")], hold=asyncio.Event())
    thread = ThreadManager(
        adapter=RunAdapter(backend=backend, registry=registry),
        history=HistoryLoader(backend=backend, page_limit=10),
    ).get("c1")
    run = thread.send("hi")
    response = RunStreamingResponse(run, "c1")

    async def receive() -> dict[str, Any]:
        return {"type": "http.disconnect"}

    async def send(message: dict[str, Any]) -> None:
        raise OSError("클라이언트가 떠났어요")

    # 끊김을 알리는 예외 타입은 Starlette 버전마다 달라요.
    with contextlib.suppress(Exception):
        await response({"type": "http", "asgi": {"spec_version": "2.4"}}, receive, send)

    assert registry.is_streaming("c1") is False
    assert thread.current_run is None
    assert backend.stream_calls == []
