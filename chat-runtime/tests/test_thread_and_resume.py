from __future__ import annotations

import asyncio

import pytest
from chat_runtime.runtime.attachments import AttachmentStore
from chat_runtime.runtime.contracts import ActiveSession, StreamProgress
from chat_runtime.runtime.history import HistoryLoader
from chat_runtime.runtime.messages import MessageStatus
from chat_runtime.runtime.resume import SessionResumeDetector
from chat_runtime.runtime.run_adapter import RunAdapter
from chat_runtime.runtime.session_state import ConversationStateRegistry
from chat_runtime.runtime.thread import ChatThread, ThreadManager

from libs.common.errors import RunInProgressError, UpstreamTransientError
from libs.contracts.models import LoadedMessage
from tests.conftest import FakeBackend


def _thread(backend: FakeBackend, registry: ConversationStateRegistry) -> ChatThread:
    manager = ThreadManager(
        adapter=RunAdapter(backend=backend, registry=registry),
        history=HistoryLoader(backend=backend, page_limit=50),
        attachments=AttachmentStore(max_bytes=1024),
    )
    return manager.get("c1")


def _detector(backend: FakeBackend, registry: ConversationStateRegistry, wait: float = 1.0) -> SessionResumeDetector:
    return SessionResumeDetector(backend=backend, registry=registry, history_wait_seconds=wait)


@pytest.mark.asyncio
async def test_send_appends_user_and_assistant_messages(registry: ConversationStateRegistry) -> None:
    backend = FakeBackend([StreamProgress(text="답", reasoning="음")])
    thread = _thread(backend, registry)
    await thread.load_history()

    run = thread.send("질문")
    [update async for update in run]

    roles = [message.role for message in thread.messages]
    assert roles == ["user", "assistant"]
    assistant = thread.messages[-1]
    assert assistant.text == "답"
    assert assistant.status == MessageStatus.COMPLETE
    assert assistant.parent_id == thread.messages[0].id
    assert thread.current_run is None


@pytest.mark.asyncio
async def test_send_while_streaming_is_rejected_without_appending(registry: ConversationStateRegistry) -> None:
    backend = FakeBackend(hold=asyncio.Event())
    thread = _thread(backend, registry)

    run = thread.send("first")
    with pytest.raises(RunInProgressError):
        thread.send("second")
    await run.aclose()

    assert [message.text for message in thread.messages] == ["first"]


@pytest.mark.asyncio
async def test_failed_run_leaves_error_message(registry: ConversationStateRegistry) -> None:
    backend = FakeBackend([StreamProgress(text="반")], error=UpstreamTransientError())
    thread = _thread(backend, registry)

    with pytest.raises(UpstreamTransientError):
        async for _ in thread.send("q"):
            pass

    assert thread.messages[-1].role == "assistant"
    assert thread.messages[-1].status == MessageStatus.ERROR


@pytest.mark.asyncio
async def test_wait_for_messages_times_out_without_history(registry: ConversationStateRegistry) -> None:
    thread = _thread(FakeBackend(), registry)
    assert await thread.wait_for_messages(0.01) is False

    await thread.load_history()
    assert await thread.wait_for_messages(0.01) is True


@pytest.mark.asyncio
async def test_resume_continues_from_last_user_message(registry: ConversationStateRegistry) -> None:
    backend = FakeBackend([StreamProgress(text="이어진 답변")])
    backend.active_session = ActiveSession(session_id="s-2", cursor="4-0", status="active")
    backend.history = [LoadedMessage(id="u1", sender="user", text="질문")]
    thread = _thread(backend, registry)
    await thread.load_history()

    run = await _detector(backend, registry).check_and_resume(thread)
    assert run is not None
    assert thread.is_background_task_active is True

    updates = [update async for update in run]

    assert updates[-1].text == "이어진 답변"
    assert backend.resume_calls == [("c1", "s-2", "4-0")]
    assert backend.stream_calls == []
    assert [message.id for message in thread.messages][0] == "u1"
    assert thread.messages[-1].parent_id == "u1"
    assert thread.is_background_task_active is False


@pytest.mark.asyncio
async def test_resume_waits_for_history_loaded_concurrently(registry: ConversationStateRegistry) -> None:
    backend = FakeBackend([StreamProgress(text="ok")])
    backend.active_session = ActiveSession(session_id="s-2", cursor=None, status="active")
    backend.history = [LoadedMessage(id="u1", sender="user", text="질문")]
    thread = _thread(backend, registry)

    history_task = asyncio.create_task(thread.load_history())
    run = await _detector(backend, registry).check_and_resume(thread)
    await history_task

    assert run is not None
    await run.aclose()
    assert registry.is_streaming("c1") is False


@pytest.mark.parametrize(
    ("active", "history"),
    [
        (None, [LoadedMessage(id="u1", sender="user", text="q")]),
        (ActiveSession(session_id="s", cursor="1-0", status="completed"), [LoadedMessage(id="u1", sender="user", text="q")]),
        (ActiveSession(session_id="s", cursor="1-0", status="active"), [LoadedMessage(id="a1", sender="assistant", text="a")]),
        (ActiveSession(session_id="s", cursor="1-0", status="active"), []),
    ],
)
@pytest.mark.asyncio
async def test_resume_is_skipped_when_not_resumable(
    registry: ConversationStateRegistry,
    active: ActiveSession | None,
    history: list[LoadedMessage],
) -> None:
    backend = FakeBackend()
    backend.active_session = active
    backend.history = history
    thread = _thread(backend, registry)
    await thread.load_history()

    run = await _detector(backend, registry).check_and_resume(thread)

    assert run is None
    assert registry.take_resume("c1") is None
    assert backend.resume_calls == []


@pytest.mark.asyncio
async def test_resume_gives_up_when_history_never_arrives(registry: ConversationStateRegistry) -> None:
    backend = FakeBackend()
    backend.active_session = ActiveSession(session_id="s", cursor="1-0", status="active")
    thread = _thread(backend, registry)

    run = await _detector(backend, registry, wait=0.01).check_and_resume(thread)

    assert run is None
    assert registry.take_resume("c1") is None


@pytest.mark.asyncio
async def test_resume_detection_failure_means_no_active_session(registry: ConversationStateRegistry) -> None:
    backend = FakeBackend()
    backend.detect_error = UpstreamTransientError("백엔드가 응답하지 않아요.")
    thread = _thread(backend, registry)
    await thread.load_history()

    assert await _detector(backend, registry).check_and_resume(thread) is None


@pytest.mark.asyncio
async def test_cancelling_resumed_run_before_reading_frees_thread(registry: ConversationStateRegistry) -> None:
    backend = FakeBackend([StreamProgress(text="이어진 답변")])
    backend.active_session = ActiveSession(session_id="s-2", cursor="4-0", status="active")
    backend.history = [LoadedMessage(id="u1", sender="user", text="질문")]
    thread = _thread(backend, registry)
    await thread.load_history()
    run = await _detector(backend, registry).check_and_resume(thread)
    assert run is not None

    assert thread.cancel() is True

    assert thread.is_background_task_active is False
    assert thread.current_run is None
    assert registry.is_streaming("c1") is False
    assert [message.id for message in thread.messages] == ["u1"]

    follow_up = thread.send("다시 물어볼게요")
    [update async for update in follow_up]
    assert backend.stream_calls[0]["text"] == "다시 물어볼게요"
