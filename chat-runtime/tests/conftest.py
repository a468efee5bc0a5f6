from __future__ import annotations

import asyncio
from collections.abc import Sequence
from typing import Any

import pytest
from chat_runtime.runtime.contracts import (
    ActiveSession,
    ImageUpload,
    ProgressCallback,
    StreamProgress,
    StreamResult,
)
from chat_runtime.runtime.session_state import ConversationStateRegistry

from libs.contracts.models import LoadedMessage


class FakeBackend:
    """정해둔 진행 이벤트를 차례로 흘려보내는 가짜 백엔드예요.

    `hold`가 있으면 이벤트를 다 보낸 뒤 그 이벤트가 설정될 때까지 응답을 끝내지 않아요.
    """

    def __init__(
        self,
        script: Sequence[StreamProgress] = (),
        *,
        result: StreamResult | None = None,
        error: Exception | None = None,
        hold: asyncio.Event | None = None,
    ) -> None:
        self.script = list(script)
        self.result = result or StreamResult(session_id="s-1", cursor="9-0")
        self.error = error
        self.hold = hold
        self.stream_calls: list[dict[str, Any]] = []
        self.resume_calls: list[tuple[str, str, str]] = []
        self.stop_calls: list[str] = []
        self.active_session: ActiveSession | None = None
        self.detect_error: Exception | None = None
        self.history: list[LoadedMessage] = []
        self.history_error: Exception | None = None
        self.load_calls: list[tuple[str, int, int]] = []

    async def stream_message(
        self,
        conversation_id: str,
        text: str,
        *,
        on_progress: ProgressCallback,
        selection: Sequence[Any] = (),
        images: Sequence[ImageUpload] = (),
        session_id: str | None = None,
    ) -> StreamResult:
        self.stream_calls.append(
            {
                "conversation_id": conversation_id,
                "text": text,
                "selection": list(selection),
                "images": list(images),
                "session_id": session_id,
            }
        )
        return await self._play(on_progress)

    async def resume_with_cursor(
        self,
        conversation_id: str,
        session_id: str,
        cursor: str,
        *,
        on_progress: ProgressCallback,
    ) -> StreamResult:
        self.resume_calls.append((conversation_id, session_id, cursor))
        return await self._play(on_progress)

    async def stop_message(self, conversation_id: str) -> None:
        self.stop_calls.append(conversation_id)

    async def detect_active_session(self, conversation_id: str) -> ActiveSession | None:
        del conversation_id
        if self.detect_error is not None:
            raise self.detect_error
        return self.active_session

    async def load_messages(self, conversation_id: str, start: int, limit: int) -> list[LoadedMessage]:
        self.load_calls.append((conversation_id, start, limit))
        if self.history_error is not None:
            raise self.history_error
        return list(self.history)

    async def _play(self, on_progress: ProgressCallback) -> StreamResult:
        for progress in self.script:
            on_progress(progress)
            await asyncio.sleep(0)
        if self.hold is not None:
            await self.hold.wait()
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture
def registry() -> ConversationStateRegistry:
    return ConversationStateRegistry()


def tool_event(call_id: str, event_type: str = "call", **extra: Any) -> dict[str, Any]:
    """테스트용 도구 호출 페이로드를 만드는 헬퍼예요."""
    payload: dict[str, Any] = {"call_id": call_id, "tool_name": "search", "event_type": event_type}
    payload.update(extra)
    return payload
