from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

from libs.contracts.models import LoadedMessage


@dataclass(slots=True)
class StreamProgress:
    """진행 콜백 한 번에 전달되는 값이에요. text와 reasoning은 누적값이에요.

    reasoning이 None이면 이번 이벤트에 추론 정보가 없다는 뜻이라 이전 값을 유지해요.
    """

    text: str
    tool_calls: list[Any] = field(default_factory=list)
    reasoning: str | None = None
    citations: list[str] = field(default_factory=list)
    cursor: str | None = None
    session_id: str | None = None


ProgressCallback = Callable[[StreamProgress], None]


@dataclass(slots=True)
class StreamResult:
    session_id: str | None
    cursor: str | None = None


@dataclass(slots=True, frozen=True)
class ActiveSession:
    session_id: str
    cursor: str | None
    status: str


@dataclass(slots=True)
class ImageUpload:
    filename: str
    content_type: str
    data: bytes


class ChatBackendProtocol(Protocol):
    async def stream_message(
        self,
        conversation_id: str,
        text: str,
        *,
        on_progress: ProgressCallback,
        selection: Sequence[Any] = (),
        images: Sequence[ImageUpload] = (),
        session_id: str | None = None,
    ) -> StreamResult: ...

    async def resume_with_cursor(
        self,
        conversation_id: str,
        session_id: str,
        cursor: str,
        *,
        on_progress: ProgressCallback,
    ) -> StreamResult: ...

    async def stop_message(self, conversation_id: str) -> None: ...

    async def detect_active_session(self, conversation_id: str) -> ActiveSession | None: ...

    async def load_messages(self, conversation_id: str, start: int, limit: int) -> list[LoadedMessage]: ...
