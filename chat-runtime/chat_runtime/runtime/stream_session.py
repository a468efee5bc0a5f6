"""백엔드 스트림 하나를 당겨 읽는(pull) 비동기 시퀀스로 바꿔요.

백엔드 호출은 별도 태스크에서 진행 콜백을 부르고, 콜백은 최신 누적 스냅샷을
한 칸짜리 버퍼에 덮어써요. 소비자는 버퍼가 채워지거나 호출이 끝날 때까지
기다렸다가 가장 최근 스냅샷만 받아가요.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import AsyncGenerator, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from chat_runtime.runtime.cancellation import CancellationSignal
from chat_runtime.runtime.content import ContentUpdate, render_content
from chat_runtime.runtime.contracts import (
    ChatBackendProtocol,
    ImageUpload,
    StreamProgress,
    StreamResult,
)
from chat_runtime.runtime.session_state import ResumeRequest, SessionState
from chat_runtime.runtime.tool_calls import (
    ToolCallDiagnostic,
    ToolCallRecord,
    apply_tool_call_events,
)
from libs.common.logging import get_logger

logger = get_logger("chat_runtime.stream_session")

# 백그라운드 stop 요청이 GC로 사라지지 않도록 참조를 잡아둬요.
_background_tasks: set[asyncio.Task[None]] = set()


class StreamStatus(str, Enum):
    IDLE = "idle"
    OPENING = "opening"
    STREAMING = "streaming"
    COMPLETED = "completed"
    CANCELED = "canceled"
    FAILED = "failed"


_TERMINAL_STATUSES = frozenset({StreamStatus.COMPLETED, StreamStatus.CANCELED, StreamStatus.FAILED})


@dataclass(slots=True, frozen=True)
class NewMessageRequest:
    text: str
    selection: tuple[Any, ...] = ()
    images: tuple[ImageUpload, ...] = ()
    session_id: str | None = None


StreamRequest = NewMessageRequest | ResumeRequest


class StreamSession:
    """새 메시지 또는 재개 모드로 백엔드 스트림 하나를 소유해요.

    ``async for``로 한 번만 순회할 수 있어요. 취소되면 예외 없이 끝나고,
    실패하면 마지막 스냅샷을 한 번 더 내보낸 뒤 오류를 올려요.
    """

    def __init__(
        self,
        *,
        backend: ChatBackendProtocol,
        conversation_id: str,
        state: SessionState,
        request: StreamRequest,
        cancel: CancellationSignal | None = None,
        run_id: str | None = None,
    ) -> None:
        self.run_id = run_id or str(uuid.uuid4())
        self._backend = backend
        self._conversation_id = conversation_id
        self._state = state
        self._request = request
        self._cancel = cancel or CancellationSignal()
        self._log = logger.bind(conversation_id=conversation_id, run_id=self.run_id)

        self._status = StreamStatus.IDLE
        self._records: dict[str, ToolCallRecord] = {}
        self._text = ""
        self._reasoning: str | None = None
        self._streamed = False
        self._pending: ContentUpdate | None = None
        self._wake = asyncio.Event()
        self._call_task: asyncio.Task[StreamResult] | None = None
        self._stop_sent = False
        self._iterator: AsyncGenerator[ContentUpdate, None] | None = None
        self.diagnostics: list[ToolCallDiagnostic] = []
        self._done_listeners: list[Callable[[StreamSession], None]] = []
        self._released = False

        self._cancel.add_listener(self._on_cancel)
        if self._cancel.cancelled:
            self._on_cancel()

    @property
    def status(self) -> StreamStatus:
        return self._status

    @property
    def is_finished(self) -> bool:
        return self._status in _TERMINAL_STATUSES

    @property
    def is_resume(self) -> bool:
        return isinstance(self._request, ResumeRequest)

    def snapshot(self) -> ContentUpdate:
        return render_content(self._reasoning, self._records.values(), self._text)

    def add_done_listener(self, listener: Callable[[StreamSession], None]) -> None:
        """세션이 끝나고 스트리밍 표시가 풀릴 때 한 번 불러요. 순회하지 않은 세션도 포함해요."""
        if self._released:
            listener(self)
            return
        self._done_listeners.append(listener)

    def __aiter__(self) -> StreamSession:
        return self

    async def __anext__(self) -> ContentUpdate:
        if self._iterator is None:
            self._iterator = self._run()
        return await self._iterator.__anext__()

    async def aclose(self) -> None:
        if self._iterator is not None:
            await self._iterator.aclose()
            return
        if self._status is StreamStatus.IDLE:
            # 한 번도 순회하지 않은 시퀀스도 스트리밍 표시는 풀어줘야 해요.
            self._status = StreamStatus.CANCELED
            self._release()

    async def _run(self) -> AsyncGenerator[ContentUpdate, None]:
        if self._status is not StreamStatus.IDLE:
            return

        self._status = StreamStatus.OPENING
        call_task = asyncio.create_task(self._open())
        call_task.add_done_callback(self._on_call_settled)
        self._call_task = call_task
        self._log.info("stream_session_opening", resume=self.is_resume)

        try:
            while True:
                if self._status is StreamStatus.CANCELED:
                    return
                update = self._pending
                if update is not None:
                    self._pending = None
                    yield update
                    continue
                if call_task.done():
                    break
                self._wake.clear()
                await self._wake.wait()

            if call_task.cancelled():
                self._status = StreamStatus.CANCELED
                return

            error = call_task.exception()
            if error is None:
                self._apply_result(call_task.result())
                self._status = StreamStatus.COMPLETED
                self._log.info("stream_session_completed", tool_call_count=len(self._records))
            else:
                self._status = StreamStatus.FAILED
                self._log.warning("stream_session_failed", error=str(error), error_type=type(error).__name__)

            if self._streamed:
                yield self.snapshot()

            if error is not None:
                raise error
        finally:
            if not call_task.done() and self._status is not StreamStatus.CANCELED:
                self._abort("consumer_closed")
            self._release()

    async def _open(self) -> StreamResult:
        request = self._request
        if isinstance(request, ResumeRequest):
            return await self._backend.resume_with_cursor(
                self._conversation_id,
                request.session_id,
                request.cursor,
                on_progress=self._on_progress,
            )
        return await self._backend.stream_message(
            self._conversation_id,
            request.text,
            on_progress=self._on_progress,
            selection=request.selection,
            images=request.images,
            session_id=request.session_id,
        )

    def _on_progress(self, progress: StreamProgress) -> None:
        if self._cancel.cancelled or self._status in _TERMINAL_STATUSES:
            return

        self._text = progress.text
        if progress.reasoning is not None:
            self._reasoning = progress.reasoning
        if progress.tool_calls:
            reconciled = apply_tool_call_events(self._records, progress.tool_calls)
            self._records = reconciled.records
            self.diagnostics.extend(reconciled.diagnostics)
        if progress.cursor:
            self._state.cursor = progress.cursor
        if progress.session_id:
            self._state.session_id = progress.session_id

        self._streamed = True
        self._status = StreamStatus.STREAMING
        self._pending = self.snapshot()
        self._wake.set()

    def _apply_result(self, result: StreamResult) -> None:
        if result.session_id:
            self._state.session_id = result.session_id
        if result.cursor:
            self._state.cursor = result.cursor

    def _on_call_settled(self, task: asyncio.Task[StreamResult]) -> None:
        if not task.cancelled():
            # 소비자가 먼저 떠났을 때도 예외를 회수해서 경고가 남지 않게 해요.
            task.exception()
        self._wake.set()

    def _on_cancel(self) -> None:
        if self._status in _TERMINAL_STATUSES:
            return
        if self._status is StreamStatus.IDLE:
            # 아직 열지 않았어도 백엔드에는 중단을 알려요.
            self._status = StreamStatus.CANCELED
            self._notify_stop()
            self._release()
            self._log.info("stream_session_canceled_before_open", reason=self._cancel.reason)
            return
        self._abort(self._cancel.reason or "cancelled")

    def _release(self) -> None:
        if self._released:
            return
        self._released = True
        self._cancel.remove_listener(self._on_cancel)
        self._state.finish()
        listeners, self._done_listeners = self._done_listeners, []
        for listener in listeners:
            listener(self)

    def _abort(self, reason: str) -> None:
        self._status = StreamStatus.CANCELED
        self._pending = None
        call_task = self._call_task
        if call_task is not None and not call_task.done():
            self._notify_stop()
            call_task.cancel()
        self._wake.set()
        self._log.info("stream_session_canceled", reason=reason)

    def _notify_stop(self) -> None:
        if self._stop_sent:
            return
        self._stop_sent = True
        task = asyncio.get_running_loop().create_task(self._send_stop())
        _background_tasks.add(task)
        task.add_done_callback(_background_tasks.discard)

    async def _send_stop(self) -> None:
        try:
            await self._backend.stop_message(self._conversation_id)
        except Exception as exc:
            self._log.warning("stream_stop_request_failed", error=str(exc))
