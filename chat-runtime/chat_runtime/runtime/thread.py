"""대화 스레드 하나의 메시지 목록과 실행을 관리해요.

히스토리는 스레드마다 한 번만 불러오고, 실행이 끝나면 마지막 스냅샷을
어시스턴트 메시지로 붙여요.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator, Sequence

from chat_runtime.runtime.attachments import Attachment, AttachmentStore
from chat_runtime.runtime.cancellation import CancellationSignal
from chat_runtime.runtime.content import ContentUpdate, render_content
from chat_runtime.runtime.history import HistoryLoader
from chat_runtime.runtime.messages import MessageStatus, RunConfig, ThreadMessage, new_user_message
from chat_runtime.runtime.run_adapter import RunAdapter
from chat_runtime.runtime.stream_session import StreamSession, StreamStatus
from libs.common.errors import NotFoundError, RunInProgressError
from libs.common.logging import get_logger

logger = get_logger("chat_runtime.thread")

_MESSAGE_STATUS_BY_STREAM = {
    StreamStatus.COMPLETED: MessageStatus.COMPLETE,
    StreamStatus.CANCELED: MessageStatus.CANCELLED,
    StreamStatus.FAILED: MessageStatus.ERROR,
}


class ThreadRun:
    """StreamSession을 감싸서 끝날 때 스레드에 어시스턴트 메시지를 남겨요."""

    def __init__(self, thread: ChatThread, session: StreamSession, *, parent_id: str, background: bool) -> None:
        self._thread = thread
        self._session = session
        self.parent_id = parent_id
        self.background = background
        self._iterator: AsyncGenerator[ContentUpdate, None] | None = None
        self._finished = False
        session.add_done_listener(self._on_session_done)

    @property
    def session(self) -> StreamSession:
        return self._session

    @property
    def run_id(self) -> str:
        return self._session.run_id

    def __aiter__(self) -> ThreadRun:
        return self

    async def __anext__(self) -> ContentUpdate:
        if self._iterator is None:
            self._iterator = self._iterate()
        return await self._iterator.__anext__()

    async def aclose(self) -> None:
        if self._iterator is not None:
            await self._iterator.aclose()
            return
        await self._session.aclose()
        self._finish(None)

    async def _iterate(self) -> AsyncGenerator[ContentUpdate, None]:
        last: ContentUpdate | None = None
        try:
            async for update in self._session:
                last = update
                yield update
        finally:
            await self._session.aclose()
            self._finish(last)

    def _on_session_done(self, session: StreamSession) -> None:
        # 순회 중이면 _iterate가 마지막 스냅샷과 함께 마무리해요.
        if self._iterator is None:
            self._finish(None)

    def _finish(self, last: ContentUpdate | None) -> None:
        if self._finished:
            return
        self._finished = True
        self._thread._on_run_finished(self, last)


class ChatThread:
    def __init__(
        self,
        *,
        conversation_id: str,
        adapter: RunAdapter,
        history: HistoryLoader,
        attachments: AttachmentStore | None = None,
    ) -> None:
        self.conversation_id = conversation_id
        self._adapter = adapter
        self._history = history
        self._attachments = attachments
        self._messages: list[ThreadMessage] = []
        self._history_loaded = asyncio.Event()
        self._load_lock = asyncio.Lock()
        self._current: ThreadRun | None = None
        self.is_background_task_active = False

    @property
    def messages(self) -> tuple[ThreadMessage, ...]:
        return tuple(self._messages)

    @property
    def current_run(self) -> ThreadRun | None:
        return self._current

    async def load_history(self) -> tuple[ThreadMessage, ...]:
        async with self._load_lock:
            if self._history_loaded.is_set():
                return self.messages
            loaded = await self._history.load(self.conversation_id)
            # 히스토리보다 먼저 보낸 메시지는 뒤에 이어 붙여요.
            self._messages = [*loaded, *self._messages]
            self._history_loaded.set()
        return self.messages

    async def wait_for_messages(self, timeout: float) -> bool:
        try:
            await asyncio.wait_for(self._history_loaded.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    def send(
        self,
        text: str,
        *,
        attachment_ids: Sequence[str] = (),
        run_config: RunConfig | None = None,
        cancel: CancellationSignal | None = None,
    ) -> ThreadRun:
        if self._adapter.is_streaming(self.conversation_id):
            raise RunInProgressError(self.conversation_id)

        attachments = self._take_attachments(attachment_ids)
        parent_id = self._messages[-1].id if self._messages else None
        message = new_user_message(text, attachments=attachments, parent_id=parent_id)
        self._messages.append(message)
        try:
            session = self._adapter.run(self.conversation_id, self._messages, cancel, run_config)
        except Exception:
            self._messages.remove(message)
            raise
        return self._track(ThreadRun(self, session, parent_id=message.id, background=False))

    def start_run(self, anchor_id: str, *, cancel: CancellationSignal | None = None) -> ThreadRun:
        """이미 있는 사용자 메시지를 기준으로 실행을 시작해요. 재개할 때 써요."""
        index = next((i for i, message in enumerate(self._messages) if message.id == anchor_id), None)
        if index is None:
            raise NotFoundError(f"기준 메시지를 찾을 수 없어요: {anchor_id!r}")

        session = self._adapter.run(self.conversation_id, self._messages[: index + 1], cancel)
        self.is_background_task_active = True
        return self._track(ThreadRun(self, session, parent_id=anchor_id, background=True))

    def cancel(self) -> bool:
        return self._adapter.cancel_run(self.conversation_id)

    def _take_attachments(self, attachment_ids: Sequence[str]) -> tuple[Attachment, ...]:
        if not attachment_ids:
            return ()
        if self._attachments is None:
            raise NotFoundError("첨부파일 저장소가 설정되지 않았어요.")
        for attachment_id in attachment_ids:
            self._attachments.get(attachment_id)
        return tuple(self._attachments.send(attachment_id) for attachment_id in attachment_ids)

    def _track(self, run: ThreadRun) -> ThreadRun:
        if not run.session.is_finished:
            self._current = run
        return run

    def _on_run_finished(self, run: ThreadRun, last: ContentUpdate | None) -> None:
        if self._current is run:
            self._current = None
        if run.background:
            self.is_background_task_active = False

        status = _MESSAGE_STATUS_BY_STREAM.get(run.session.status, MessageStatus.CANCELLED)
        if last is None and status != MessageStatus.ERROR:
            return
        content = last if last is not None else render_content(None, (), "")
        self._messages.append(
            ThreadMessage(
                id=run.run_id,
                role="assistant",
                content=content.parts,
                status=status,
                parent_id=run.parent_id,
            )
        )
        logger.info(
            "thread_run_finished",
            conversation_id=self.conversation_id,
            run_id=run.run_id,
            status=status,
            background=run.background,
        )


class ThreadManager:
    """대화 id별 ChatThread를 만들고 재사용해요."""

    def __init__(
        self,
        *,
        adapter: RunAdapter,
        history: HistoryLoader,
        attachments: AttachmentStore | None = None,
    ) -> None:
        self._adapter = adapter
        self._history = history
        self._attachments = attachments
        self._threads: dict[str, ChatThread] = {}

    def get(self, conversation_id: str) -> ChatThread:
        thread = self._threads.get(conversation_id)
        if thread is None:
            thread = ChatThread(
                conversation_id=conversation_id,
                adapter=self._adapter,
                history=self._history,
                attachments=self._attachments,
            )
            self._threads[conversation_id] = thread
        return thread
