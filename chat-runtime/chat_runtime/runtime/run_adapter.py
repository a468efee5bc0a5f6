from __future__ import annotations

from collections.abc import Sequence

from chat_runtime.runtime.cancellation import CancellationSignal
from chat_runtime.runtime.contracts import ChatBackendProtocol, ImageUpload
from chat_runtime.runtime.messages import RunConfig, ThreadMessage
from chat_runtime.runtime.session_state import ConversationStateRegistry
from chat_runtime.runtime.stream_session import NewMessageRequest, StreamRequest, StreamSession
from libs.common.errors import InvalidTurnError, RunInProgressError
from libs.common.logging import get_logger

logger = get_logger("chat_runtime.run_adapter")


class RunAdapter:
    """렌더링 계층의 턴 요청을 StreamSession으로 바꿔줘요.

    검증과 스트리밍 표시는 동기적으로 끝나서, 같은 대화에 두 번째 실행이
    끼어들 틈이 없어요. 보류 중인 재개 요청이 있으면 사용자 메시지 대신
    재개 경로로 보내요.
    """

    def __init__(
        self,
        *,
        backend: ChatBackendProtocol,
        registry: ConversationStateRegistry,
        multimodal_enabled: bool = False,
    ) -> None:
        self._backend = backend
        self._registry = registry
        self._multimodal_enabled = multimodal_enabled
        self._active: dict[str, tuple[CancellationSignal, StreamSession]] = {}

    def is_streaming(self, conversation_id: str) -> bool:
        return self._registry.is_streaming(conversation_id)

    def run(
        self,
        conversation_id: str,
        messages: Sequence[ThreadMessage],
        cancel: CancellationSignal | None = None,
        run_config: RunConfig | None = None,
    ) -> StreamSession:
        if self._registry.is_streaming(conversation_id):
            raise RunInProgressError(conversation_id)

        state = self._registry.state_for(conversation_id)
        resume = self._registry.take_resume(conversation_id)
        request: StreamRequest
        if resume is not None:
            state.prepare_resume(resume)
            request = resume
        else:
            request = self._build_new_message(messages, run_config)
            state.reset_for_new_run()
        state.streaming = True

        signal = cancel or CancellationSignal()
        session = StreamSession(
            backend=self._backend,
            conversation_id=conversation_id,
            state=state,
            request=request,
            cancel=signal,
        )
        self._active[conversation_id] = (signal, session)
        logger.info(
            "run_started",
            conversation_id=conversation_id,
            run_id=session.run_id,
            resume=resume is not None,
            reconnect_attempts=state.reconnect_attempts,
        )
        return session

    def cancel_run(self, conversation_id: str, reason: str = "user_cancelled") -> bool:
        entry = self._active.get(conversation_id)
        if entry is None:
            return False
        signal, session = entry
        if session.is_finished:
            del self._active[conversation_id]
            return False
        signal.cancel(reason)
        # 종료 상태에 닿은 세션만 목록에서 빼요.
        if session.is_finished:
            del self._active[conversation_id]
        return True

    def _build_new_message(
        self,
        messages: Sequence[ThreadMessage],
        run_config: RunConfig | None,
    ) -> NewMessageRequest:
        if not messages:
            raise InvalidTurnError("보낼 메시지가 없어요.")
        last = messages[-1]
        if last.role != "user":
            raise InvalidTurnError("마지막 메시지가 사용자 메시지가 아니에요.")
        text = last.text
        if text is None:
            raise InvalidTurnError("사용자 메시지에 텍스트가 없어요.")

        images: tuple[ImageUpload, ...] = ()
        if self._multimodal_enabled:
            uploads = (attachment.to_upload() for attachment in last.attachments)
            images = tuple(upload for upload in uploads if upload is not None)

        selection = tuple(run_config.selected_nodes) if run_config is not None else ()
        return NewMessageRequest(text=text, selection=selection, images=images)
