from __future__ import annotations

import asyncio

from chat_runtime.runtime.cancellation import CancellationSignal
from chat_runtime.runtime.contracts import ChatBackendProtocol
from chat_runtime.runtime.session_state import INITIAL_CURSOR, ConversationStateRegistry, ResumeRequest
from chat_runtime.runtime.thread import ChatThread, ThreadRun
from libs.common.logging import get_logger

logger = get_logger("chat_runtime.resume")

RESUMABLE_STATUS = "active"


class SessionResumeDetector:
    """재접속한 클라이언트가 아직 진행 중인 백엔드 세션을 이어받게 해요.

    재개할 수 있는 조건은 세 가지예요. 백엔드 세션 상태가 ``active``여야 하고,
    히스토리가 제한 시간 안에 준비돼야 하고, 마지막 메시지가 사용자 메시지여야
    해요. 하나라도 어긋나면 아무것도 하지 않고 ``None``을 돌려줘요.
    """

    def __init__(
        self,
        *,
        backend: ChatBackendProtocol,
        registry: ConversationStateRegistry,
        history_wait_seconds: float = 5.0,
        detect_delay_seconds: float = 0.0,
    ) -> None:
        self._backend = backend
        self._registry = registry
        self._history_wait_seconds = history_wait_seconds
        self._detect_delay_seconds = detect_delay_seconds

    async def check_and_resume(
        self,
        thread: ChatThread,
        cancel: CancellationSignal | None = None,
    ) -> ThreadRun | None:
        conversation_id = thread.conversation_id
        log = logger.bind(conversation_id=conversation_id)

        if self._detect_delay_seconds > 0:
            await asyncio.sleep(self._detect_delay_seconds)
        if thread.is_background_task_active or self._registry.is_streaming(conversation_id):
            log.info("resume_skipped_run_active")
            return None

        try:
            active = await self._backend.detect_active_session(conversation_id)
        except Exception as exc:
            log.warning("resume_detect_failed", error=str(exc))
            return None
        if active is None or active.status != RESUMABLE_STATUS:
            log.info("resume_no_active_session", status=active.status if active else None)
            return None

        if not await thread.wait_for_messages(self._history_wait_seconds):
            log.warning("resume_history_timeout", wait_seconds=self._history_wait_seconds)
            return None

        messages = thread.messages
        anchor = messages[-1] if messages else None
        if anchor is None or anchor.role != "user":
            log.info("resume_anchor_missing", message_count=len(messages))
            return None

        self._registry.offer_resume(
            conversation_id,
            ResumeRequest(session_id=active.session_id, cursor=active.cursor or INITIAL_CURSOR),
        )
        try:
            run = thread.start_run(anchor.id, cancel=cancel)
        except Exception:
            self._registry.take_resume(conversation_id)
            raise

        log.info("resume_started", session_id=active.session_id, cursor=active.cursor, anchor_id=anchor.id)
        return run
