from __future__ import annotations

from dataclasses import dataclass

INITIAL_CURSOR = "0-0"


@dataclass(slots=True, frozen=True)
class ResumeRequest:
    session_id: str
    cursor: str


@dataclass(slots=True)
class SessionState:
    """대화 하나의 스트리밍 상태예요. 턴이 바뀌어도 유지돼요."""

    session_id: str | None = None
    cursor: str = INITIAL_CURSOR
    streaming: bool = False
    reconnecting: bool = False
    reconnect_attempts: int = 0

    def reset_for_new_run(self) -> None:
        self.session_id = None
        self.cursor = INITIAL_CURSOR
        self.reconnecting = False
        self.reconnect_attempts = 0

    def prepare_resume(self, request: ResumeRequest) -> None:
        self.session_id = request.session_id
        self.cursor = request.cursor
        self.reconnecting = True
        self.reconnect_attempts += 1

    def finish(self) -> None:
        self.streaming = False
        self.reconnecting = False


class ConversationStateRegistry:
    """대화별 SessionState와 일회성 ResumeRequest를 보관해요.

    모든 메서드는 동기 함수라 이벤트 루프 하나 안에서 확인과 갱신이
    끊기지 않고 이뤄져요.
    """

    def __init__(self) -> None:
        self._states: dict[str, SessionState] = {}
        self._resume_requests: dict[str, ResumeRequest] = {}

    def state_for(self, conversation_id: str) -> SessionState:
        state = self._states.get(conversation_id)
        if state is None:
            state = SessionState()
            self._states[conversation_id] = state
        return state

    def is_streaming(self, conversation_id: str) -> bool:
        state = self._states.get(conversation_id)
        return state is not None and state.streaming

    def offer_resume(self, conversation_id: str, request: ResumeRequest) -> None:
        self._resume_requests[conversation_id] = request

    def take_resume(self, conversation_id: str) -> ResumeRequest | None:
        return self._resume_requests.pop(conversation_id, None)

