from __future__ import annotations

import uuid
from dataclasses import dataclass


@dataclass(slots=True)
class ErrorEnvelope:
    error_code: str
    message: str
    trace_id: str
    retryable: bool


class DomainError(Exception):
    def __init__(self, error_code: str, message: str, retryable: bool = False) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message
        self.retryable = retryable


class ValidationError(DomainError):
    def __init__(self, message: str = "검증에 실패했어요.") -> None:
        super().__init__("VALIDATION_FAILED", message, retryable=False)


class InvalidTurnError(ValidationError):
    """백엔드를 호출하기 전에 거부된 사용자 턴이에요."""

    def __init__(self, message: str = "사용자 메시지가 올바르지 않아요.") -> None:
        super().__init__(message)


class ConflictError(DomainError):
    def __init__(self, message: str = "이미 진행 중인 작업과 충돌했어요.") -> None:
        super().__init__("CONFLICT", message, retryable=True)


class RunInProgressError(ConflictError):
    """같은 대화에서 스트리밍 중인 실행이 이미 있어요."""

    def __init__(self, conversation_id: str) -> None:
        super().__init__(f"대화 {conversation_id!r}에서 이미 응답을 생성하고 있어요.")
        self.conversation_id = conversation_id


class UpstreamTransientError(DomainError):
    def __init__(self, message: str = "외부 시스템에 일시적인 문제가 발생했어요.") -> None:
        super().__init__("UPSTREAM_TRANSIENT", message, retryable=True)


class NotFoundError(DomainError):
    def __init__(self, message: str = "대상을 찾지 못했어요.") -> None:
        super().__init__("NOT_FOUND", message, retryable=False)


def build_error_envelope(error_code: str, message: str, retryable: bool) -> ErrorEnvelope:
    return ErrorEnvelope(
        error_code=error_code,
        message=message,
        trace_id=str(uuid.uuid4()),
        retryable=retryable,
    )
