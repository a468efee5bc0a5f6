"""도구 호출 이벤트를 call_id 기준으로 하나의 레코드로 합쳐요."""

from __future__ import annotations

import json
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from typing import Any

import pydantic

from libs.common.logging import get_logger
from libs.contracts.models import RawToolCall

logger = get_logger("chat_runtime.tool_calls")

_MISSING = object()


class ToolCallEventType:
    """백엔드가 보내는 도구 호출 이벤트 타입 상수예요."""

    CALL = "call"
    RESULT = "result"
    DELEGATION_RESULT = "delegation_result"
    ERROR = "error"

    TERMINAL = frozenset({RESULT, DELEGATION_RESULT, ERROR})


def is_terminal_event(event_type: str) -> bool:
    return event_type in ToolCallEventType.TERMINAL


@dataclass(slots=True, frozen=True)
class ToolCallSnapshot:
    event_type: str
    response: Any
    details: dict[str, Any]


@dataclass(slots=True, frozen=True)
class ToolCallRecord:
    call_id: str
    tool_name: str
    args: dict[str, Any]
    args_text: str
    stream_state: ToolCallSnapshot | None = None
    result: ToolCallSnapshot | None = None
    is_error: bool = False

    type = "tool-call"

    @property
    def is_terminal(self) -> bool:
        return self.result is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "call_id": self.call_id,
            "tool_name": self.tool_name,
            "args": self.args,
            "args_text": self.args_text,
            "status": "complete" if self.is_terminal else "running",
            "stream_state": _snapshot_to_dict(self.stream_state),
            "result": _snapshot_to_dict(self.result),
            "is_error": self.is_error,
        }


@dataclass(slots=True, frozen=True)
class ToolCallDiagnostic:
    index: int
    reason: str


@dataclass(slots=True)
class ReconcileResult:
    records: dict[str, ToolCallRecord]
    diagnostics: list[ToolCallDiagnostic] = field(default_factory=list)


def apply_tool_call_events(
    previous: Mapping[str, ToolCallRecord],
    payloads: Iterable[Any],
) -> ReconcileResult:
    """이벤트 배치를 이전 레코드 위에 적용한 새 매핑을 돌려줘요.

    입력 매핑은 바꾸지 않아요. 삽입 순서는 call_id가 처음 보인 순서를 따라요.
    한 번 종료(result/delegation_result/error)된 호출은 이후 비종료 이벤트로
    되돌아가지 않고, 다른 call_id의 레코드는 건드리지 않아요.
    형식이 잘못된 페이로드는 건너뛰고 진단 정보로 남겨요.
    """
    records = dict(previous)
    diagnostics: list[ToolCallDiagnostic] = []

    for index, payload in enumerate(payloads):
        try:
            raw = parse_raw_tool_call(payload)
        except ValueError as exc:
            diagnostics.append(ToolCallDiagnostic(index=index, reason=str(exc)))
            logger.warning("tool_call_payload_dropped", index=index, reason=str(exc))
            continue

        existing = records.get(raw.call_id)
        records[raw.call_id] = _merge(existing, raw)

    return ReconcileResult(records=records, diagnostics=diagnostics)


def parse_raw_tool_call(payload: Any) -> RawToolCall:
    if isinstance(payload, RawToolCall):
        return payload
    if isinstance(payload, (str, bytes, bytearray)):
        try:
            payload = json.loads(payload)
        except json.JSONDecodeError as exc:
            raise ValueError(f"도구 호출 JSON을 해석하지 못했어요: {exc.msg}") from exc
    if not isinstance(payload, Mapping):
        raise ValueError(f"도구 호출 페이로드는 객체여야 해요: {type(payload).__name__}")
    try:
        return RawToolCall.model_validate(dict(payload))
    except pydantic.ValidationError as exc:
        fields = ", ".join(".".join(str(part) for part in error["loc"]) for error in exc.errors())
        raise ValueError(f"도구 호출 페이로드 형식이 올바르지 않아요: {fields}") from exc


def dedupe_tool_calls(payloads: Iterable[Any]) -> list[RawToolCall]:
    """히스토리의 도구 호출을 call_id당 하나로 합쳐요.

    뒤에 온 이벤트는 종료 타입일 때만 앞의 것을 덮어써요. 표시 순서는
    처음 등장한 순서를 유지해요.
    """
    by_id: dict[str, RawToolCall] = {}
    for index, payload in enumerate(payloads):
        try:
            raw = parse_raw_tool_call(payload)
        except ValueError as exc:
            logger.warning("history_tool_call_dropped", index=index, reason=str(exc))
            continue

        existing = by_id.get(raw.call_id)
        if existing is None:
            by_id[raw.call_id] = raw
            continue
        if not is_terminal_event(raw.event_type):
            continue
        by_id[raw.call_id] = raw.model_copy(
            update={
                "tool_name": raw.tool_name or existing.tool_name,
                "tool_call_details": (
                    raw.tool_call_details if raw.tool_call_details is not None else existing.tool_call_details
                ),
                "is_complete": raw.is_complete if raw.is_complete is not None else existing.is_complete,
            }
        )
    return list(by_id.values())


def record_from_history(raw: RawToolCall) -> ToolCallRecord:
    args, args_text = _split_arguments(_raw_arguments(raw), default=({}, "{}"))
    snapshot = _snapshot(raw)
    return ToolCallRecord(
        call_id=raw.call_id,
        tool_name=raw.tool_name or "",
        args=args,
        args_text=args_text,
        stream_state=snapshot,
        result=snapshot,
        is_error=raw.event_type == ToolCallEventType.ERROR,
    )


def _merge(existing: ToolCallRecord | None, raw: RawToolCall) -> ToolCallRecord:
    raw_arguments = _raw_arguments(raw)
    snapshot = _snapshot(raw)
    terminal = is_terminal_event(raw.event_type)

    if existing is None:
        args, args_text = _split_arguments(raw_arguments, default=({}, "{}"))
        return ToolCallRecord(
            call_id=raw.call_id,
            tool_name=raw.tool_name or "",
            args=args,
            args_text=args_text,
            stream_state=snapshot,
            result=snapshot if terminal else None,
            is_error=raw.event_type == ToolCallEventType.ERROR,
        )

    # 종료된 호출은 pending으로 되돌리지 않아요. 늦게 온 비종료 이벤트는 무시해요.
    if existing.is_terminal and not terminal:
        return existing

    args, args_text = _split_arguments(raw_arguments, default=(existing.args, existing.args_text))
    return replace(
        existing,
        tool_name=raw.tool_name or existing.tool_name,
        args=args,
        args_text=args_text,
        stream_state=snapshot,
        result=snapshot if terminal else None,
        is_error=raw.event_type == ToolCallEventType.ERROR,
    )


def _raw_arguments(raw: RawToolCall) -> Any:
    details = raw.tool_call_details
    if details is None or "arguments" not in details:
        return _MISSING
    return details["arguments"]


def _split_arguments(value: Any, *, default: tuple[dict[str, Any], str]) -> tuple[dict[str, Any], str]:
    if value is _MISSING:
        return default
    if isinstance(value, dict):
        return value, json.dumps(value, indent=2, ensure_ascii=False, default=str)
    if isinstance(value, str):
        return {}, value
    return {}, json.dumps(value, indent=2, ensure_ascii=False, default=str)


def _snapshot(raw: RawToolCall) -> ToolCallSnapshot:
    details = dict(raw.tool_call_details or {})
    details.setdefault("summary", "")
    return ToolCallSnapshot(event_type=raw.event_type, response=raw.tool_response, details=details)


def _snapshot_to_dict(snapshot: ToolCallSnapshot | None) -> dict[str, Any] | None:
    if snapshot is None:
        return None
    return {
        "event_type": snapshot.event_type,
        "response": snapshot.response,
        "details": snapshot.details,
    }
