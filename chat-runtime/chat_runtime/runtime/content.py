from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any, Union

from chat_runtime.runtime.tool_calls import ToolCallRecord


@dataclass(slots=True, frozen=True)
class ReasoningPart:
    text: str

    type = "reasoning"

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "text": self.text}


@dataclass(slots=True, frozen=True)
class TextPart:
    text: str

    type = "text"

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "text": self.text}


@dataclass(slots=True, frozen=True)
class ImagePart:
    image: str

    type = "image"

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "image": self.image}


ContentPart = Union[ReasoningPart, ToolCallRecord, TextPart]


@dataclass(slots=True, frozen=True)
class ContentUpdate:
    """소비자에게 전달하는 누적 스냅샷이에요. 순서는 추론 → 도구 호출 → 본문이에요."""

    parts: tuple[ContentPart, ...]

    @property
    def reasoning(self) -> str | None:
        for part in self.parts:
            if isinstance(part, ReasoningPart):
                return part.text
        return None

    @property
    def tool_calls(self) -> tuple[ToolCallRecord, ...]:
        return tuple(part for part in self.parts if isinstance(part, ToolCallRecord))

    @property
    def text(self) -> str:
        for part in reversed(self.parts):
            if isinstance(part, TextPart):
                return part.text
        return ""

    def to_dict(self) -> dict[str, Any]:
        return {"content": [part.to_dict() for part in self.parts]}


def render_content(
    reasoning: str | None,
    tool_calls: Iterable[ToolCallRecord],
    text: str | None,
) -> ContentUpdate:
    parts: list[ContentPart] = []
    if reasoning and reasoning.strip():
        parts.append(ReasoningPart(text=reasoning))
    # 이름이 아직 없는 도구 호출은 이름이 도착할 때까지 보여주지 않아요.
    parts.extend(record for record in tool_calls if record.tool_name)
    parts.append(TextPart(text=text or ""))
    return ContentUpdate(parts=tuple(parts))
