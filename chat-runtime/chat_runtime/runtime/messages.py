from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal, Union

from chat_runtime.runtime.attachments import Attachment
from chat_runtime.runtime.content import ContentPart, ImagePart, TextPart

MessagePart = Union[ContentPart, ImagePart]


class MessageStatus:
    COMPLETE = "complete"
    CANCELLED = "cancelled"
    ERROR = "error"


@dataclass(slots=True)
class ThreadMessage:
    id: str
    role: Literal["user", "assistant"]
    content: tuple[MessagePart, ...]
    attachments: tuple[Attachment, ...] = ()
    status: str = MessageStatus.COMPLETE
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    parent_id: str | None = None

    @property
    def text(self) -> str | None:
        for part in self.content:
            if isinstance(part, TextPart):
                return part.text
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role,
            "parent_id": self.parent_id,
            "status": self.status,
            "created_at": self.created_at.isoformat(),
            "content": [part.to_dict() for part in self.content],
            "attachments": [attachment.to_dict() for attachment in self.attachments],
        }


@dataclass(slots=True)
class RunConfig:
    """렌더링 계층이 턴마다 넘기는 부가 설정이에요. `custom["selected_nodes"]`를 백엔드에 전달해요."""

    custom: dict[str, Any] = field(default_factory=dict)

    @property
    def selected_nodes(self) -> list[Any]:
        nodes = self.custom.get("selected_nodes")
        return list(nodes) if isinstance(nodes, (list, tuple)) else []


def new_user_message(
    text: str,
    *,
    attachments: tuple[Attachment, ...] = (),
    parent_id: str | None = None,
) -> ThreadMessage:
    return ThreadMessage(
        id=str(uuid.uuid4()),
        role="user",
        content=(TextPart(text=text),),
        attachments=attachments,
        parent_id=parent_id,
    )
