from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class SubmitRunRequest(BaseModel):
    text: str = Field(min_length=1)
    selected_nodes: list[Any] = Field(default_factory=list)
    attachment_ids: list[str] = Field(default_factory=list)


class CancelRunResponse(BaseModel):
    conversation_id: str
    cancelled: bool


class MessagesResponse(BaseModel):
    conversation_id: str
    messages: list[dict[str, Any]]


class AttachmentResponse(BaseModel):
    id: str
    type: str
    name: str
    content_type: str
    status: str
    size: int | None = None
