from __future__ import annotations

from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class RawToolCall(BaseModel):
    """백엔드가 스트림이나 히스토리로 보내는 도구 호출 이벤트 한 건이에요."""

    model_config = ConfigDict(extra="ignore")

    call_id: str = Field(min_length=1)
    tool_name: str | None = None
    tool_call_details: dict[str, Any] | None = None
    event_type: str = "call"
    tool_response: Any = None
    is_complete: bool | None = None


class StreamChunk(BaseModel):
    """NDJSON 스트림 한 줄이에요. `message`와 `thinking`은 직전 줄 이후의 델타예요."""

    model_config = ConfigDict(extra="ignore")

    message: str | None = None
    thinking: str | None = None
    tool_calls: list[Any] = Field(default_factory=list)
    citations: list[str] = Field(default_factory=list)
    session_id: str | None = None
    cursor: str | None = None

    @field_validator("tool_calls", "citations", mode="before")
    @classmethod
    def _null_as_empty(cls, value: object) -> object:
        """일부 백엔드는 빈 목록 대신 null을 보내요."""
        return [] if value is None else value


class ActiveSessionResponse(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    session_id: str = Field(min_length=1, validation_alias=AliasChoices("session_id", "sessionId"))
    cursor: str | None = None
    status: str


class LoadedAttachment(BaseModel):
    model_config = ConfigDict(extra="ignore")

    attachment_type: str
    download_url: str | None = None


class LoadedMessage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    sender: str
    text: str | None = None
    thinking: str | None = None
    tool_calls: list[Any] = Field(default_factory=list)
    citations: list[str] = Field(default_factory=list)
    has_attachments: bool = False
    attachments: list[LoadedAttachment] = Field(default_factory=list)
    created_at: str | None = None
