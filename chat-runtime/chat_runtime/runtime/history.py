from __future__ import annotations

from datetime import datetime, timezone

from chat_runtime.runtime.content import ImagePart, TextPart, render_content
from chat_runtime.runtime.contracts import ChatBackendProtocol
from chat_runtime.runtime.messages import MessagePart, ThreadMessage
from chat_runtime.runtime.tool_calls import dedupe_tool_calls, record_from_history
from libs.common.logging import get_logger
from libs.contracts.models import LoadedMessage

logger = get_logger("chat_runtime.history")


class HistoryLoader:
    def __init__(
        self,
        *,
        backend: ChatBackendProtocol,
        page_limit: int,
        multimodal_enabled: bool = False,
    ) -> None:
        self._backend = backend
        self._page_limit = page_limit
        self._multimodal_enabled = multimodal_enabled

    async def load(self, conversation_id: str) -> list[ThreadMessage]:
        """백엔드에 저장된 메시지를 스레드 메시지로 바꿔요. 실패하면 빈 히스토리로 시작해요."""
        try:
            loaded = await self._backend.load_messages(conversation_id, 0, self._page_limit)
        except Exception as exc:
            logger.warning("history_load_failed", conversation_id=conversation_id, error=str(exc))
            return []

        messages = [self.convert(message) for message in loaded]
        logger.info("history_loaded", conversation_id=conversation_id, message_count=len(messages))
        return messages

    def convert(self, message: LoadedMessage) -> ThreadMessage:
        created_at = _parse_created_at(message.created_at)
        if message.sender == "user":
            parts: list[MessagePart] = [TextPart(text=message.text or "")]
            if self._multimodal_enabled and message.has_attachments:
                parts.extend(
                    ImagePart(image=attachment.download_url)
                    for attachment in message.attachments
                    if attachment.attachment_type == "image" and attachment.download_url
                )
            return ThreadMessage(id=message.id, role="user", content=tuple(parts), created_at=created_at)

        records = [record_from_history(raw) for raw in dedupe_tool_calls(message.tool_calls)]
        update = render_content(message.thinking, records, message.text)
        return ThreadMessage(id=message.id, role="assistant", content=update.parts, created_at=created_at)


def _parse_created_at(value: str | None) -> datetime:
    if not value:
        return datetime.now(timezone.utc)
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return datetime.now(timezone.utc)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
