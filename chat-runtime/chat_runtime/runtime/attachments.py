from __future__ import annotations

import uuid
from dataclasses import dataclass, replace
from typing import Any

from chat_runtime.runtime.contracts import ImageUpload
from libs.common.errors import NotFoundError, ValidationError
from libs.common.logging import get_logger

logger = get_logger("chat_runtime.attachments")


class AttachmentStatus:
    PENDING = "requires-action"
    COMPLETE = "complete"


@dataclass(slots=True, frozen=True)
class Attachment:
    id: str
    type: str
    name: str
    content_type: str
    status: str
    data: bytes | None = None

    @property
    def is_complete(self) -> bool:
        return self.status == AttachmentStatus.COMPLETE

    def to_upload(self) -> ImageUpload | None:
        if self.type != "image" or self.data is None:
            return None
        return ImageUpload(filename=self.name, content_type=self.content_type, data=self.data)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "name": self.name,
            "content_type": self.content_type,
            "status": self.status,
            "size": len(self.data) if self.data is not None else None,
        }


class AttachmentStore:
    """전송 전 이미지 첨부를 보관해요. 전송하면 파일 바이트를 유지한 채 완료 상태가 돼요."""

    def __init__(self, *, max_bytes: int, max_pending: int = 64) -> None:
        self._max_bytes = max_bytes
        self._max_pending = max_pending
        self._pending: dict[str, Attachment] = {}

    def add(self, *, filename: str, content_type: str | None, data: bytes) -> Attachment:
        if not content_type or not content_type.startswith("image/"):
            raise ValidationError(f"이미지 파일만 첨부할 수 있어요: {filename!r}")
        if len(data) > self._max_bytes:
            raise ValidationError(f"첨부파일이 너무 커요: {len(data)} bytes (최대 {self._max_bytes} bytes)")

        attachment = Attachment(
            id=str(uuid.uuid4()),
            type="image",
            name=filename,
            content_type=content_type,
            status=AttachmentStatus.PENDING,
            data=data,
        )
        # 보내지도 지우지도 않은 업로드가 쌓이면 가장 오래된 것부터 버려요.
        while len(self._pending) >= self._max_pending:
            evicted_id = next(iter(self._pending))
            del self._pending[evicted_id]
            logger.warning("attachment_evicted", attachment_id=evicted_id, max_pending=self._max_pending)
        self._pending[attachment.id] = attachment
        return attachment

    def get(self, attachment_id: str) -> Attachment:
        attachment = self._pending.get(attachment_id)
        if attachment is None:
            raise NotFoundError(f"첨부파일을 찾을 수 없어요: {attachment_id!r}")
        return attachment

    def remove(self, attachment_id: str) -> None:
        self._pending.pop(attachment_id, None)

    def send(self, attachment_id: str) -> Attachment:
        attachment = self.get(attachment_id)
        del self._pending[attachment_id]
        return replace(attachment, status=AttachmentStatus.COMPLETE)
