from __future__ import annotations

from fastapi import APIRouter, File, Header, Request, Response, UploadFile, status

from chat_runtime.app.models import AttachmentResponse
from chat_runtime.modules.common.deps import get_runtime, require_auth
from libs.common.logging import get_logger

router = APIRouter()
logger = get_logger("chat_runtime.modules.attachments")


@router.post("/attachments", response_model=AttachmentResponse, status_code=status.HTTP_201_CREATED)
async def upload_attachment(
    request: Request,
    file: UploadFile = File(...),
    authorization: str = Header(default=""),
) -> AttachmentResponse:
    require_auth(request, authorization)
    data = await file.read()
    attachment = get_runtime(request).attachments.add(
        filename=file.filename or "upload",
        content_type=file.content_type,
        data=data,
    )
    logger.info("attachment_added", attachment_id=attachment.id, content_type=attachment.content_type, size=len(data))
    return AttachmentResponse(
        id=attachment.id,
        type=attachment.type,
        name=attachment.name,
        content_type=attachment.content_type,
        status=attachment.status,
        size=len(data),
    )


@router.delete("/attachments/{attachment_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_attachment(
    request: Request,
    attachment_id: str,
    authorization: str = Header(default=""),
) -> Response:
    require_auth(request, authorization)
    get_runtime(request).attachments.remove(attachment_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
