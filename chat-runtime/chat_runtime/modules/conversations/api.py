from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from dataclasses import asdict

import httpx
from fastapi import APIRouter, Header, Request, Response, status
from fastapi.responses import StreamingResponse
from starlette.types import Receive, Scope, Send

from chat_runtime.app.models import CancelRunResponse, MessagesResponse, SubmitRunRequest
from chat_runtime.modules.common.deps import get_runtime, require_auth
from chat_runtime.runtime.messages import RunConfig
from chat_runtime.runtime.thread import ThreadRun
from libs.common.errors import DomainError, build_error_envelope
from libs.common.logging import get_logger

router = APIRouter()
logger = get_logger("chat_runtime.modules.conversations")

NDJSON_MEDIA_TYPE = "application/x-ndjson"


def _encode_line(payload: dict[str, object]) -> bytes:
    return (json.dumps(payload, ensure_ascii=False, default=str) + "\n").encode("utf-8")


async def _stream_run(run: ThreadRun, conversation_id: str) -> AsyncIterator[bytes]:
    """업데이트를 NDJSON 줄로 내보내요. 클라이언트가 끊기면 실행도 취소돼요."""
    try:
        async for update in run:
            yield _encode_line(update.to_dict())
    except DomainError as exc:
        envelope = build_error_envelope(exc.error_code, exc.message, exc.retryable)
        logger.warning(
            "run_stream_failed",
            conversation_id=conversation_id,
            trace_id=envelope.trace_id,
            error_code=exc.error_code,
        )
        yield _encode_line({"error": asdict(envelope)})
    except httpx.HTTPStatusError as exc:
        envelope = build_error_envelope("UPSTREAM_HTTP_ERROR", f"백엔드가 {exc.response.status_code}로 응답했어요.", False)
        logger.warning(
            "run_stream_failed",
            conversation_id=conversation_id,
            trace_id=envelope.trace_id,
            status_code=exc.response.status_code,
        )
        yield _encode_line({"error": asdict(envelope)})
    finally:
        await run.aclose()


class RunStreamingResponse(StreamingResponse):
    """응답이 어떻게 끝나든 실행을 닫아요.

    첫 줄을 당기기 전에 클라이언트가 끊기면 `_stream_run`은 시작조차 하지 않아서,
    여기서 닫지 않으면 대화가 계속 스트리밍 중으로 남아요.
    """

    def __init__(self, run: ThreadRun, conversation_id: str) -> None:
        super().__init__(_stream_run(run, conversation_id), media_type=NDJSON_MEDIA_TYPE)
        self._run = run

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            await self._run.aclose()


@router.post("/conversations/{conversation_id}/runs")
async def submit_run(
    request: Request,
    conversation_id: str,
    req: SubmitRunRequest,
    authorization: str = Header(default=""),
) -> StreamingResponse:
    require_auth(request, authorization)
    thread = get_runtime(request).threads.get(conversation_id)
    await thread.load_history()

    run = thread.send(
        req.text,
        attachment_ids=req.attachment_ids,
        run_config=RunConfig(custom={"selected_nodes": req.selected_nodes}),
    )
    logger.info(
        "run_received",
        conversation_id=conversation_id,
        run_id=run.run_id,
        selected_node_count=len(req.selected_nodes),
        attachment_count=len(req.attachment_ids),
    )
    return RunStreamingResponse(run, conversation_id)


@router.post("/conversations/{conversation_id}/attach", response_model=None)
async def attach_conversation(
    request: Request,
    conversation_id: str,
    authorization: str = Header(default=""),
) -> Response:
    require_auth(request, authorization)
    runtime = get_runtime(request)
    thread = runtime.threads.get(conversation_id)

    # 재개 감지는 히스토리 로딩과 함께 진행하고, 감지기가 히스토리를 기다려요.
    history_task = asyncio.create_task(thread.load_history())
    try:
        run = await runtime.resume_detector.check_and_resume(thread)
    finally:
        await history_task

    if run is None:
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    return RunStreamingResponse(run, conversation_id)


@router.delete("/conversations/{conversation_id}/runs/current", response_model=CancelRunResponse)
async def cancel_current_run(
    request: Request,
    conversation_id: str,
    authorization: str = Header(default=""),
) -> CancelRunResponse:
    require_auth(request, authorization)
    cancelled = get_runtime(request).threads.get(conversation_id).cancel()
    logger.info("run_cancel_requested", conversation_id=conversation_id, cancelled=cancelled)
    return CancelRunResponse(conversation_id=conversation_id, cancelled=cancelled)


@router.get("/conversations/{conversation_id}/messages", response_model=MessagesResponse)
async def list_messages(
    request: Request,
    conversation_id: str,
    authorization: str = Header(default=""),
) -> MessagesResponse:
    require_auth(request, authorization)
    thread = get_runtime(request).threads.get(conversation_id)
    messages = await thread.load_history()
    return MessagesResponse(
        conversation_id=conversation_id,
        messages=[message.to_dict() for message in messages],
    )
