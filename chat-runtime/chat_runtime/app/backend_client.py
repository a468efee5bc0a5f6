from __future__ import annotations

import json
from collections.abc import Awaitable, Callable, Sequence
from typing import Any, TypeVar

import httpx
import pydantic

from chat_runtime.runtime.contracts import (
    ActiveSession,
    ImageUpload,
    ProgressCallback,
    StreamProgress,
    StreamResult,
)
from libs.common.errors import UpstreamTransientError
from libs.common.logging import get_logger
from libs.common.retry import retry_async
from libs.contracts.models import ActiveSessionResponse, LoadedMessage, StreamChunk

logger = get_logger("chat_runtime.backend_client")

T = TypeVar("T")

SESSION_ID_HEADER = "X-Session-Id"


class _StreamAccumulator:
    """NDJSON 델타를 누적값으로 바꿔요."""

    def __init__(self) -> None:
        self.text = ""
        self.reasoning: str | None = None
        self.citations: list[str] = []
        self.session_id: str | None = None
        self.cursor: str | None = None

    def apply(self, chunk: StreamChunk) -> StreamProgress:
        if chunk.message:
            self.text += chunk.message
        if chunk.thinking is not None:
            self.reasoning = (self.reasoning or "") + chunk.thinking
        for citation in chunk.citations:
            if citation not in self.citations:
                self.citations.append(citation)
        if chunk.session_id:
            self.session_id = chunk.session_id
        if chunk.cursor:
            self.cursor = chunk.cursor
        return StreamProgress(
            text=self.text,
            tool_calls=list(chunk.tool_calls),
            reasoning=self.reasoning,
            citations=list(self.citations),
            cursor=chunk.cursor,
            session_id=chunk.session_id,
        )


class ChatBackendClient:
    def __init__(
        self,
        *,
        base_url: str,
        token: str,
        timeout_seconds: float,
        stream_read_timeout_seconds: float = 300.0,
        retry_attempts: int = 2,
        retry_base_delay_seconds: float = 0.2,
        retry_max_delay_seconds: float = 2.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._stream_timeout = httpx.Timeout(timeout_seconds, read=stream_read_timeout_seconds)
        self._retry_attempts = retry_attempts
        self._retry_base_delay_seconds = retry_base_delay_seconds
        self._retry_max_delay_seconds = retry_max_delay_seconds
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers=headers,
            timeout=timeout_seconds,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def stream_message(
        self,
        conversation_id: str,
        text: str,
        *,
        on_progress: ProgressCallback,
        selection: Sequence[Any] = (),
        images: Sequence[ImageUpload] = (),
        session_id: str | None = None,
    ) -> StreamResult:
        # 이미지가 없어도 multipart로 보내요. 파일명이 None인 항목은 일반 필드가 돼요.
        fields: list[tuple[str, Any]] = [
            ("content", (None, text)),
            ("node_ids", (None, json.dumps(list(selection), ensure_ascii=False))),
        ]
        if session_id:
            fields.append(("session_id", (None, session_id)))
        for image in images:
            fields.append(("images", (image.filename, image.data, image.content_type)))

        return await self._stream(
            "POST",
            _conversation_path(conversation_id, "/message/"),
            on_progress=on_progress,
            files=fields,
        )

    async def resume_with_cursor(
        self,
        conversation_id: str,
        session_id: str,
        cursor: str,
        *,
        on_progress: ProgressCallback,
    ) -> StreamResult:
        return await self._stream(
            "GET",
            _conversation_path(conversation_id, f"/sessions/{session_id}/resume"),
            on_progress=on_progress,
            params={"cursor": cursor},
        )

    async def stop_message(self, conversation_id: str) -> None:
        await self._send("POST", _conversation_path(conversation_id, "/stop/"))

    async def detect_active_session(self, conversation_id: str) -> ActiveSession | None:
        async def _detect() -> ActiveSession | None:
            response = await self._send(
                "GET",
                _conversation_path(conversation_id, "/active-session"),
                not_found_ok=True,
            )
            if response.status_code == 404 or not response.content.strip():
                return None
            data = _decode_json(response)
            if data is None:
                return None
            try:
                parsed = ActiveSessionResponse.model_validate(data)
            except pydantic.ValidationError as exc:
                raise UpstreamTransientError("활성 세션 응답 형식이 올바르지 않아요.") from exc
            return ActiveSession(session_id=parsed.session_id, cursor=parsed.cursor, status=parsed.status)

        return await self._with_retry(_detect)

    async def load_messages(self, conversation_id: str, start: int, limit: int) -> list[LoadedMessage]:
        async def _load() -> list[LoadedMessage]:
            response = await self._send(
                "GET",
                _conversation_path(conversation_id, "/messages/"),
                params={"start": start, "limit": limit},
            )
            data = _decode_json(response)
            items = data.get("messages") if isinstance(data, dict) else data
            if not isinstance(items, list):
                raise UpstreamTransientError("메시지 목록 응답 형식이 올바르지 않아요.")

            messages: list[LoadedMessage] = []
            for index, item in enumerate(items):
                try:
                    messages.append(LoadedMessage.model_validate(item))
                except pydantic.ValidationError as exc:
                    logger.warning(
                        "history_message_dropped",
                        conversation_id=conversation_id,
                        index=index,
                        error_count=exc.error_count(),
                    )
            return messages

        return await self._with_retry(_load)

    async def _with_retry(self, func: Callable[[], Awaitable[T]]) -> T:
        return await retry_async(
            func,
            retries=self._retry_attempts,
            base_delay_seconds=self._retry_base_delay_seconds,
            max_delay_seconds=self._retry_max_delay_seconds,
        )

    async def _stream(
        self,
        method: str,
        path: str,
        *,
        on_progress: ProgressCallback,
        **request_kwargs: Any,
    ) -> StreamResult:
        accumulator = _StreamAccumulator()
        header_session_id: str | None = None
        try:
            async with self._client.stream(method, path, timeout=self._stream_timeout, **request_kwargs) as response:
                if response.status_code >= 500:
                    raise UpstreamTransientError("백엔드 서버 오류가 발생했어요.")
                if response.is_error:
                    await response.aread()
                    response.raise_for_status()

                header_session_id = response.headers.get(SESSION_ID_HEADER)
                async for line in response.aiter_lines():
                    chunk = _parse_stream_line(line)
                    if chunk is None:
                        continue
                    on_progress(accumulator.apply(chunk))
        except httpx.HTTPStatusError:
            raise
        except httpx.TimeoutException as exc:
            raise UpstreamTransientError("백엔드 스트림이 시간 초과됐어요.") from exc
        except httpx.HTTPError as exc:
            raise UpstreamTransientError("백엔드 스트림 연결에 실패했어요.") from exc

        return StreamResult(
            session_id=header_session_id or accumulator.session_id,
            cursor=accumulator.cursor,
        )

    async def _send(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        not_found_ok: bool = False,
    ) -> httpx.Response:
        try:
            response = await self._client.request(method, path, params=params)
        except httpx.TimeoutException as exc:
            raise UpstreamTransientError("백엔드 요청이 시간 초과됐어요.") from exc
        except httpx.HTTPError as exc:
            raise UpstreamTransientError("백엔드 연결에 실패했어요.") from exc

        if response.status_code >= 500:
            raise UpstreamTransientError("백엔드 서버 오류가 발생했어요.")
        if not_found_ok and response.status_code == 404:
            return response
        response.raise_for_status()
        return response


def _conversation_path(conversation_id: str, suffix: str) -> str:
    return f"/api/v1/conversations/{conversation_id}{suffix}"


def _decode_json(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError as exc:
        raise UpstreamTransientError("백엔드 응답이 JSON이 아니에요.") from exc


def _parse_stream_line(line: str) -> StreamChunk | None:
    stripped = line.strip()
    if not stripped:
        return None
    try:
        return StreamChunk.model_validate_json(stripped)
    except pydantic.ValidationError as exc:
        logger.warning("stream_line_skipped", error_count=exc.error_count(), preview=stripped[:200])
        return None
