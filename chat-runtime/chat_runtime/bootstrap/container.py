from __future__ import annotations

from dataclasses import dataclass

import httpx

from chat_runtime.app.backend_client import ChatBackendClient
from chat_runtime.app.settings import Settings
from chat_runtime.runtime.attachments import AttachmentStore
from chat_runtime.runtime.history import HistoryLoader
from chat_runtime.runtime.resume import SessionResumeDetector
from chat_runtime.runtime.run_adapter import RunAdapter
from chat_runtime.runtime.session_state import ConversationStateRegistry
from chat_runtime.runtime.thread import ThreadManager


@dataclass(slots=True)
class RuntimeComponents:
    backend: ChatBackendClient
    registry: ConversationStateRegistry
    adapter: RunAdapter
    attachments: AttachmentStore
    threads: ThreadManager
    resume_detector: SessionResumeDetector


def build_runtime_components(
    settings: Settings,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> RuntimeComponents:
    backend = ChatBackendClient(
        base_url=settings.backend_base_url,
        token=settings.backend_token,
        timeout_seconds=settings.request_timeout_seconds,
        stream_read_timeout_seconds=settings.stream_read_timeout_seconds,
        retry_attempts=settings.retry_attempts,
        retry_base_delay_seconds=settings.retry_base_delay_seconds,
        retry_max_delay_seconds=settings.retry_max_delay_seconds,
        transport=transport,
    )
    registry = ConversationStateRegistry()
    adapter = RunAdapter(
        backend=backend,
        registry=registry,
        multimodal_enabled=settings.multimodal_enabled,
    )
    history = HistoryLoader(
        backend=backend,
        page_limit=settings.history_page_limit,
        multimodal_enabled=settings.multimodal_enabled,
    )
    attachments = AttachmentStore(
        max_bytes=settings.attachment_max_bytes,
        max_pending=settings.attachment_max_pending,
    )
    threads = ThreadManager(adapter=adapter, history=history, attachments=attachments)
    resume_detector = SessionResumeDetector(
        backend=backend,
        registry=registry,
        history_wait_seconds=settings.resume_history_wait_seconds,
        detect_delay_seconds=settings.resume_detect_delay_seconds,
    )

    return RuntimeComponents(
        backend=backend,
        registry=registry,
        adapter=adapter,
        attachments=attachments,
        threads=threads,
        resume_detector=resume_detector,
    )
