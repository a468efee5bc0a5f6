from __future__ import annotations

from fastapi import APIRouter


def build_api_router() -> APIRouter:
    from chat_runtime.modules.attachments.api import router as attachments_router
    from chat_runtime.modules.conversations.api import router as conversations_router
    from chat_runtime.modules.health.api import router as health_router

    api_router = APIRouter(prefix="/v1")
    api_router.include_router(conversations_router)
    api_router.include_router(attachments_router)
    api_router.include_router(health_router)
    return api_router


__all__ = ["build_api_router"]
