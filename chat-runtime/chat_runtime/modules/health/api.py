from __future__ import annotations

from fastapi import APIRouter, Request

from chat_runtime.modules.common.deps import get_runtime

router = APIRouter()


@router.get("/health/live")
async def health_live() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/health/ready")
async def health_ready(request: Request) -> dict[str, str]:
    get_runtime(request)
    return {"status": "ok"}
