from __future__ import annotations

from fastapi import HTTPException, Request, status

from chat_runtime.app.settings import Settings, settings
from chat_runtime.bootstrap.container import RuntimeComponents


def get_settings(request: Request) -> Settings:
    configured = getattr(request.app.state, "settings", None)
    if isinstance(configured, Settings):
        return configured
    return settings


def require_auth(request: Request, authorization: str) -> None:
    if authorization != f"Bearer {get_settings(request).api_token}":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="인증에 실패했어요.")


def get_runtime(request: Request) -> RuntimeComponents:
    runtime = getattr(request.app.state, "runtime", None)
    if not isinstance(runtime, RuntimeComponents):
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="런타임을 사용할 수 없어요.")
    return runtime
