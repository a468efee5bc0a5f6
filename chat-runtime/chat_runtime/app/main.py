from __future__ import annotations

import httpx
from fastapi import FastAPI

from chat_runtime.app.settings import Settings, settings
from chat_runtime.bootstrap import create_lifespan
from chat_runtime.modules import build_api_router
from libs.common.http_handlers import register_exception_handlers
from libs.common.logging import configure_logging


def create_app(
    app_settings: Settings | None = None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    resolved = app_settings or settings
    configure_logging(resolved.log_level, json_logs=resolved.json_logs)

    application = FastAPI(title=resolved.service_name, lifespan=create_lifespan(resolved, transport=transport))
    application.include_router(build_api_router())
    register_exception_handlers(application, "chat_runtime.errors")
    return application


app = create_app()
