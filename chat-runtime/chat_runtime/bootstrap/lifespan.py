from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI

from chat_runtime.app.settings import Settings
from chat_runtime.bootstrap.container import build_runtime_components


def create_lifespan(settings: Settings, *, transport: httpx.AsyncBaseTransport | None = None):
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        runtime = build_runtime_components(settings, transport=transport)

        app.state.settings = settings
        app.state.runtime = runtime

        try:
            yield
        finally:
            await runtime.backend.aclose()

    return lifespan
