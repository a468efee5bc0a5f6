from __future__ import annotations

from chat_runtime.bootstrap.container import RuntimeComponents, build_runtime_components
from chat_runtime.bootstrap.lifespan import create_lifespan

__all__ = [
    "RuntimeComponents",
    "build_runtime_components",
    "create_lifespan",
]
