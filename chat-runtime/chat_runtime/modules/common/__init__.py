from __future__ import annotations

from chat_runtime.modules.common.deps import get_runtime, get_settings, require_auth

__all__ = [
    "get_runtime",
    "get_settings",
    "require_auth",
]
