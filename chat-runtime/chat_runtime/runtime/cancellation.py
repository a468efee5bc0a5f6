from __future__ import annotations

from collections.abc import Callable

from libs.common.logging import get_logger

logger = get_logger("chat_runtime.cancellation")

CancelListener = Callable[[], None]


class CancellationSignal:
    """실행 하나에 묶이는 취소 신호예요. 한 번 취소되면 되돌릴 수 없어요."""

    def __init__(self) -> None:
        self._cancelled = False
        self._reason: str | None = None
        self._listeners: list[CancelListener] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> str | None:
        return self._reason

    def add_listener(self, listener: CancelListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: CancelListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def cancel(self, reason: str = "cancelled") -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self._reason = reason
        for listener in list(self._listeners):
            try:
                listener()
            except Exception:
                logger.exception("cancel_listener_failed", reason=reason)
