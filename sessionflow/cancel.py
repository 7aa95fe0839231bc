"""Cooperative cancellation signal shared by streams and jobs."""

from __future__ import annotations

import asyncio
from collections.abc import Callable


class CancelToken:
    """One-shot cancellation flag observed at suspension points.

    Cancelling never interrupts work that is already running; awaiting code
    checks ``cancelled`` or waits on ``wait()`` and stops at its next await.
    """

    __slots__ = ("_event", "_reason", "_callbacks")

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None
        self._callbacks: list[Callable[[str | None], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str | None = None) -> bool:
        """Signal cancellation. Returns False if already cancelled."""
        if self._event.is_set():
            return False
        self._reason = reason
        self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback(reason)
        return True

    async def wait(self) -> str | None:
        await self._event.wait()
        return self._reason

    def add_callback(self, callback: Callable[[str | None], None]) -> Callable[[], None]:
        """Run ``callback`` on cancellation; runs immediately if already cancelled."""
        if self._event.is_set():
            callback(self._reason)
            return lambda: None
        self._callbacks.append(callback)

        def _remove() -> None:
            try:
                self._callbacks.remove(callback)
            except ValueError:
                pass

        return _remove

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"CancelToken(cancelled={self.cancelled}, reason={self._reason!r})"


__all__ = ["CancelToken"]
