"""Explicit observer lists with idempotent unsubscribe."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Generic, TypeVar

logger = logging.getLogger("sessionflow.observers")

T = TypeVar("T")

Listener = Callable[[T], None]


class ListenerSet(Generic[T]):
    """Ordered set of listeners notified synchronously.

    Listener exceptions are logged and swallowed so one faulty subscriber
    cannot block delivery to the others.
    """

    __slots__ = ("_name", "_listeners", "_on_empty")

    def __init__(self, name: str = "listeners", *, on_empty: Callable[[], None] | None = None) -> None:
        self._name = name
        self._listeners: list[Callable[[T], None]] = []
        self._on_empty = on_empty

    def __len__(self) -> int:
        return len(self._listeners)

    def set_on_empty(self, callback: Callable[[], None] | None) -> None:
        self._on_empty = callback

    def add(self, listener: Callable[[T], None]) -> Callable[[], None]:
        entry = listener
        self._listeners.append(entry)
        removed = False

        def _unsubscribe() -> None:
            nonlocal removed
            if removed:
                return
            removed = True
            for idx, candidate in enumerate(self._listeners):
                if candidate is entry:
                    del self._listeners[idx]
                    break
            if not self._listeners and self._on_empty is not None:
                self._on_empty()

        return _unsubscribe

    def notify(self, value: T) -> None:
        for listener in list(self._listeners):
            try:
                listener(value)
            except Exception:
                logger.exception("listener_failed", extra={"listeners": self._name})


def queue_listener(
    queue: asyncio.Queue[T],
    *,
    is_critical: Callable[[T], bool] | None = None,
) -> Callable[[T], None]:
    """Adapt a bounded queue into a listener.

    When the queue is full, non-critical values are dropped and critical values
    evict the oldest queued entry.
    """

    def _listener(value: T) -> None:
        try:
            queue.put_nowait(value)
            return
        except asyncio.QueueFull:
            if is_critical is None or not is_critical(value):
                return
        try:
            queue.get_nowait()
        except asyncio.QueueEmpty:
            pass
        try:
            queue.put_nowait(value)
        except asyncio.QueueFull:
            logger.warning("subscriber_queue_full", extra={"maxsize": queue.maxsize})

    return _listener


__all__ = ["Listener", "ListenerSet", "queue_listener"]
