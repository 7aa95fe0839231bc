"""Process-wide map of live session streams."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import TYPE_CHECKING

from sessionflow.cancel import CancelToken
from sessionflow.config import RuntimeConfig
from sessionflow.errors import StreamAlreadyActiveError
from sessionflow.observers import ListenerSet
from sessionflow.telemetry import TelemetrySink

from .models import SessionStreamSnapshot, SnapshotEvent
from .reconciler import Producer, SessionStreamReconciler, ToolTimeoutCallback

if TYPE_CHECKING:
    from sessionflow.store import SessionStore

    from .permissions import PermissionCorrelator

logger = logging.getLogger("sessionflow.streams")


class StreamRegistry:
    """Registry for :class:`SessionStreamReconciler` instances by session_id.

    At most one reconciler is registered per session. A terminal entry stays
    readable until its last subscriber unsubscribes (plus
    ``terminal_retention_s``), then it is removed. Subscriptions are held per
    session and survive from one stream to the next.
    """

    def __init__(
        self,
        *,
        config: RuntimeConfig | None = None,
        store: SessionStore | None = None,
        permissions: PermissionCorrelator | None = None,
        telemetry_sink: TelemetrySink | None = None,
        on_tool_timeout: ToolTimeoutCallback | None = None,
    ) -> None:
        self._config = config or RuntimeConfig()
        self._store = store
        self._permissions = permissions
        self._telemetry_sink = telemetry_sink
        self._on_tool_timeout = on_tool_timeout
        self._entries: dict[str, SessionStreamReconciler] = {}
        self._listeners: dict[str, ListenerSet[SnapshotEvent]] = {}
        self._release_handles: dict[str, asyncio.TimerHandle] = {}
        self._closed = False

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._entries

    def register(self, reconciler: SessionStreamReconciler) -> SessionStreamReconciler:
        session_id = reconciler.session_id
        existing = self._entries.get(session_id)
        if existing is not None and existing is not reconciler and not existing.is_terminal:
            raise StreamAlreadyActiveError(session_id)
        self._cancel_release(session_id)
        self._entries[session_id] = reconciler
        return reconciler

    def lookup(self, session_id: str) -> SessionStreamReconciler | None:
        """Return the registered reconciler, or ``None`` when the session is not streaming."""
        return self._entries.get(session_id)

    def unregister(self, session_id: str, reconciler: SessionStreamReconciler | None = None) -> bool:
        current = self._entries.get(session_id)
        if current is None or (reconciler is not None and current is not reconciler):
            return False
        del self._entries[session_id]
        self._cancel_release(session_id)
        listeners = self._listeners.get(session_id)
        if listeners is not None and not len(listeners):
            del self._listeners[session_id]
        logger.debug("stream_unregistered", extra={"session_id": session_id, "phase": current.phase.value})
        return True

    def start_stream(
        self,
        session_id: str,
        producer: Producer,
        *,
        cancel_token: CancelToken | None = None,
    ) -> SessionStreamReconciler:
        """Create, register and start a reconciler for ``session_id``.

        Raises :class:`StreamAlreadyActiveError` if a live stream is already
        registered for the session. A terminal entry is replaced.
        """
        if self._closed:
            raise RuntimeError("registry_closed")
        existing = self._entries.get(session_id)
        if existing is not None and not existing.is_terminal:
            logger.warning("stream_already_active", extra={"session_id": session_id})
            raise StreamAlreadyActiveError(session_id)
        reconciler = SessionStreamReconciler(
            session_id,
            config=self._config,
            store=self._store,
            permissions=self._permissions,
            telemetry_sink=self._telemetry_sink,
            listeners=self._listener_set(session_id),
            cancel_token=cancel_token,
            on_terminal=self._on_terminal,
            on_tool_timeout=self._on_tool_timeout,
        )
        self.register(reconciler)
        try:
            reconciler.start(producer)
        except Exception:
            self.unregister(session_id, reconciler)
            raise
        logger.info("stream_started", extra={"session_id": session_id})
        return reconciler

    def subscribe(self, session_id: str, listener: Callable[[SnapshotEvent], None]) -> Callable[[], None]:
        """Subscribe to every stream of ``session_id``, current and future."""
        return self._listener_set(session_id).add(listener)

    def get_snapshot(self, session_id: str) -> SessionStreamSnapshot | None:
        reconciler = self._entries.get(session_id)
        return reconciler.get_snapshot() if reconciler is not None else None

    def stop_stream(self, session_id: str, reason: str = "user") -> bool:
        reconciler = self._entries.get(session_id)
        if reconciler is None:
            return False
        return reconciler.stop(reason)

    def is_active(self, session_id: str) -> bool:
        reconciler = self._entries.get(session_id)
        return reconciler is not None and not reconciler.is_terminal

    def active_session_ids(self) -> list[str]:
        return [session_id for session_id, rec in self._entries.items() if not rec.is_terminal]

    def clear_snapshot(self, session_id: str) -> bool:
        """Drop a terminal entry now, regardless of subscribers."""
        reconciler = self._entries.get(session_id)
        if reconciler is None or not reconciler.is_terminal:
            return False
        return self.unregister(session_id, reconciler)

    async def shutdown(self) -> None:
        """Stop every live stream and clear the registry."""
        self._closed = True
        reconcilers = list(self._entries.values())
        for reconciler in reconcilers:
            reconciler.stop("shutdown")
        if reconcilers:
            await asyncio.gather(*(rec.wait() for rec in reconcilers), return_exceptions=True)
        for handle in self._release_handles.values():
            handle.cancel()
        self._release_handles.clear()
        self._entries.clear()
        self._listeners.clear()
        logger.info("stream_registry_shutdown", extra={"streams": len(reconcilers)})

    def _listener_set(self, session_id: str) -> ListenerSet[SnapshotEvent]:
        listeners = self._listeners.get(session_id)
        if listeners is None:
            listeners = ListenerSet(
                f"stream:{session_id}",
                on_empty=lambda: self._on_listeners_empty(session_id),
            )
            self._listeners[session_id] = listeners
        return listeners

    def _on_terminal(self, reconciler: SessionStreamReconciler) -> None:
        listeners = self._listeners.get(reconciler.session_id)
        if listeners is None or not len(listeners):
            self._schedule_release(reconciler)

    def _on_listeners_empty(self, session_id: str) -> None:
        reconciler = self._entries.get(session_id)
        if reconciler is None:
            self._listeners.pop(session_id, None)
        elif reconciler.is_terminal:
            self._schedule_release(reconciler)

    def _schedule_release(self, reconciler: SessionStreamReconciler) -> None:
        session_id = reconciler.session_id
        retention = self._config.terminal_retention_s
        if retention <= 0:
            self.unregister(session_id, reconciler)
            return
        self._cancel_release(session_id)
        loop = asyncio.get_running_loop()
        self._release_handles[session_id] = loop.call_later(retention, self._release, reconciler)

    def _release(self, reconciler: SessionStreamReconciler) -> None:
        self._release_handles.pop(reconciler.session_id, None)
        listeners = self._listeners.get(reconciler.session_id)
        if listeners is not None and len(listeners):
            return
        self.unregister(reconciler.session_id, reconciler)

    def _cancel_release(self, session_id: str) -> None:
        handle = self._release_handles.pop(session_id, None)
        if handle is not None:
            handle.cancel()


_registry: StreamRegistry | None = None


def init_registry(**kwargs: object) -> StreamRegistry:
    """Create the process-wide registry. Raises if one is already live."""
    global _registry
    if _registry is not None:
        raise RuntimeError("stream_registry_already_initialized")
    _registry = StreamRegistry(**kwargs)  # type: ignore[arg-type]
    return _registry


def get_registry() -> StreamRegistry:
    if _registry is None:
        raise RuntimeError("stream_registry_not_initialized")
    return _registry


async def shutdown_registry() -> None:
    global _registry
    registry, _registry = _registry, None
    if registry is not None:
        await registry.shutdown()


__all__ = [
    "StreamRegistry",
    "get_registry",
    "init_registry",
    "shutdown_registry",
]
