"""Per-session owner of one live event stream."""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections.abc import AsyncIterable, AsyncIterator, Callable, Iterable
from typing import TYPE_CHECKING, Any, Literal

from sessionflow.cancel import CancelToken
from sessionflow.config import RuntimeConfig
from sessionflow.observers import ListenerSet, queue_listener
from sessionflow.telemetry import NoOpTelemetrySink, RuntimeTelemetryEvent, TelemetrySink, emit_safely

from . import reducer
from .decoder import Chunk, iter_events
from .events import StreamEvent
from .models import (
    SessionStreamSnapshot,
    SnapshotEvent,
    SnapshotEventKind,
    StreamPhase,
    serialize_message_content,
)

if TYPE_CHECKING:
    from sessionflow.store import SessionStore

    from .permissions import PermissionCorrelator

logger = logging.getLogger("sessionflow.streams")

Source = AsyncIterable[Chunk] | Iterable[Chunk]
Producer = Source | Callable[[CancelToken], Source]
ToolTimeoutCallback = Callable[[str, str], Any]

INTERNAL_ERROR_MESSAGE = "Internal stream error"

_NOTE_LEVELS = {
    "unknown_tool_use": logging.INFO,
    "permission_conflict": logging.WARNING,
    "duplicate_permission_request": logging.DEBUG,
    "duplicate_tool_use": logging.DEBUG,
    "tool_timeout": logging.INFO,
    "after_terminal": logging.DEBUG,
}


_END_OF_SOURCE: Any = object()


async def _next_event(events: AsyncIterator[StreamEvent]) -> Any:
    try:
        return await anext(events)
    except StopAsyncIteration:
        return _END_OF_SOURCE


def tool_timeout_retry_prompt(tool_name: str, elapsed_seconds: int) -> str:
    return (
        f'The previous tool "{tool_name}" timed out after {elapsed_seconds} seconds. '
        "Please try a different approach to accomplish the task. "
        "Avoid repeating the same operation that got stuck."
    )


class SessionStreamReconciler:
    """Pumps a producer through the decoder and reducer and fans out snapshots.

    Phases move ``active -> completed | error | stopped`` exactly once. Faults
    in the source or in reduction end the stream in ``error`` instead of
    propagating to subscribers.
    """

    def __init__(
        self,
        session_id: str,
        *,
        config: RuntimeConfig | None = None,
        store: SessionStore | None = None,
        permissions: PermissionCorrelator | None = None,
        telemetry_sink: TelemetrySink | None = None,
        listeners: ListenerSet[SnapshotEvent] | None = None,
        cancel_token: CancelToken | None = None,
        on_terminal: Callable[[SessionStreamReconciler], None] | None = None,
        on_tool_timeout: ToolTimeoutCallback | None = None,
    ) -> None:
        self.session_id = session_id
        self._config = config or RuntimeConfig()
        self._store = store
        self._permissions = permissions
        self._telemetry = telemetry_sink or NoOpTelemetrySink()
        self._listeners: ListenerSet[SnapshotEvent] = (
            listeners if listeners is not None else ListenerSet(f"stream:{session_id}")
        )
        self._cancel = cancel_token or CancelToken()
        self._on_terminal = on_terminal
        self._on_tool_timeout = on_tool_timeout
        self._snapshot = reducer.initial_snapshot(session_id)
        self._run_task: asyncio.Task[None] | None = None
        self._after_task: asyncio.Task[None] | None = None
        self._start_telemetry: asyncio.Task[None] | None = None
        self._persist_lock = asyncio.Lock()
        self._done = asyncio.Event()
        self._message_id: str | None = None
        self._started_monotonic = time.monotonic()
        self._terminal_emitted = False

    @property
    def snapshot(self) -> SessionStreamSnapshot:
        return self._snapshot

    @property
    def phase(self) -> StreamPhase:
        return self._snapshot.phase

    @property
    def is_terminal(self) -> bool:
        return self._snapshot.is_terminal

    @property
    def cancel_token(self) -> CancelToken:
        return self._cancel

    @property
    def listeners(self) -> ListenerSet[SnapshotEvent]:
        return self._listeners

    @property
    def message_id(self) -> str | None:
        return self._message_id

    def get_snapshot(self) -> SessionStreamSnapshot:
        return self._snapshot

    def subscribe(self, listener: Callable[[SnapshotEvent], None]) -> Callable[[], None]:
        return self._listeners.add(listener)

    def start(self, producer: Producer) -> SessionStreamReconciler:
        """Begin pumping ``producer`` in a background task."""
        if self._run_task is not None:
            raise RuntimeError("stream_already_started")
        if self.is_terminal:
            raise RuntimeError("stream_already_finished")
        self._started_monotonic = time.monotonic()
        source = producer(self._cancel) if callable(producer) else producer
        self._emit("phase-changed")
        self._run_task = asyncio.create_task(self._run(source), name=f"stream:{self.session_id}")
        self._start_telemetry = asyncio.create_task(
            emit_safely(
                self._telemetry,
                RuntimeTelemetryEvent(
                    event_type="stream_started",
                    session_id=self.session_id,
                    status=StreamPhase.ACTIVE.value,
                ),
            )
        )
        return self

    def stop(self, reason: str = "user") -> bool:
        """Stop the stream. Returns False if it already reached a terminal phase."""
        if self.is_terminal:
            return False
        self._cancel.cancel(reason)
        self._finish(reducer.stop(self._snapshot))
        return True

    def apply_permission_decision(
        self,
        permission_request_id: str,
        behavior: Literal["allow", "deny"],
    ) -> bool:
        reduction = reducer.resolve_permission(self._snapshot, permission_request_id, behavior)
        if not reduction.changed:
            return False
        self._snapshot = reduction.snapshot
        self._emit("snapshot-updated")
        return True

    async def wait(self) -> SessionStreamSnapshot:
        """Wait for the terminal snapshot and its persistence checkpoint."""
        await self._done.wait()
        return self._snapshot

    async def iter_snapshots(self) -> AsyncIterator[SessionStreamSnapshot]:
        """Yield the current snapshot, then every newer one until the terminal snapshot."""
        queue: asyncio.Queue[SnapshotEvent] = asyncio.Queue(maxsize=self._config.subscriber_queue_size)
        unsubscribe = self.subscribe(queue_listener(queue, is_critical=lambda _event: True))
        try:
            last = self._snapshot
            yield last
            while not last.is_terminal:
                event = await queue.get()
                if event.snapshot.revision <= last.revision:
                    continue
                last = event.snapshot
                yield last
        finally:
            unsubscribe()

    async def _run(self, source: Source) -> None:
        events = iter_events(source)
        cancel_waiter = asyncio.create_task(self._cancel.wait())
        idle_timeout = self._config.idle_timeout_s
        try:
            while not self.is_terminal:
                read = asyncio.ensure_future(_next_event(events))
                done, _ = await asyncio.wait(
                    {read, cancel_waiter},
                    timeout=idle_timeout,
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if read not in done:
                    self._discard_read(read, events)
                    if not done:
                        seconds = round(idle_timeout or 0)
                        logger.warning(
                            "stream_idle_timeout",
                            extra={"session_id": self.session_id, "idle_timeout_s": idle_timeout},
                        )
                        self._cancel.cancel("idle_timeout")
                        self._finish(reducer.fail(self._snapshot, f"Stream idle timeout ({seconds}s)"))
                    elif not self.is_terminal:
                        logger.info(
                            "stream_cancelled",
                            extra={"session_id": self.session_id, "reason": self._cancel.reason},
                        )
                        self._finish(reducer.stop(self._snapshot))
                    return
                try:
                    event = read.result()
                except Exception as exc:
                    logger.warning(
                        "stream_source_failed",
                        extra={"session_id": self.session_id, "error": str(exc)},
                    )
                    detail = str(exc) or exc.__class__.__name__
                    self._finish(reducer.fail(self._snapshot, f"Stream interrupted: {detail}"))
                    return
                if event is _END_OF_SOURCE:
                    self._finish(reducer.end_of_stream(self._snapshot))
                    return
                await self._apply(event)
            await events.aclose()
        except Exception:
            logger.exception("stream_reconcile_failed", extra={"session_id": self.session_id})
            self._finish(reducer.fail(self._snapshot, INTERNAL_ERROR_MESSAGE))
        finally:
            cancel_waiter.cancel()

    def _discard_read(self, read: asyncio.Future[Any], events: AsyncIterator[StreamEvent]) -> None:
        """Let an in-flight read complete on its own and drop whatever it returns."""

        def _drop(future: asyncio.Future[Any]) -> None:
            if not future.cancelled():
                future.exception()
            closer = getattr(events, "aclose", None)
            if closer is not None:
                asyncio.ensure_future(closer())

        read.add_done_callback(_drop)

    async def _apply(self, event: StreamEvent) -> None:
        reduction = reducer.reduce_event(
            self._snapshot,
            event,
            tool_output_max_chars=self._config.tool_output_max_chars,
        )
        if reduction.note is not None:
            self._log_note(reduction.note, event)
        if not reduction.changed:
            return
        previous = self._snapshot
        if reduction.snapshot.is_terminal:
            self._finish(reduction.snapshot)
            return
        self._snapshot = reduction.snapshot
        if reduction.snapshot.pending_permission is not None and previous.pending_permission is None:
            self._emit("permission-request")
            if self._config.checkpoint_on_permission:
                await self._checkpoint_partial()
        else:
            self._emit("snapshot-updated")

    def _log_note(self, note: str, event: StreamEvent) -> None:
        level = logging.WARNING if note.startswith("malformed_") else _NOTE_LEVELS.get(note, logging.DEBUG)
        extra: dict[str, Any] = {"session_id": self.session_id, "note": note, "kind": event.kind}
        if note.startswith("malformed_"):
            extra["reason"] = getattr(event, "reason", None)
        logger.log(level, "stream_event_note", extra=extra)

    def _emit(self, kind: SnapshotEventKind) -> None:
        self._listeners.notify(SnapshotEvent(kind=kind, session_id=self.session_id, snapshot=self._snapshot))

    def _finish(self, snapshot: SessionStreamSnapshot) -> None:
        if self._terminal_emitted or not snapshot.is_terminal:
            return
        self._terminal_emitted = True
        self._snapshot = snapshot
        if not self._cancel.cancelled:
            self._cancel.cancel(snapshot.phase.value)
        self._emit("completed")
        if self._permissions is not None:
            self._permissions.cancel_session(self.session_id)
        if snapshot.phase == StreamPhase.STOPPED and snapshot.tool_timeout is not None:
            self._notify_tool_timeout(snapshot)
        if self._on_terminal is not None:
            try:
                self._on_terminal(self)
            except Exception:
                logger.exception("stream_terminal_hook_failed", extra={"session_id": self.session_id})
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._done.set()
            return
        self._after_task = loop.create_task(self._after_terminal(), name=f"stream-final:{self.session_id}")

    def _notify_tool_timeout(self, snapshot: SessionStreamSnapshot) -> None:
        timeout = snapshot.tool_timeout
        if self._on_tool_timeout is None or timeout is None:
            return
        prompt = tool_timeout_retry_prompt(timeout.tool_name, timeout.elapsed_seconds)
        try:
            result = self._on_tool_timeout(self.session_id, prompt)
            if inspect.isawaitable(result):
                asyncio.ensure_future(result)
        except Exception:
            logger.exception("tool_timeout_hook_failed", extra={"session_id": self.session_id})

    async def _checkpoint_partial(self) -> None:
        if self._store is None:
            return
        content = serialize_message_content(reducer.build_message_content(self._snapshot.blocks))
        if not content:
            return
        try:
            async with self._persist_lock:
                if self._message_id is None:
                    self._message_id = await self._store.save_message(self.session_id, "assistant", content)
                else:
                    await self._store.update_message_content(self._message_id, content)
        except Exception:
            logger.exception("message_checkpoint_failed", extra={"session_id": self.session_id})

    async def _persist_final(self) -> None:
        if self._store is None:
            return
        content = serialize_message_content(self._snapshot.final_message_content)
        usage = self._snapshot.token_usage
        try:
            # A permission checkpoint may still be writing the first row.
            async with self._persist_lock:
                if self._message_id is not None:
                    if content:
                        await self._store.update_message_content(self._message_id, content, usage)
                elif content:
                    self._message_id = await self._store.save_message(self.session_id, "assistant", content, usage)
        except Exception:
            logger.exception("message_persist_failed", extra={"session_id": self.session_id})

    async def _after_terminal(self) -> None:
        try:
            await self._persist_final()
            phase = self._snapshot.phase
            event_type = {
                StreamPhase.COMPLETED: "stream_completed",
                StreamPhase.ERROR: "stream_failed",
                StreamPhase.STOPPED: "stream_stopped",
            }[phase]
            await emit_safely(
                self._telemetry,
                RuntimeTelemetryEvent(
                    event_type=event_type,  # type: ignore[arg-type]
                    session_id=self.session_id,
                    status=phase.value,
                    duration_ms=(time.monotonic() - self._started_monotonic) * 1000,
                    extra={"error": self._snapshot.error} if self._snapshot.error else {},
                ),
            )
        finally:
            self._done.set()

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"SessionStreamReconciler(session_id={self.session_id!r}, phase={self.phase.value})"


__all__ = [
    "INTERNAL_ERROR_MESSAGE",
    "Producer",
    "SessionStreamReconciler",
    "Source",
    "tool_timeout_retry_prompt",
]
