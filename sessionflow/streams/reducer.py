"""Pure folding of stream events into session snapshots.

Nothing in this module performs I/O. Every function takes a snapshot and
returns a new one; callers decide what to log or persist based on the
``note`` attached to a :class:`Reduction`.
"""

from __future__ import annotations

import time
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any, Literal

from .events import (
    DoneEvent,
    ErrorEvent,
    MalformedEvent,
    ModeChangedEvent,
    PermissionRequestEvent,
    ResultEvent,
    StatusEvent,
    StreamEvent,
    TaskUpdateEvent,
    TextEvent,
    ToolOutputEvent,
    ToolProgressEvent,
    ToolResultEvent,
    ToolTimeoutEvent,
    ToolUseEvent,
)
from .models import (
    ContentBlock,
    MessageContent,
    SessionStreamSnapshot,
    StreamPhase,
    TextBlock,
    ToolProgress,
    ToolResultBlock,
    ToolResultInfo,
    ToolTimeout,
    ToolUseBlock,
    ToolUseInfo,
)

DEFAULT_TOOL_OUTPUT_MAX_CHARS = 5000
STOPPED_NOTICE = "*(generation stopped)*"
UNEXPECTED_END_MESSAGE = "Unexpected end of stream"


@dataclass(frozen=True, slots=True)
class Reduction:
    snapshot: SessionStreamSnapshot
    changed: bool
    note: str | None = None


def initial_snapshot(session_id: str, *, started_at: float | None = None) -> SessionStreamSnapshot:
    return SessionStreamSnapshot(
        session_id=session_id,
        started_at=time.time() if started_at is None else started_at,
    )


def _bump(snapshot: SessionStreamSnapshot, **update: Any) -> SessionStreamSnapshot:
    update["revision"] = snapshot.revision + 1
    return snapshot.model_copy(update=update)


def _append_text(snapshot: SessionStreamSnapshot, text: str) -> dict[str, Any]:
    blocks = list(snapshot.blocks)
    if blocks and isinstance(blocks[-1], TextBlock):
        blocks[-1] = TextBlock(text=blocks[-1].text + text)
    else:
        blocks.append(TextBlock(text=text))
    return {"streaming_content": snapshot.streaming_content + text, "blocks": tuple(blocks)}


def build_message_content(blocks: Iterable[ContentBlock]) -> MessageContent:
    """Text-only content flattens to trimmed plain text; otherwise blocks keep their order."""
    kept = [block for block in blocks if not (isinstance(block, TextBlock) and not block.text.strip())]
    if all(isinstance(block, TextBlock) for block in kept):
        return "".join(block.text for block in kept).strip()  # type: ignore[union-attr]
    return tuple(kept)


def finalize(
    snapshot: SessionStreamSnapshot,
    phase: StreamPhase,
    *,
    now: float | None = None,
    error: str | None = None,
    notice: str | None = None,
) -> SessionStreamSnapshot:
    """Move an active snapshot to a terminal phase and freeze its message content."""
    if snapshot.is_terminal:
        return snapshot
    if phase == StreamPhase.ACTIVE:
        raise ValueError("finalize requires a terminal phase")
    update: dict[str, Any] = {}
    if notice:
        update.update(_append_text(snapshot, notice))
    blocks = update.get("blocks", snapshot.blocks)
    update.update(
        phase=phase,
        completed_at=time.time() if now is None else now,
        error=error,
        status_text=None,
        pending_permission=None,
        final_message_content=build_message_content(blocks),
    )
    return _bump(snapshot, **update)


def _has_visible_content(snapshot: SessionStreamSnapshot) -> bool:
    return any(not isinstance(block, TextBlock) or block.text.strip() for block in snapshot.blocks)


def fail(snapshot: SessionStreamSnapshot, message: str, *, now: float | None = None) -> SessionStreamSnapshot:
    return finalize(
        snapshot,
        StreamPhase.ERROR,
        now=now,
        error=message,
        notice=f"\n\n**Error:** {message}",
    )


def stop(snapshot: SessionStreamSnapshot, *, now: float | None = None) -> SessionStreamSnapshot:
    notice = f"\n\n{STOPPED_NOTICE}" if _has_visible_content(snapshot) else None
    return finalize(snapshot, StreamPhase.STOPPED, now=now, notice=notice)


def end_of_stream(snapshot: SessionStreamSnapshot, *, now: float | None = None) -> SessionStreamSnapshot:
    """Resolve a source that closed without a terminal event."""
    if snapshot.is_terminal:
        return snapshot
    if snapshot.result_seen:
        return finalize(snapshot, StreamPhase.COMPLETED, now=now)
    if snapshot.tool_timeout is not None:
        timeout = snapshot.tool_timeout
        notice = None
        if _has_visible_content(snapshot):
            notice = f"\n\n*(tool {timeout.tool_name} timed out after {timeout.elapsed_seconds}s)*"
        return finalize(snapshot, StreamPhase.STOPPED, now=now, notice=notice)
    return fail(snapshot, UNEXPECTED_END_MESSAGE, now=now)


def resolve_permission(
    snapshot: SessionStreamSnapshot,
    permission_request_id: str,
    behavior: Literal["allow", "deny"],
) -> Reduction:
    pending = snapshot.pending_permission
    if snapshot.is_terminal or pending is None or pending.permission_request_id != permission_request_id:
        return Reduction(snapshot, False, "permission_not_pending")
    return Reduction(_bump(snapshot, pending_permission=None, permission_resolved=behavior), True)


def _cap_tail(text: str, limit: int) -> str:
    if limit <= 0:
        return ""
    return text[-limit:] if len(text) > limit else text


def reduce_event(
    snapshot: SessionStreamSnapshot,
    event: StreamEvent,
    *,
    now: float | None = None,
    tool_output_max_chars: int = DEFAULT_TOOL_OUTPUT_MAX_CHARS,
) -> Reduction:
    """Apply one event. Events after a terminal phase leave the snapshot untouched."""
    if snapshot.is_terminal:
        return Reduction(snapshot, False, "after_terminal")

    if isinstance(event, TextEvent):
        if not event.text:
            return Reduction(snapshot, False)
        return Reduction(_bump(snapshot, **_append_text(snapshot, event.text)), True)

    if isinstance(event, ToolUseEvent):
        if any(tool.id == event.id for tool in snapshot.tool_uses):
            return Reduction(snapshot, False, "duplicate_tool_use")
        info = ToolUseInfo(id=event.id, name=event.name, input=event.input)
        block = ToolUseBlock(id=event.id, name=event.name, input=event.input)
        return Reduction(
            _bump(
                snapshot,
                tool_uses=(*snapshot.tool_uses, info),
                blocks=(*snapshot.blocks, block),
                streaming_tool_output="",
            ),
            True,
        )

    if isinstance(event, ToolResultEvent):
        info = ToolResultInfo(tool_use_id=event.tool_use_id, content=event.content, is_error=event.is_error)
        block = ToolResultBlock(tool_use_id=event.tool_use_id, content=event.content, is_error=event.is_error)
        note = None
        if not any(tool.id == event.tool_use_id for tool in snapshot.tool_uses):
            note = "unknown_tool_use"
        results = list(snapshot.tool_results)
        blocks = list(snapshot.blocks)
        existing = next((i for i, r in enumerate(results) if r.tool_use_id == event.tool_use_id), None)
        if existing is None:
            results.append(info)
            blocks.append(block)
        else:
            results[existing] = info
            for i, candidate in enumerate(blocks):
                if isinstance(candidate, ToolResultBlock) and candidate.tool_use_id == event.tool_use_id:
                    blocks[i] = block
                    break
        return Reduction(
            _bump(snapshot, tool_results=tuple(results), blocks=tuple(blocks), streaming_tool_output=""),
            True,
            note,
        )

    if isinstance(event, ToolOutputEvent):
        current = snapshot.streaming_tool_output
        joined = f"{current}\n{event.text}" if current else event.text
        return Reduction(
            _bump(snapshot, streaming_tool_output=_cap_tail(joined, tool_output_max_chars)),
            True,
        )

    if isinstance(event, ToolProgressEvent):
        progress = ToolProgress(
            tool_name=event.tool_name,
            elapsed_seconds=event.elapsed_seconds,
            tool_use_id=event.tool_use_id,
        )
        return Reduction(
            _bump(
                snapshot,
                tool_progress=progress,
                status_text=f"Running {event.tool_name}... ({event.elapsed_seconds}s)",
            ),
            True,
        )

    if isinstance(event, ToolTimeoutEvent):
        timeout = ToolTimeout(tool_name=event.tool_name, elapsed_seconds=event.elapsed_seconds)
        return Reduction(_bump(snapshot, tool_timeout=timeout), True, "tool_timeout")

    if isinstance(event, StatusEvent):
        update: dict[str, Any] = {"status_text": event.text}
        if event.producer_session_id:
            update["producer_session_id"] = event.producer_session_id
        return Reduction(_bump(snapshot, **update), True)

    if isinstance(event, PermissionRequestEvent):
        pending = snapshot.pending_permission
        if pending is not None:
            if pending.permission_request_id == event.request.permission_request_id:
                return Reduction(snapshot, False, "duplicate_permission_request")
            return Reduction(snapshot, False, "permission_conflict")
        return Reduction(
            _bump(snapshot, pending_permission=event.request, permission_resolved=None),
            True,
        )

    if isinstance(event, ModeChangedEvent):
        return Reduction(_bump(snapshot, mode=event.mode), True)

    if isinstance(event, TaskUpdateEvent):
        return Reduction(_bump(snapshot, task_revision=snapshot.task_revision + 1), True)

    if isinstance(event, ResultEvent):
        result_update: dict[str, Any] = {"status_text": None, "result_seen": True}
        if event.usage is not None:
            result_update["token_usage"] = event.usage
        if event.producer_session_id:
            result_update["producer_session_id"] = event.producer_session_id
        return Reduction(_bump(snapshot, **result_update), True)

    if isinstance(event, ErrorEvent):
        return Reduction(fail(snapshot, event.message, now=now), True)

    if isinstance(event, DoneEvent):
        return Reduction(finalize(snapshot, StreamPhase.COMPLETED, now=now), True)

    if isinstance(event, MalformedEvent):
        return Reduction(
            _bump(snapshot, dropped_events=snapshot.dropped_events + 1),
            True,
            f"malformed_{event.source_kind}",
        )

    return Reduction(snapshot, False, "unhandled_event")


def reduce(
    snapshot: SessionStreamSnapshot,
    event: StreamEvent,
    *,
    now: float | None = None,
    tool_output_max_chars: int = DEFAULT_TOOL_OUTPUT_MAX_CHARS,
) -> SessionStreamSnapshot:
    return reduce_event(snapshot, event, now=now, tool_output_max_chars=tool_output_max_chars).snapshot


def fold(
    snapshot: SessionStreamSnapshot,
    events: Iterable[StreamEvent],
    *,
    now: float | None = None,
    tool_output_max_chars: int = DEFAULT_TOOL_OUTPUT_MAX_CHARS,
) -> SessionStreamSnapshot:
    for event in events:
        snapshot = reduce(snapshot, event, now=now, tool_output_max_chars=tool_output_max_chars)
    return snapshot


__all__ = [
    "DEFAULT_TOOL_OUTPUT_MAX_CHARS",
    "Reduction",
    "STOPPED_NOTICE",
    "UNEXPECTED_END_MESSAGE",
    "build_message_content",
    "end_of_stream",
    "fail",
    "finalize",
    "fold",
    "initial_snapshot",
    "reduce",
    "reduce_event",
    "resolve_permission",
    "stop",
]
