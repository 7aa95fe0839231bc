"""Typed stream events and the mapping from raw wire frames to them."""

from __future__ import annotations

import json
import logging
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .models import PermissionRequest, TokenUsage

logger = logging.getLogger("sessionflow.streams")

EVENT_KINDS = frozenset(
    {
        "text",
        "tool_use",
        "tool_result",
        "tool_output",
        "tool_progress",
        "tool_timeout",
        "status",
        "permission_request",
        "mode_changed",
        "task_update",
        "result",
        "error",
        "done",
    }
)

TERMINAL_EVENT_KINDS = frozenset({"error", "done"})


class Frame(BaseModel):
    """One ``data:`` record of the wire protocol."""

    model_config = ConfigDict(frozen=True)

    type: str
    data: str = ""


class _Event(BaseModel):
    model_config = ConfigDict(frozen=True)


class TextEvent(_Event):
    kind: Literal["text"] = "text"
    text: str


class ToolUseEvent(_Event):
    kind: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: Any = None


class ToolResultEvent(_Event):
    kind: Literal["tool_result"] = "tool_result"
    tool_use_id: str
    content: Any = ""
    is_error: bool = False


class ToolOutputEvent(_Event):
    kind: Literal["tool_output"] = "tool_output"
    text: str


class ToolProgressEvent(_Event):
    kind: Literal["tool_progress"] = "tool_progress"
    tool_name: str
    elapsed_seconds: int
    tool_use_id: str | None = None


class ToolTimeoutEvent(_Event):
    kind: Literal["tool_timeout"] = "tool_timeout"
    tool_name: str
    elapsed_seconds: int


class StatusEvent(_Event):
    kind: Literal["status"] = "status"
    text: str | None = None
    producer_session_id: str | None = None


class PermissionRequestEvent(_Event):
    kind: Literal["permission_request"] = "permission_request"
    request: PermissionRequest


class ModeChangedEvent(_Event):
    kind: Literal["mode_changed"] = "mode_changed"
    mode: str


class TaskUpdateEvent(_Event):
    kind: Literal["task_update"] = "task_update"
    session_id: str | None = None


class ResultEvent(_Event):
    kind: Literal["result"] = "result"
    usage: TokenUsage | None = None
    producer_session_id: str | None = None
    subtype: str | None = None
    is_error: bool = False
    num_turns: int | None = None
    duration_ms: float | None = None


class ErrorEvent(_Event):
    kind: Literal["error"] = "error"
    message: str
    code: str | None = None


class DoneEvent(_Event):
    kind: Literal["done"] = "done"


class MalformedEvent(_Event):
    """A known event kind whose payload could not be parsed."""

    kind: Literal["malformed"] = "malformed"
    source_kind: str
    reason: str
    raw: str = ""


StreamEvent = Annotated[
    TextEvent
    | ToolUseEvent
    | ToolResultEvent
    | ToolOutputEvent
    | ToolProgressEvent
    | ToolTimeoutEvent
    | StatusEvent
    | PermissionRequestEvent
    | ModeChangedEvent
    | TaskUpdateEvent
    | ResultEvent
    | ErrorEvent
    | DoneEvent
    | MalformedEvent,
    Field(discriminator="kind"),
]


def _load(data: str) -> Any:
    return json.loads(data)


def _malformed(kind: str, reason: str, data: str) -> MalformedEvent:
    return MalformedEvent(source_kind=kind, reason=reason, raw=data[:500])


def format_error_message(data: str) -> tuple[str, str | None]:
    """Human-readable error text plus the structured error code, if any."""
    try:
        parsed = json.loads(data)
    except (TypeError, ValueError):
        return data, None
    if not isinstance(parsed, dict):
        return data, None
    code = parsed.get("error_code")
    if code == "WORKING_DIR_NOT_FOUND":
        directory = parsed.get("working_directory") or ""
        return f"Working directory {directory} does not exist", code
    message = parsed.get("message") or parsed.get("error")
    if isinstance(message, str) and message:
        return message, code if isinstance(code, str) else None
    return data, code if isinstance(code, str) else None


def _parse_tool_use(data: str) -> ToolUseEvent | MalformedEvent:
    try:
        payload = _load(data)
    except ValueError:
        return _malformed("tool_use", "invalid_json", data)
    if not isinstance(payload, dict):
        return _malformed("tool_use", "not_an_object", data)
    tool_id, name = payload.get("id"), payload.get("name")
    if not isinstance(tool_id, str) or not isinstance(name, str):
        return _malformed("tool_use", "missing_id_or_name", data)
    return ToolUseEvent(id=tool_id, name=name, input=payload.get("input"))


def _parse_tool_result(data: str) -> ToolResultEvent | MalformedEvent:
    try:
        payload = _load(data)
    except ValueError:
        return _malformed("tool_result", "invalid_json", data)
    if not isinstance(payload, dict) or not isinstance(payload.get("tool_use_id"), str):
        return _malformed("tool_result", "missing_tool_use_id", data)
    return ToolResultEvent(
        tool_use_id=payload["tool_use_id"],
        content=payload.get("content", ""),
        is_error=bool(payload.get("is_error", False)),
    )


def _parse_progress(payload: dict[str, Any]) -> ToolProgressEvent:
    elapsed = payload.get("elapsed_time_seconds", payload.get("elapsed_seconds", 0))
    try:
        seconds = round(float(elapsed))
    except (TypeError, ValueError):
        seconds = 0
    tool_use_id = payload.get("tool_use_id")
    return ToolProgressEvent(
        tool_name=str(payload.get("tool_name") or "tool"),
        elapsed_seconds=seconds,
        tool_use_id=tool_use_id if isinstance(tool_use_id, str) else None,
    )


def _parse_tool_output(data: str) -> ToolOutputEvent | ToolProgressEvent:
    try:
        payload = _load(data)
    except ValueError:
        return ToolOutputEvent(text=data)
    if isinstance(payload, dict) and payload.get("_progress"):
        return _parse_progress(payload)
    return ToolOutputEvent(text=data)


def _parse_tool_timeout(data: str) -> ToolTimeoutEvent | MalformedEvent:
    try:
        payload = _load(data)
    except ValueError:
        return _malformed("tool_timeout", "invalid_json", data)
    if not isinstance(payload, dict) or not isinstance(payload.get("tool_name"), str):
        return _malformed("tool_timeout", "missing_tool_name", data)
    try:
        seconds = round(float(payload.get("elapsed_seconds", 0)))
    except (TypeError, ValueError):
        seconds = 0
    return ToolTimeoutEvent(tool_name=payload["tool_name"], elapsed_seconds=seconds)


def _parse_status(data: str) -> StatusEvent:
    try:
        payload = _load(data)
    except ValueError:
        return StatusEvent(text=data or None)
    if not isinstance(payload, dict):
        return StatusEvent(text=data or None)
    if payload.get("session_id"):
        model = payload.get("model") or "claude"
        return StatusEvent(
            text=f"Connected ({model})",
            producer_session_id=str(payload["session_id"]),
        )
    if payload.get("notification"):
        text = payload.get("message") or payload.get("title")
        return StatusEvent(text=str(text) if text else None)
    return StatusEvent(text=data or None)


def _parse_permission_request(data: str) -> PermissionRequestEvent | MalformedEvent:
    try:
        request = PermissionRequest.model_validate_json(data)
    except ValidationError as exc:
        return _malformed("permission_request", f"invalid_payload: {exc.error_count()} error(s)", data)
    return PermissionRequestEvent(request=request)


def _parse_result(data: str) -> ResultEvent:
    try:
        payload = _load(data)
    except ValueError:
        return ResultEvent()
    if not isinstance(payload, dict):
        return ResultEvent()
    usage: TokenUsage | None = None
    raw_usage = payload.get("usage")
    if isinstance(raw_usage, dict):
        try:
            usage = TokenUsage.model_validate(raw_usage)
        except ValidationError:
            usage = None
    session_id = payload.get("session_id")
    num_turns = payload.get("num_turns")
    duration = payload.get("duration_ms")
    return ResultEvent(
        usage=usage,
        producer_session_id=session_id if isinstance(session_id, str) else None,
        subtype=payload.get("subtype") if isinstance(payload.get("subtype"), str) else None,
        is_error=bool(payload.get("is_error", False)),
        num_turns=num_turns if isinstance(num_turns, int) else None,
        duration_ms=float(duration) if isinstance(duration, (int, float)) else None,
    )


def _parse_task_update(data: str) -> TaskUpdateEvent:
    try:
        payload = _load(data)
    except ValueError:
        return TaskUpdateEvent()
    if isinstance(payload, dict) and isinstance(payload.get("session_id"), str):
        return TaskUpdateEvent(session_id=payload["session_id"])
    return TaskUpdateEvent()


def parse_event(frame: Frame) -> StreamEvent | None:
    """Map a raw frame to a typed event.

    Returns ``None`` for event kinds this runtime does not know about.
    Known kinds with unusable payloads become :class:`MalformedEvent`.
    """
    kind, data = frame.type, frame.data
    if kind == "text":
        return TextEvent(text=data)
    if kind == "tool_use":
        return _parse_tool_use(data)
    if kind == "tool_result":
        return _parse_tool_result(data)
    if kind == "tool_output":
        return _parse_tool_output(data)
    if kind == "tool_progress":
        try:
            payload = _load(data)
        except ValueError:
            return _malformed("tool_progress", "invalid_json", data)
        if not isinstance(payload, dict):
            return _malformed("tool_progress", "not_an_object", data)
        return _parse_progress(payload)
    if kind == "tool_timeout":
        return _parse_tool_timeout(data)
    if kind == "status":
        return _parse_status(data)
    if kind == "permission_request":
        return _parse_permission_request(data)
    if kind == "mode_changed":
        return ModeChangedEvent(mode=data)
    if kind == "task_update":
        return _parse_task_update(data)
    if kind == "result":
        return _parse_result(data)
    if kind == "error":
        message, code = format_error_message(data)
        return ErrorEvent(message=message, code=code)
    if kind == "done":
        return DoneEvent()
    logger.debug("unknown_event_kind", extra={"kind": kind})
    return None


__all__ = [
    "DoneEvent",
    "EVENT_KINDS",
    "ErrorEvent",
    "Frame",
    "MalformedEvent",
    "ModeChangedEvent",
    "PermissionRequestEvent",
    "ResultEvent",
    "StatusEvent",
    "StreamEvent",
    "TERMINAL_EVENT_KINDS",
    "TaskUpdateEvent",
    "TextEvent",
    "ToolOutputEvent",
    "ToolProgressEvent",
    "ToolResultEvent",
    "ToolTimeoutEvent",
    "ToolUseEvent",
    "format_error_message",
    "parse_event",
]
