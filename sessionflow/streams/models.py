"""Snapshot models for live session streams."""

from __future__ import annotations

import json
import time
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel


class StreamPhase(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    ERROR = "error"
    STOPPED = "stopped"


TERMINAL_PHASES = frozenset({StreamPhase.COMPLETED, StreamPhase.ERROR, StreamPhase.STOPPED})


class _WireModel(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, alias_generator=to_camel)


class TokenUsage(BaseModel):
    model_config = ConfigDict(extra="allow")

    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_input_tokens: int | None = None
    cache_creation_input_tokens: int | None = None
    cost_usd: float | None = None


class ToolUseInfo(_WireModel):
    id: str
    name: str
    input: Any = None


class ToolResultInfo(_WireModel):
    tool_use_id: str
    content: Any = ""
    is_error: bool = False


class ToolProgress(_WireModel):
    tool_name: str
    elapsed_seconds: int
    tool_use_id: str | None = None


class ToolTimeout(_WireModel):
    tool_name: str
    elapsed_seconds: int


class PermissionSuggestion(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str
    rules: list[dict[str, Any]] | None = None
    behavior: str | None = None
    destination: str | None = None


class PermissionRequest(_WireModel):
    permission_request_id: str
    tool_name: str
    tool_input: dict[str, Any] = Field(default_factory=dict)
    suggestions: list[PermissionSuggestion] | None = None
    decision_reason: str | None = None
    blocked_path: str | None = None
    tool_use_id: str | None = None
    description: str | None = None


class TextBlock(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["text"] = "text"
    text: str


class ToolUseBlock(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: Any = None


class ToolResultBlock(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str
    content: Any = ""
    is_error: bool = False


ContentBlock = Annotated[TextBlock | ToolUseBlock | ToolResultBlock, Field(discriminator="type")]

_BLOCKS_ADAPTER: TypeAdapter[list[ContentBlock]] = TypeAdapter(list[ContentBlock])

MessageContent = str | tuple[ContentBlock, ...]


def serialize_message_content(content: MessageContent | None) -> str:
    """Encode finalized content the way it is persisted: plain text or a JSON block list."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    return json.dumps(
        [block.model_dump(mode="json") for block in content],
        ensure_ascii=False,
    )


def parse_message_content(raw: str) -> list[TextBlock | ToolUseBlock | ToolResultBlock]:
    """Inverse of :func:`serialize_message_content`; plain text becomes one text block."""
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        return [TextBlock(text=raw)]
    if isinstance(parsed, list):
        return _BLOCKS_ADAPTER.validate_python(parsed)
    return [TextBlock(text=raw)]


class SessionStreamSnapshot(_WireModel):
    """Authoritative state of one session's stream at a point in time."""

    session_id: str
    phase: StreamPhase = StreamPhase.ACTIVE
    streaming_content: str = ""
    blocks: tuple[ContentBlock, ...] = ()
    tool_uses: tuple[ToolUseInfo, ...] = ()
    tool_results: tuple[ToolResultInfo, ...] = ()
    streaming_tool_output: str = ""
    tool_progress: ToolProgress | None = None
    tool_timeout: ToolTimeout | None = None
    status_text: str | None = None
    pending_permission: PermissionRequest | None = None
    permission_resolved: Literal["allow", "deny"] | None = None
    token_usage: TokenUsage | None = None
    mode: str | None = None
    task_revision: int = 0
    producer_session_id: str | None = None
    result_seen: bool = False
    dropped_events: int = 0
    revision: int = 0
    started_at: float = Field(default_factory=time.time)
    completed_at: float | None = None
    error: str | None = None
    final_message_content: MessageContent | None = None

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES

    @property
    def has_tool_blocks(self) -> bool:
        return any(block.type != "text" for block in self.blocks)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


SnapshotEventKind = Literal["snapshot-updated", "phase-changed", "permission-request", "completed"]


class SnapshotEvent(BaseModel):
    """Notification delivered to stream subscribers."""

    model_config = ConfigDict(frozen=True)

    kind: SnapshotEventKind
    session_id: str
    snapshot: SessionStreamSnapshot


__all__ = [
    "ContentBlock",
    "MessageContent",
    "PermissionRequest",
    "PermissionSuggestion",
    "SessionStreamSnapshot",
    "SnapshotEvent",
    "SnapshotEventKind",
    "StreamPhase",
    "TERMINAL_PHASES",
    "TextBlock",
    "TokenUsage",
    "ToolProgress",
    "ToolResultBlock",
    "ToolResultInfo",
    "ToolTimeout",
    "ToolUseBlock",
    "ToolUseInfo",
    "parse_message_content",
    "serialize_message_content",
]
