"""Live session stream decoding, reduction and fan-out."""

from .decoder import FRAME_PREFIX, FrameDecoder, decode_text, encode_frame, format_frame, iter_events, iter_frames
from .events import EVENT_KINDS, Frame, StreamEvent, parse_event
from .models import (
    ContentBlock,
    MessageContent,
    PermissionRequest,
    PermissionSuggestion,
    SessionStreamSnapshot,
    SnapshotEvent,
    StreamPhase,
    TextBlock,
    TokenUsage,
    ToolResultBlock,
    ToolUseBlock,
    parse_message_content,
    serialize_message_content,
)
from .permissions import PermissionCorrelator, PermissionDecision, format_permission_request
from .reconciler import Producer, SessionStreamReconciler
from .reducer import Reduction, build_message_content, fold, initial_snapshot, reduce, reduce_event
from .registry import StreamRegistry, get_registry, init_registry, shutdown_registry

__all__ = [
    "ContentBlock",
    "EVENT_KINDS",
    "FRAME_PREFIX",
    "Frame",
    "FrameDecoder",
    "MessageContent",
    "PermissionCorrelator",
    "PermissionDecision",
    "PermissionRequest",
    "PermissionSuggestion",
    "Producer",
    "Reduction",
    "SessionStreamReconciler",
    "SessionStreamSnapshot",
    "SnapshotEvent",
    "StreamEvent",
    "StreamPhase",
    "StreamRegistry",
    "TextBlock",
    "TokenUsage",
    "ToolResultBlock",
    "ToolUseBlock",
    "build_message_content",
    "decode_text",
    "encode_frame",
    "fold",
    "format_frame",
    "format_permission_request",
    "get_registry",
    "init_registry",
    "initial_snapshot",
    "iter_events",
    "iter_frames",
    "parse_event",
    "parse_message_content",
    "reduce",
    "reduce_event",
    "serialize_message_content",
    "shutdown_registry",
]
