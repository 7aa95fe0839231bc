"""Telemetry contracts for stream and job observability.

A minimal schema downstream applications can map to their own
logging/metrics/tracing systems.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Literal, Protocol

from pydantic import BaseModel, Field

logger = logging.getLogger("sessionflow.telemetry")

TelemetryEventType = Literal[
    "stream_started",
    "stream_completed",
    "stream_failed",
    "stream_stopped",
    "job_started",
    "job_completed",
    "job_failed",
    "job_cancelled",
]


class RuntimeTelemetryEvent(BaseModel):
    event_type: TelemetryEventType
    session_id: str | None = None
    job_id: str | None = None
    status: str
    duration_ms: float | None = None
    created_at_s: float = Field(default_factory=time.time)
    extra: dict[str, Any] = Field(default_factory=dict)


class TelemetrySink(Protocol):
    async def emit(self, event: RuntimeTelemetryEvent) -> None: ...


class NoOpTelemetrySink:
    async def emit(self, event: RuntimeTelemetryEvent) -> None:
        _ = event
        return None


class RecordingTelemetrySink:
    """Keeps every event in memory; handy for tests and debugging."""

    def __init__(self) -> None:
        self.events: list[RuntimeTelemetryEvent] = []

    async def emit(self, event: RuntimeTelemetryEvent) -> None:
        self.events.append(event)


async def emit_safely(sink: TelemetrySink, event: RuntimeTelemetryEvent) -> None:
    try:
        await sink.emit(event)
    except Exception:
        logger.exception("telemetry_emit_failed", extra={"event_type": event.event_type})


__all__ = [
    "NoOpTelemetrySink",
    "RecordingTelemetrySink",
    "RuntimeTelemetryEvent",
    "TelemetryEventType",
    "TelemetrySink",
    "emit_safely",
]
