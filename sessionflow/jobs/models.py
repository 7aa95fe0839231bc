"""Batch media job models."""

from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from sessionflow.config import BatchConfig
from sessionflow.errors import InvalidTransitionError


def _utc_now() -> datetime:
    return datetime.now(UTC)


def _new_id() -> str:
    return secrets.token_hex(16)


class JobStatus(str, Enum):
    DRAFT = "draft"
    PLANNING = "planning"
    PLANNED = "planned"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class ItemStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_JOB_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.CANCELLED, JobStatus.FAILED})

JOB_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.DRAFT: frozenset({JobStatus.PLANNING, JobStatus.CANCELLED}),
    JobStatus.PLANNING: frozenset({JobStatus.PLANNED, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.PLANNED: frozenset({JobStatus.RUNNING, JobStatus.CANCELLED}),
    JobStatus.RUNNING: frozenset(
        {JobStatus.PAUSED, JobStatus.COMPLETED, JobStatus.CANCELLED, JobStatus.FAILED}
    ),
    JobStatus.PAUSED: frozenset(
        {JobStatus.RUNNING, JobStatus.COMPLETED, JobStatus.CANCELLED, JobStatus.FAILED}
    ),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
    JobStatus.FAILED: frozenset(),
}

ITEM_TRANSITIONS: dict[ItemStatus, frozenset[ItemStatus]] = {
    ItemStatus.PENDING: frozenset({ItemStatus.PROCESSING, ItemStatus.CANCELLED}),
    ItemStatus.PROCESSING: frozenset(
        {ItemStatus.COMPLETED, ItemStatus.FAILED, ItemStatus.CANCELLED, ItemStatus.PENDING}
    ),
    ItemStatus.FAILED: frozenset({ItemStatus.PENDING}),
    ItemStatus.COMPLETED: frozenset(),
    ItemStatus.CANCELLED: frozenset(),
}


class GenerationParams(BaseModel):
    prompt: str
    aspect_ratio: str = "1:1"
    image_size: str = "1K"
    model: str | None = None
    tags: list[str] = Field(default_factory=list)
    source_refs: list[str] = Field(default_factory=list)


@dataclass(slots=True)
class MediaJob:
    config: BatchConfig = field(default_factory=BatchConfig)
    session_id: str | None = None
    status: JobStatus = JobStatus.DRAFT
    style_prompt: str = ""
    total_items: int = 0
    completed_items: int = 0
    failed_items: int = 0
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=_utc_now)
    updated_at: datetime = field(default_factory=_utc_now)
    completed_at: datetime | None = None

    @property
    def batch_config(self) -> str:
        """Serialized batch configuration as stored alongside the job."""
        return self.config.model_dump_json(by_alias=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES

    def update_status(self, status: JobStatus) -> None:
        if status == self.status:
            return
        if status not in JOB_TRANSITIONS[self.status]:
            raise InvalidTransitionError("job", self.status.value, status.value)
        self.status = status
        self.updated_at = _utc_now()
        if status in TERMINAL_JOB_STATUSES:
            self.completed_at = self.updated_at


@dataclass(slots=True)
class MediaJobItem:
    job_id: str
    idx: int
    params: GenerationParams
    status: ItemStatus = ItemStatus.PENDING
    retry_count: int = 0
    result_media_generation_id: str | None = None
    error: str | None = None
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=_utc_now)
    updated_at: datetime = field(default_factory=_utc_now)

    def update_status(self, status: ItemStatus) -> None:
        if status == self.status:
            return
        if status not in ITEM_TRANSITIONS[self.status]:
            raise InvalidTransitionError("item", self.status.value, status.value)
        self.status = status
        self.updated_at = _utc_now()


class JobProgress(BaseModel):
    model_config = ConfigDict(frozen=True)

    total: int
    completed: int
    failed: int
    processing: int


JobProgressKind = Literal[
    "item_started",
    "item_completed",
    "item_failed",
    "item_retry",
    "job_completed",
    "job_paused",
    "job_cancelled",
]


class JobProgressEvent(BaseModel):
    """Progress notification emitted by the batch engine."""

    model_config = ConfigDict(frozen=True)

    kind: JobProgressKind
    job_id: str
    progress: JobProgress
    item_id: str | None = None
    item_idx: int | None = None
    error: str | None = None
    retry_count: int | None = None
    media_generation_id: str | None = None
    job_status: JobStatus | None = None
    timestamp: datetime = Field(default_factory=_utc_now)

    def to_wire(self) -> dict[str, Any]:
        """camelCase payload for UI transports."""
        payload: dict[str, Any] = {
            "type": self.kind,
            "jobId": self.job_id,
            "progress": self.progress.model_dump(),
            "timestamp": self.timestamp.isoformat(),
        }
        optional = {
            "itemId": self.item_id,
            "itemIdx": self.item_idx,
            "error": self.error,
            "retryCount": self.retry_count,
            "mediaGenerationId": self.media_generation_id,
            "jobStatus": self.job_status.value if self.job_status else None,
        }
        payload.update({key: value for key, value in optional.items() if value is not None})
        return payload


__all__ = [
    "BatchConfig",
    "GenerationParams",
    "ITEM_TRANSITIONS",
    "ItemStatus",
    "JOB_TRANSITIONS",
    "JobProgress",
    "JobProgressEvent",
    "JobProgressKind",
    "JobStatus",
    "MediaJob",
    "MediaJobItem",
    "TERMINAL_JOB_STATUSES",
]
