"""Persistence contracts the runtime writes through, plus an in-memory default.

The runtime never owns durable state. It calls these methods at fixed
checkpoints (terminal stream phase, permission request/resolution, every job
item transition and progress event) and treats any failure as a reported,
non-fatal error.
"""

from __future__ import annotations

import asyncio
import secrets
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any, Literal, Protocol

from sessionflow.jobs.models import JobProgressEvent, MediaJob, MediaJobItem
from sessionflow.streams.models import PermissionRequest, TokenUsage

PermissionStatus = Literal["pending", "allow", "deny", "aborted", "timeout"]
MessageRole = Literal["user", "assistant"]


def _utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass(slots=True)
class StoredMessage:
    id: str
    session_id: str
    role: MessageRole
    content: str
    token_usage: str | None = None
    created_at: datetime = field(default_factory=_utc_now)


@dataclass(slots=True)
class PermissionRecord:
    id: str
    session_id: str
    tool_name: str
    tool_input: dict[str, Any]
    status: PermissionStatus = "pending"
    resolution: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=_utc_now)
    resolved_at: datetime | None = None


class SessionStore(Protocol):
    async def save_message(
        self,
        session_id: str,
        role: MessageRole,
        content: str,
        token_usage: TokenUsage | None = None,
    ) -> str: ...

    async def update_message_content(
        self,
        message_id: str,
        content: str,
        token_usage: TokenUsage | None = None,
    ) -> None: ...

    async def save_permission_request(self, session_id: str, request: PermissionRequest) -> None: ...

    async def resolve_permission_request(
        self,
        permission_request_id: str,
        status: PermissionStatus,
        resolution: dict[str, Any] | None = None,
    ) -> None: ...


class JobStore(Protocol):
    async def create_job(self, job: MediaJob, items: list[MediaJobItem]) -> None: ...

    async def get_job(self, job_id: str) -> MediaJob | None: ...

    async def list_job_items(self, job_id: str) -> list[MediaJobItem]: ...

    async def update_job(self, job: MediaJob) -> None: ...

    async def replace_job_items(self, job_id: str, items: list[MediaJobItem]) -> None: ...

    async def update_job_item(self, item: MediaJobItem) -> None: ...

    async def record_job_progress(self, event: JobProgressEvent) -> None: ...


class Store(SessionStore, JobStore, Protocol):
    """Combined store used by :class:`sessionflow.runtime.CoreRuntime`."""


class InMemoryStore:
    """Process-local store. Records are copied on write so callers cannot alias them."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self.messages: dict[str, StoredMessage] = {}
        self.permissions: dict[str, PermissionRecord] = {}
        self.jobs: dict[str, MediaJob] = {}
        self.items: dict[str, dict[str, MediaJobItem]] = {}
        self.progress: dict[str, list[JobProgressEvent]] = {}

    async def save_message(
        self,
        session_id: str,
        role: MessageRole,
        content: str,
        token_usage: TokenUsage | None = None,
    ) -> str:
        message_id = secrets.token_hex(16)
        async with self._lock:
            self.messages[message_id] = StoredMessage(
                id=message_id,
                session_id=session_id,
                role=role,
                content=content,
                token_usage=token_usage.model_dump_json(exclude_none=True) if token_usage else None,
            )
        return message_id

    async def update_message_content(
        self,
        message_id: str,
        content: str,
        token_usage: TokenUsage | None = None,
    ) -> None:
        async with self._lock:
            message = self.messages.get(message_id)
            if message is not None:
                message.content = content
                if token_usage is not None:
                    message.token_usage = token_usage.model_dump_json(exclude_none=True)

    async def list_messages(self, session_id: str) -> list[StoredMessage]:
        async with self._lock:
            return [replace(m) for m in self.messages.values() if m.session_id == session_id]

    async def save_permission_request(self, session_id: str, request: PermissionRequest) -> None:
        async with self._lock:
            self.permissions[request.permission_request_id] = PermissionRecord(
                id=request.permission_request_id,
                session_id=session_id,
                tool_name=request.tool_name,
                tool_input=dict(request.tool_input),
            )

    async def resolve_permission_request(
        self,
        permission_request_id: str,
        status: PermissionStatus,
        resolution: dict[str, Any] | None = None,
    ) -> None:
        async with self._lock:
            record = self.permissions.get(permission_request_id)
            if record is None:
                return
            record.status = status
            record.resolution = dict(resolution or {})
            record.resolved_at = _utc_now()

    async def get_permission_request(self, permission_request_id: str) -> PermissionRecord | None:
        async with self._lock:
            record = self.permissions.get(permission_request_id)
            return replace(record) if record is not None else None

    async def create_job(self, job: MediaJob, items: list[MediaJobItem]) -> None:
        async with self._lock:
            self.jobs[job.id] = replace(job)
            self.items[job.id] = {item.id: replace(item) for item in items}
            self.progress.setdefault(job.id, [])

    async def get_job(self, job_id: str) -> MediaJob | None:
        async with self._lock:
            job = self.jobs.get(job_id)
            return replace(job) if job is not None else None

    async def list_job_items(self, job_id: str) -> list[MediaJobItem]:
        async with self._lock:
            items = self.items.get(job_id, {})
            return sorted((replace(item) for item in items.values()), key=lambda item: item.idx)

    async def update_job(self, job: MediaJob) -> None:
        async with self._lock:
            self.jobs[job.id] = replace(job)

    async def replace_job_items(self, job_id: str, items: list[MediaJobItem]) -> None:
        async with self._lock:
            self.items[job_id] = {item.id: replace(item) for item in items}

    async def update_job_item(self, item: MediaJobItem) -> None:
        async with self._lock:
            self.items.setdefault(item.job_id, {})[item.id] = replace(item)

    async def record_job_progress(self, event: JobProgressEvent) -> None:
        async with self._lock:
            self.progress.setdefault(event.job_id, []).append(event)


__all__ = [
    "InMemoryStore",
    "JobStore",
    "MessageRole",
    "PermissionRecord",
    "PermissionStatus",
    "SessionStore",
    "Store",
    "StoredMessage",
]
