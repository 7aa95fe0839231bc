"""Facade wiring streams, permissions and batch jobs behind one object."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable
from typing import Any, Literal

from sessionflow.cancel import CancelToken
from sessionflow.config import BatchConfig, RuntimeConfig
from sessionflow.jobs import BatchJobEngine, GenerationParams, JobProgressEvent, MediaGenerator, MediaJob, Planner
from sessionflow.store import InMemoryStore, Store
from sessionflow.streams import (
    PermissionCorrelator,
    PermissionDecision,
    PermissionRequest,
    Producer,
    SessionStreamReconciler,
    SessionStreamSnapshot,
    SnapshotEvent,
    StreamRegistry,
)
from sessionflow.streams.permissions import DecisionChoice
from sessionflow.streams.reconciler import ToolTimeoutCallback
from sessionflow.telemetry import NoOpTelemetrySink, TelemetrySink

logger = logging.getLogger("sessionflow.runtime")


class CoreRuntime:
    """Entry point for UI and CLI layers.

    Owns one :class:`StreamRegistry`, one :class:`PermissionCorrelator` and,
    when a media generator is supplied, one :class:`BatchJobEngine`, all
    writing through the same store.
    """

    def __init__(
        self,
        generator: MediaGenerator | None = None,
        *,
        store: Store | None = None,
        config: RuntimeConfig | None = None,
        telemetry_sink: TelemetrySink | None = None,
        on_tool_timeout: ToolTimeoutCallback | None = None,
    ) -> None:
        self.config = config or RuntimeConfig()
        self.store: Store = store or InMemoryStore()
        self.telemetry_sink = telemetry_sink or NoOpTelemetrySink()
        self.permissions = PermissionCorrelator(store=self.store, on_resolved=self._on_permission_resolved)
        self.streams = StreamRegistry(
            config=self.config,
            store=self.store,
            permissions=self.permissions,
            telemetry_sink=self.telemetry_sink,
            on_tool_timeout=on_tool_timeout,
        )
        self._jobs: BatchJobEngine | None = None
        if generator is not None:
            self._jobs = BatchJobEngine(
                generator,
                store=self.store,
                telemetry_sink=self.telemetry_sink,
                config=self.config,
            )

    @property
    def jobs(self) -> BatchJobEngine:
        if self._jobs is None:
            raise RuntimeError("batch_jobs_unavailable: CoreRuntime was created without a media generator")
        return self._jobs

    # Streams

    def start_stream(
        self,
        session_id: str,
        producer: Producer,
        *,
        cancel_token: CancelToken | None = None,
    ) -> SessionStreamReconciler:
        return self.streams.start_stream(session_id, producer, cancel_token=cancel_token)

    def stop_stream(self, session_id: str) -> bool:
        stopped = self.streams.stop_stream(session_id, "user")
        if stopped:
            logger.info("stream_stop_requested", extra={"session_id": session_id})
        return stopped

    def subscribe(self, session_id: str, listener: Callable[[SnapshotEvent], None]) -> Callable[[], None]:
        return self.streams.subscribe(session_id, listener)

    def get_snapshot(self, session_id: str) -> SessionStreamSnapshot | None:
        return self.streams.get_snapshot(session_id)

    # Permissions

    def open_permission_request(
        self,
        session_id: str,
        request: PermissionRequest,
    ) -> asyncio.Future[PermissionDecision]:
        """Register a permission waiter tied to the session's live stream."""
        return self.permissions.open_request(session_id, request, cancel_token=self._stream_token(session_id))

    async def request_permission(self, session_id: str, request: PermissionRequest) -> PermissionDecision:
        return await self.open_permission_request(session_id, request)

    async def send_permission_decision(
        self,
        correlation_id: str,
        decision: PermissionDecision | DecisionChoice,
        *,
        updated_input: dict[str, Any] | None = None,
    ) -> bool:
        return await self.permissions.resolve_permission(correlation_id, decision, updated_input=updated_input)

    # Jobs

    async def create_job(
        self,
        params: Iterable[GenerationParams],
        config: BatchConfig | None = None,
        *,
        session_id: str | None = None,
        style_prompt: str = "",
    ) -> MediaJob:
        return await self.jobs.create_job(params, config, session_id=session_id, style_prompt=style_prompt)

    async def plan_job(self, job_id: str, planner: Planner | None = None) -> MediaJob:
        return await self.jobs.plan_job(job_id, planner)

    async def start_job(
        self,
        job: MediaJob | str | Iterable[GenerationParams],
        config: BatchConfig | None = None,
        *,
        session_id: str | None = None,
        style_prompt: str = "",
    ) -> MediaJob:
        """Start an existing job, or create one from generation parameters and start it."""
        if not isinstance(job, (MediaJob, str)):
            job = await self.create_job(job, config, session_id=session_id, style_prompt=style_prompt)
        return await self.jobs.start(job)

    async def pause_job(self, job_id: str) -> bool:
        return await self.jobs.pause(job_id)

    async def resume_job(self, job_id: str) -> bool:
        return await self.jobs.resume(job_id)

    async def cancel_job(self, job_id: str) -> bool:
        return await self.jobs.cancel(job_id)

    async def wait_job(self, job_id: str) -> MediaJob:
        return await self.jobs.wait(job_id)

    def subscribe_job_progress(self, job_id: str, listener: Callable[[JobProgressEvent], None]) -> Callable[[], None]:
        return self.jobs.subscribe(job_id, listener)

    async def shutdown(self) -> None:
        await self.streams.shutdown()
        self.permissions.cancel_all()
        if self._jobs is not None:
            await self._jobs.shutdown()
        logger.info("runtime_shutdown")

    def _stream_token(self, session_id: str) -> CancelToken | None:
        reconciler = self.streams.lookup(session_id)
        if reconciler is None or reconciler.is_terminal:
            return None
        return reconciler.cancel_token

    def _on_permission_resolved(
        self,
        session_id: str,
        correlation_id: str,
        behavior: Literal["allow", "deny"],
    ) -> None:
        reconciler = self.streams.lookup(session_id)
        if reconciler is not None:
            reconciler.apply_permission_decision(correlation_id, behavior)


__all__ = ["CoreRuntime"]
