"""Batch job scheduling with bounded concurrency and retry backoff."""

from __future__ import annotations

import asyncio
import heapq
import logging
import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol

from sessionflow.cancel import CancelToken
from sessionflow.config import BatchConfig, RuntimeConfig
from sessionflow.errors import InvalidTransitionError, JobNotFoundError
from sessionflow.observers import ListenerSet
from sessionflow.telemetry import NoOpTelemetrySink, RuntimeTelemetryEvent, TelemetrySink, emit_safely

from .executor import ItemFailure, ItemOutcome, ItemSuccess, JobItemExecutor, MediaGenerator
from .models import (
    GenerationParams,
    ItemStatus,
    JobProgress,
    JobProgressEvent,
    JobProgressKind,
    JobStatus,
    MediaJob,
    MediaJobItem,
)

if TYPE_CHECKING:
    from sessionflow.store import JobStore

logger = logging.getLogger("sessionflow.jobs")

JobListener = Callable[[JobProgressEvent], None]


class Planner(Protocol):
    """Produces the generation parameters for a job being planned."""

    async def plan(self, job: MediaJob, items: Sequence[MediaJobItem]) -> Sequence[GenerationParams]: ...


@dataclass(slots=True)
class _JobRun:
    job: MediaJob
    items: dict[str, MediaJobItem]
    queue: list[tuple[int, str]] = field(default_factory=list)
    in_flight: dict[str, asyncio.Task[None]] = field(default_factory=dict)
    delayed: dict[str, asyncio.TimerHandle] = field(default_factory=dict)
    cancel_token: CancelToken = field(default_factory=CancelToken)
    done: asyncio.Event = field(default_factory=asyncio.Event)
    started_monotonic: float = field(default_factory=time.monotonic)
    finished: bool = False

    @property
    def cancelling(self) -> bool:
        return self.cancel_token.cancelled

    def processing(self) -> int:
        return sum(1 for item in self.items.values() if item.status == ItemStatus.PROCESSING)

    def has_pending(self) -> bool:
        return any(item.status == ItemStatus.PENDING for item in self.items.values())


class BatchJobEngine:
    """Runs media jobs item by item, at most ``config.concurrency`` at a time.

    Items are dequeued FIFO by ordinal index. Failed items go back to
    ``pending`` after ``retry_delay_ms * 2**retry_count`` until
    ``max_retries`` is exhausted. One ``_JobRun`` exists per running job and
    is dropped once the job reaches a terminal status.
    """

    def __init__(
        self,
        generator: MediaGenerator | None = None,
        *,
        executor: JobItemExecutor | None = None,
        store: JobStore | None = None,
        telemetry_sink: TelemetrySink | None = None,
        config: RuntimeConfig | None = None,
    ) -> None:
        if store is None:
            from sessionflow.store import InMemoryStore

            store = InMemoryStore()
        if executor is None:
            if generator is None:
                raise ValueError("BatchJobEngine requires a generator or an executor")
            executor = JobItemExecutor(generator, store)
        self._store = store
        self._executor = executor
        self._telemetry = telemetry_sink or NoOpTelemetrySink()
        self._config = config or RuntimeConfig()
        self._jobs: dict[str, MediaJob] = {}
        self._runs: dict[str, _JobRun] = {}
        self._listeners: dict[str, ListenerSet[JobProgressEvent]] = {}

    @property
    def store(self) -> JobStore:
        return self._store

    def active_job_ids(self) -> list[str]:
        return list(self._runs)

    async def create_job(
        self,
        params: Iterable[GenerationParams],
        config: BatchConfig | None = None,
        *,
        session_id: str | None = None,
        style_prompt: str = "",
    ) -> MediaJob:
        job = MediaJob(
            config=config or self._config.batch,
            session_id=session_id,
            style_prompt=style_prompt,
        )
        items = [MediaJobItem(job_id=job.id, idx=idx, params=p) for idx, p in enumerate(params)]
        job.total_items = len(items)
        await self._store.create_job(job, items)
        self._jobs[job.id] = job
        logger.info("job_created", extra={"job_id": job.id, "items": job.total_items})
        return job

    async def plan_job(self, job_id: str, planner: Planner | None = None) -> MediaJob:
        """Move a draft job to ``planned``, optionally replacing its items."""
        job = await self._require_job(job_id)
        job.update_status(JobStatus.PLANNING)
        await self._persist_job(job)
        if planner is not None:
            items = await self._store.list_job_items(job.id)
            try:
                planned = list(await planner.plan(job, items))
            except Exception:
                logger.exception("job_planning_failed", extra={"job_id": job.id})
                job.update_status(JobStatus.FAILED)
                await self._persist_job(job)
                raise
            new_items = [MediaJobItem(job_id=job.id, idx=idx, params=p) for idx, p in enumerate(planned)]
            await self._store.replace_job_items(job.id, new_items)
            job.total_items = len(new_items)
        job.update_status(JobStatus.PLANNED)
        await self._persist_job(job)
        return job

    async def start(self, job: MediaJob | str, items: Sequence[MediaJobItem] | None = None) -> MediaJob:
        """Begin running a planned job, or resume one restored from the store.

        Restored items left ``processing`` are reset to ``pending``; items that
        already reached ``completed``, ``failed`` or ``cancelled`` are not run again.
        """
        if isinstance(job, MediaJob):
            self._jobs.setdefault(job.id, job)
            job = job.id
        job = await self._require_job(job)
        if job.id in self._runs:
            raise RuntimeError(f"job_already_running: {job.id}")
        if job.status == JobStatus.DRAFT:
            await self.plan_job(job.id)
        if job.is_terminal:
            raise RuntimeError(f"job_already_finished: {job.id}")
        if job.status not in (JobStatus.PLANNED, JobStatus.RUNNING, JobStatus.PAUSED):
            raise InvalidTransitionError("job", job.status.value, JobStatus.RUNNING.value)
        loaded = list(items) if items is not None else await self._store.list_job_items(job.id)

        restored = job.status in (JobStatus.RUNNING, JobStatus.PAUSED)
        for item in loaded:
            if item.status == ItemStatus.PROCESSING:
                item.update_status(ItemStatus.PENDING)
                await self._persist_item(item)
        job.total_items = len(loaded)
        job.completed_items = sum(1 for item in loaded if item.status == ItemStatus.COMPLETED)
        job.failed_items = sum(1 for item in loaded if item.status == ItemStatus.FAILED)
        if job.status == JobStatus.PLANNED:
            job.update_status(JobStatus.RUNNING)
        await self._persist_job(job)

        run = _JobRun(job=job, items={item.id: item for item in loaded})
        for item in loaded:
            if item.status == ItemStatus.PENDING:
                heapq.heappush(run.queue, (item.idx, item.id))
        self._runs[job.id] = run
        logger.info(
            "job_started",
            extra={"job_id": job.id, "items": job.total_items, "restored": restored, "status": job.status.value},
        )
        await emit_safely(
            self._telemetry,
            RuntimeTelemetryEvent(event_type="job_started", job_id=job.id, status=job.status.value),
        )
        self._pump(run)
        await self._maybe_finish(run)
        return job

    async def pause(self, job_id: str) -> bool:
        """Stop dequeuing new items. In-flight items finish normally."""
        run = self._runs.get(job_id)
        if run is None or run.cancelling or run.job.status != JobStatus.RUNNING:
            return False
        run.job.update_status(JobStatus.PAUSED)
        await self._persist_job(run.job)
        await self._emit(run, "job_paused")
        logger.info("job_paused", extra={"job_id": job_id})
        return True

    async def resume(self, job_id: str) -> bool:
        run = self._runs.get(job_id)
        if run is None or run.cancelling or run.job.status != JobStatus.PAUSED:
            return False
        run.job.update_status(JobStatus.RUNNING)
        await self._persist_job(run.job)
        logger.info("job_resumed", extra={"job_id": job_id})
        self._pump(run)
        await self._maybe_finish(run)
        return True

    async def cancel(self, job_id: str) -> bool:
        """Cancel pending work; ``job_cancelled`` fires once in-flight items drain."""
        run = self._runs.get(job_id)
        if run is None:
            return await self._cancel_idle(job_id)
        if run.cancelling or run.finished:
            return False
        run.cancel_token.cancel("job_cancelled")
        for handle in run.delayed.values():
            handle.cancel()
        run.delayed.clear()
        run.queue.clear()
        for item in sorted(run.items.values(), key=lambda i: i.idx):
            if item.status == ItemStatus.PENDING:
                item.update_status(ItemStatus.CANCELLED)
                await self._persist_item(item)
        logger.info("job_cancelling", extra={"job_id": job_id, "in_flight": len(run.in_flight)})
        await self._maybe_finish(run)
        return True

    async def wait(self, job_id: str) -> MediaJob:
        run = self._runs.get(job_id)
        if run is not None:
            await run.done.wait()
            return run.job
        return await self._require_job(job_id)

    async def get_job(self, job_id: str) -> MediaJob | None:
        job = self._jobs.get(job_id)
        if job is not None:
            return job
        job = await self._store.get_job(job_id)
        if job is not None:
            self._jobs[job_id] = job
        return job

    async def get_items(self, job_id: str) -> list[MediaJobItem]:
        run = self._runs.get(job_id)
        if run is not None:
            return sorted(run.items.values(), key=lambda item: item.idx)
        return await self._store.list_job_items(job_id)

    def subscribe(self, job_id: str, listener: JobListener) -> Callable[[], None]:
        listeners = self._listeners.get(job_id)
        if listeners is None:
            listeners = ListenerSet(f"job:{job_id}", on_empty=lambda: self._drop_listeners(job_id))
            self._listeners[job_id] = listeners
        return listeners.add(listener)

    async def shutdown(self) -> None:
        """Cancel every running job and wait for in-flight items to drain."""
        runs = list(self._runs.values())
        for run in runs:
            await self.cancel(run.job.id)
        if runs:
            await asyncio.gather(*(run.done.wait() for run in runs))

    def _pump(self, run: _JobRun) -> None:
        limit = run.job.config.concurrency
        while (
            run.job.status == JobStatus.RUNNING
            and not run.cancelling
            and run.queue
            and len(run.in_flight) < limit
        ):
            _, item_id = heapq.heappop(run.queue)
            item = run.items[item_id]
            if item.status != ItemStatus.PENDING:
                continue
            item.update_status(ItemStatus.PROCESSING)
            run.in_flight[item.id] = asyncio.create_task(
                self._process(run, item),
                name=f"job:{run.job.id}:{item.idx}",
            )

    async def _process(self, run: _JobRun, item: MediaJobItem) -> None:
        try:
            await self._persist_item(item)
            await self._emit(run, "item_started", item)
            try:
                outcome: ItemOutcome = await self._executor.execute(
                    item,
                    run.job.config,
                    cancel_token=run.cancel_token,
                )
            except Exception as exc:
                logger.exception("item_execute_failed", extra={"job_id": run.job.id, "item_id": item.id})
                outcome = ItemFailure(str(exc) or exc.__class__.__name__)
            await self._settle(run, item, outcome)
        except Exception:
            logger.exception("item_settle_failed", extra={"job_id": run.job.id, "item_id": item.id})
        finally:
            run.in_flight.pop(item.id, None)
        self._pump(run)
        await self._maybe_finish(run)

    async def _settle(self, run: _JobRun, item: MediaJobItem, outcome: ItemOutcome) -> None:
        job = run.job
        if isinstance(outcome, ItemSuccess):
            if item.status == ItemStatus.CANCELLED:
                logger.info(
                    "item_result_kept_after_cancel",
                    extra={"job_id": job.id, "item_id": item.id, "media_generation_id": outcome.result_ref},
                )
                return
            job.completed_items += 1
            await self._persist_job(job)
            await self._emit(run, "item_completed", item, media_generation_id=outcome.result_ref)
            return

        if run.cancelling:
            item.update_status(ItemStatus.CANCELLED)
            await self._persist_item(item)
            return

        item.error = outcome.error
        if item.retry_count < job.config.max_retries:
            delay = job.config.backoff_s(item.retry_count)
            item.retry_count += 1
            item.update_status(ItemStatus.PENDING)
            await self._persist_item(item)
            run.delayed[item.id] = asyncio.get_running_loop().call_later(delay, self._requeue, run, item)
            logger.info(
                "item_retry_scheduled",
                extra={"job_id": job.id, "item_id": item.id, "retry_count": item.retry_count, "delay_s": delay},
            )
            await self._emit(run, "item_retry", item, error=outcome.error, retry_count=item.retry_count)
            return

        item.update_status(ItemStatus.FAILED)
        job.failed_items += 1
        await self._persist_item(item)
        await self._persist_job(job)
        logger.warning(
            "item_failed",
            extra={"job_id": job.id, "item_id": item.id, "retries": item.retry_count, "error": outcome.error},
        )
        await self._emit(run, "item_failed", item, error=outcome.error, retry_count=item.retry_count)

    def _requeue(self, run: _JobRun, item: MediaJobItem) -> None:
        run.delayed.pop(item.id, None)
        if run.cancelling or item.status != ItemStatus.PENDING:
            return
        heapq.heappush(run.queue, (item.idx, item.id))
        self._pump(run)

    async def _maybe_finish(self, run: _JobRun) -> None:
        if run.finished or run.in_flight:
            return
        job = run.job
        if run.cancelling:
            await self._finish(run, JobStatus.CANCELLED)
            return
        if run.delayed or run.has_pending():
            return
        failed = job.failed_items > 0 and (
            job.completed_items == 0 or job.completed_items + job.failed_items < job.total_items
        )
        await self._finish(run, JobStatus.FAILED if failed else JobStatus.COMPLETED)

    async def _finish(self, run: _JobRun, status: JobStatus) -> None:
        run.finished = True
        job = run.job
        try:
            job.update_status(status)
            await self._persist_job(job)
            if status == JobStatus.CANCELLED:
                await self._emit(run, "job_cancelled", job_status=status)
            else:
                await self._emit(run, "job_completed", job_status=status)
            logger.info(
                "job_finished",
                extra={
                    "job_id": job.id,
                    "status": status.value,
                    "completed": job.completed_items,
                    "failed": job.failed_items,
                },
            )
            await emit_safely(
                self._telemetry,
                RuntimeTelemetryEvent(
                    event_type=f"job_{status.value}",  # type: ignore[arg-type]
                    job_id=job.id,
                    status=status.value,
                    duration_ms=(time.monotonic() - run.started_monotonic) * 1000,
                    extra={"completed": job.completed_items, "failed": job.failed_items},
                ),
            )
        finally:
            self._runs.pop(job.id, None)
            run.done.set()

    async def _cancel_idle(self, job_id: str) -> bool:
        job = await self.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if job.is_terminal:
            return False
        job.update_status(JobStatus.CANCELLED)
        items = await self._store.list_job_items(job_id)
        for item in items:
            if item.status == ItemStatus.PENDING:
                item.update_status(ItemStatus.CANCELLED)
                await self._persist_item(item)
        await self._persist_job(job)
        progress = JobProgress(
            total=job.total_items,
            completed=job.completed_items,
            failed=job.failed_items,
            processing=0,
        )
        await self._publish(
            JobProgressEvent(kind="job_cancelled", job_id=job_id, progress=progress, job_status=job.status)
        )
        logger.info("job_finished", extra={"job_id": job_id, "status": job.status.value})
        return True

    async def _emit(
        self,
        run: _JobRun,
        kind: JobProgressKind,
        item: MediaJobItem | None = None,
        *,
        error: str | None = None,
        retry_count: int | None = None,
        media_generation_id: str | None = None,
        job_status: JobStatus | None = None,
    ) -> None:
        job = run.job
        event = JobProgressEvent(
            kind=kind,
            job_id=job.id,
            progress=JobProgress(
                total=job.total_items,
                completed=job.completed_items,
                failed=job.failed_items,
                processing=run.processing(),
            ),
            item_id=item.id if item is not None else None,
            item_idx=item.idx if item is not None else None,
            error=error,
            retry_count=retry_count,
            media_generation_id=media_generation_id,
            job_status=job_status,
        )
        await self._publish(event)

    async def _publish(self, event: JobProgressEvent) -> None:
        listeners = self._listeners.get(event.job_id)
        if listeners is not None:
            listeners.notify(event)
        try:
            await self._store.record_job_progress(event)
        except Exception:
            logger.exception("job_progress_persist_failed", extra={"job_id": event.job_id, "kind": event.kind})

    async def _require_job(self, job_id: str) -> MediaJob:
        job = await self.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def _persist_job(self, job: MediaJob) -> None:
        try:
            await self._store.update_job(job)
        except Exception:
            logger.exception("job_persist_failed", extra={"job_id": job.id, "status": job.status.value})

    async def _persist_item(self, item: MediaJobItem) -> None:
        try:
            await self._store.update_job_item(item)
        except Exception:
            logger.exception("item_persist_failed", extra={"job_id": item.job_id, "item_id": item.id})

    def _drop_listeners(self, job_id: str) -> None:
        listeners = self._listeners.get(job_id)
        if listeners is not None and not len(listeners):
            del self._listeners[job_id]


__all__ = ["BatchJobEngine", "JobListener", "Planner"]
