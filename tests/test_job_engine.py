from __future__ import annotations

import asyncio
import time
from collections import Counter

import pytest

from sessionflow.cancel import CancelToken
from sessionflow.config import BatchConfig
from sessionflow.errors import InvalidTransitionError, JobNotFoundError
from sessionflow.jobs.engine import BatchJobEngine
from sessionflow.jobs.executor import GenerationResult
from sessionflow.jobs.models import (
    GenerationParams,
    ItemStatus,
    JobProgressEvent,
    JobStatus,
    MediaJob,
    MediaJobItem,
)
from sessionflow.store import InMemoryStore
from sessionflow.telemetry import RecordingTelemetrySink


class FakeGenerator:
    """Generator double with controllable latency, gating and failures."""

    def __init__(
        self,
        *,
        delay: float = 0.0,
        gate: asyncio.Event | None = None,
        fail: dict[str, int] | None = None,
    ) -> None:
        self.delay = delay
        self.gate = gate
        self.fail = dict(fail or {})
        self.calls: list[str] = []
        self.active = 0
        self.max_active = 0
        self.started = asyncio.Event()
        self.expected_active: int | None = None

    async def generate(self, params: GenerationParams, *, cancel_token: CancelToken) -> GenerationResult:
        self.calls.append(params.prompt)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        if self.expected_active is not None and self.active >= self.expected_active:
            self.started.set()
        try:
            if self.gate is not None:
                await self.gate.wait()
            else:
                await asyncio.sleep(self.delay)
            remaining = self.fail.get(params.prompt, 0)
            if remaining:
                if remaining > 0:
                    self.fail[params.prompt] = remaining - 1
                raise RuntimeError(f"generation failed for {params.prompt}")
            return GenerationResult(media_generation_id=f"gen-{params.prompt}")
        finally:
            self.active -= 1


def _params(*prompts: str) -> list[GenerationParams]:
    return [GenerationParams(prompt=prompt) for prompt in prompts]


@pytest.mark.asyncio
async def test_concurrency_bound_is_never_exceeded() -> None:
    generator = FakeGenerator(delay=0.01)
    store = InMemoryStore()
    engine = BatchJobEngine(generator, store=store)
    events: list[JobProgressEvent] = []
    job = await engine.create_job(_params("a", "b", "c", "d", "e"), BatchConfig(concurrency=2))
    engine.subscribe(job.id, events.append)

    await engine.start(job)
    finished = await engine.wait(job.id)

    assert finished.status == JobStatus.COMPLETED
    assert finished.completed_items == 5
    assert generator.max_active == 2
    assert all(event.progress.processing <= 2 for event in events)
    kinds = Counter(event.kind for event in events)
    assert kinds["item_started"] == 5
    assert kinds["item_completed"] == 5
    assert events[-1].kind == "job_completed"
    assert events[-1].job_status == JobStatus.COMPLETED
    assert {item.status for item in await store.list_job_items(job.id)} == {ItemStatus.COMPLETED}
    assert len(store.progress[job.id]) == len(events)


@pytest.mark.asyncio
async def test_items_are_dequeued_in_ordinal_order() -> None:
    generator = FakeGenerator()
    engine = BatchJobEngine(generator)
    job = await engine.create_job(_params("first", "second", "third"), BatchConfig(concurrency=1))

    await engine.start(job)
    await engine.wait(job.id)

    assert generator.calls == ["first", "second", "third"]


@pytest.mark.asyncio
async def test_always_failing_item_retries_with_backoff_then_fails() -> None:
    generator = FakeGenerator(fail={"bad": -1})
    engine = BatchJobEngine(generator)
    job = await engine.create_job(_params("bad"), BatchConfig(concurrency=1, max_retries=2, retry_delay_ms=20))
    timeline: list[tuple[str, int | None, float]] = []
    engine.subscribe(job.id, lambda event: timeline.append((event.kind, event.retry_count, time.monotonic())))

    await engine.start(job)
    finished = await engine.wait(job.id)

    kinds = [(kind, retry) for kind, retry, _ in timeline]
    assert kinds == [
        ("item_started", None),
        ("item_retry", 1),
        ("item_started", None),
        ("item_retry", 2),
        ("item_started", None),
        ("item_failed", 2),
        ("job_completed", None),
    ]
    first_gap = timeline[2][2] - timeline[1][2]
    second_gap = timeline[4][2] - timeline[3][2]
    assert first_gap >= 0.020 - 0.005
    assert second_gap >= 0.040 - 0.005
    assert finished.status == JobStatus.FAILED
    assert finished.failed_items == 1
    [item] = await engine.get_items(job.id)
    assert item.status == ItemStatus.FAILED
    assert item.retry_count == 2
    assert item.error == "generation failed for bad"


@pytest.mark.asyncio
async def test_transient_failure_recovers_on_retry() -> None:
    generator = FakeGenerator(fail={"flaky": 1})
    engine = BatchJobEngine(generator)
    job = await engine.create_job(_params("flaky"), BatchConfig(max_retries=2, retry_delay_ms=1))

    await engine.start(job)
    finished = await engine.wait(job.id)

    assert finished.status == JobStatus.COMPLETED
    [item] = await engine.get_items(job.id)
    assert item.retry_count == 1
    assert item.result_media_generation_id == "gen-flaky"


@pytest.mark.asyncio
async def test_partial_failure_completes_job_and_keeps_item_errors() -> None:
    generator = FakeGenerator(fail={"b": -1})
    store = InMemoryStore()
    engine = BatchJobEngine(generator, store=store)
    job = await engine.create_job(_params("a", "b", "c"), BatchConfig(max_retries=0))

    await engine.start(job)
    finished = await engine.wait(job.id)

    assert finished.status == JobStatus.COMPLETED
    assert (finished.completed_items, finished.failed_items) == (2, 1)
    errors = {item.params.prompt: item.error for item in await store.list_job_items(job.id)}
    assert errors == {"a": None, "b": "generation failed for b", "c": None}


@pytest.mark.asyncio
async def test_cancel_with_two_in_flight_and_three_pending() -> None:
    gate = asyncio.Event()
    generator = FakeGenerator(gate=gate)
    generator.expected_active = 2
    store = InMemoryStore()
    engine = BatchJobEngine(generator, store=store)
    events: list[JobProgressEvent] = []
    job = await engine.create_job(_params("a", "b", "c", "d", "e"), BatchConfig(concurrency=2))
    engine.subscribe(job.id, events.append)

    await engine.start(job)
    await asyncio.wait_for(generator.started.wait(), timeout=2)

    assert await engine.cancel(job.id) is True
    assert await engine.cancel(job.id) is False
    items = await engine.get_items(job.id)
    assert [item.status for item in items[2:]] == [ItemStatus.CANCELLED] * 3
    assert "job_cancelled" not in [event.kind for event in events]

    gate.set()
    finished = await engine.wait(job.id)

    assert finished.status == JobStatus.CANCELLED
    assert [event.kind for event in events].count("job_cancelled") == 1
    assert events[-1].kind == "job_cancelled"
    stored = await store.list_job_items(job.id)
    assert ItemStatus.PROCESSING not in {item.status for item in stored}
    assert {item.status for item in stored[:2]} <= {ItemStatus.COMPLETED, ItemStatus.CANCELLED}
    assert generator.calls == ["a", "b"]
    assert finished.completed_items == 0


@pytest.mark.asyncio
async def test_pause_lets_in_flight_finish_and_resume_continues() -> None:
    generator = FakeGenerator(delay=0.01)
    engine = BatchJobEngine(generator)
    kinds: list[str] = []
    job = await engine.create_job(_params("a", "b", "c"), BatchConfig(concurrency=1))
    engine.subscribe(job.id, lambda event: kinds.append(event.kind))

    await engine.start(job)
    assert await engine.pause(job.id) is True
    assert await engine.pause(job.id) is False
    await asyncio.sleep(0.05)

    assert generator.calls == ["a"]
    assert job.status == JobStatus.PAUSED
    assert "job_paused" in kinds

    assert await engine.resume(job.id) is True
    finished = await engine.wait(job.id)

    assert finished.status == JobStatus.COMPLETED
    assert generator.calls == ["a", "b", "c"]


@pytest.mark.asyncio
async def test_plan_job_replaces_items_with_planner_output() -> None:
    class Planner:
        async def plan(self, job: MediaJob, items):
            return [GenerationParams(prompt=f"{job.style_prompt}:{n}") for n in range(3)]

    generator = FakeGenerator()
    engine = BatchJobEngine(generator)
    job = await engine.create_job(_params("seed"), style_prompt="watercolor")

    planned = await engine.plan_job(job.id, Planner())
    assert planned.status == JobStatus.PLANNED
    assert planned.total_items == 3

    await engine.start(job.id)
    await engine.wait(job.id)

    assert generator.calls == ["watercolor:0", "watercolor:1", "watercolor:2"]


@pytest.mark.asyncio
async def test_failed_planning_marks_job_failed() -> None:
    class BrokenPlanner:
        async def plan(self, job, items):
            raise ValueError("planner offline")

    engine = BatchJobEngine(FakeGenerator())
    job = await engine.create_job(_params("seed"))

    with pytest.raises(ValueError):
        await engine.plan_job(job.id, BrokenPlanner())

    assert job.status == JobStatus.FAILED


@pytest.mark.asyncio
async def test_restored_job_resets_processing_items_and_skips_finished_ones() -> None:
    store = InMemoryStore()
    job = MediaJob(status=JobStatus.RUNNING, total_items=3)
    done = MediaJobItem(job_id=job.id, idx=0, params=GenerationParams(prompt="done"), status=ItemStatus.COMPLETED)
    stuck = MediaJobItem(job_id=job.id, idx=1, params=GenerationParams(prompt="stuck"), status=ItemStatus.PROCESSING)
    waiting = MediaJobItem(job_id=job.id, idx=2, params=GenerationParams(prompt="waiting"))
    await store.create_job(job, [done, stuck, waiting])

    generator = FakeGenerator()
    engine = BatchJobEngine(generator, store=store)
    await engine.start(job.id)
    finished = await engine.wait(job.id)

    assert generator.calls == ["stuck", "waiting"]
    assert finished.status == JobStatus.COMPLETED
    assert finished.completed_items == 3


@pytest.mark.asyncio
async def test_cancel_before_start_and_unknown_job() -> None:
    engine = BatchJobEngine(FakeGenerator())
    job = await engine.create_job(_params("a", "b"))
    kinds: list[str] = []
    engine.subscribe(job.id, lambda event: kinds.append(event.kind))

    assert await engine.cancel(job.id) is True
    assert job.status == JobStatus.CANCELLED
    assert kinds == ["job_cancelled"]
    assert {item.status for item in await engine.get_items(job.id)} == {ItemStatus.CANCELLED}

    with pytest.raises(JobNotFoundError):
        await engine.cancel("missing")


@pytest.mark.asyncio
async def test_empty_job_completes_immediately_with_telemetry() -> None:
    sink = RecordingTelemetrySink()
    engine = BatchJobEngine(FakeGenerator(), telemetry_sink=sink)
    job = await engine.create_job([])

    await engine.start(job)

    assert job.status == JobStatus.COMPLETED
    assert [event.event_type for event in sink.events] == ["job_started", "job_completed"]


@pytest.mark.asyncio
async def test_engine_requires_generator_or_executor() -> None:
    with pytest.raises(ValueError):
        BatchJobEngine()


@pytest.mark.asyncio
async def test_start_rejects_job_still_planning() -> None:
    engine = BatchJobEngine(FakeGenerator())
    job = await engine.create_job(_params("a"))
    job.update_status(JobStatus.PLANNING)

    with pytest.raises(InvalidTransitionError):
        await engine.start(job)

    assert engine.active_job_ids() == []
