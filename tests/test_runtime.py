from __future__ import annotations

import asyncio

import pytest

from sessionflow import CoreRuntime
from sessionflow.cancel import CancelToken
from sessionflow.errors import StreamAlreadyActiveError
from sessionflow.jobs.executor import GenerationResult
from sessionflow.jobs.models import GenerationParams, JobStatus
from sessionflow.store import InMemoryStore
from sessionflow.streams.decoder import format_frame
from sessionflow.streams.models import PermissionRequest, SnapshotEvent, StreamPhase
from sessionflow.streams.permissions import format_permission_request


class InstantGenerator:
    async def generate(self, params: GenerationParams, *, cancel_token: CancelToken) -> GenerationResult:
        await asyncio.sleep(0)
        return GenerationResult(media_generation_id=f"gen-{params.prompt}")


@pytest.mark.asyncio
async def test_permission_round_trip_through_runtime() -> None:
    store = InMemoryStore()
    runtime = CoreRuntime(store=store)
    request = PermissionRequest(permission_request_id="p1", tool_name="Write", tool_input={"path": "a.txt"})
    decisions = []

    async def producer():
        waiter = runtime.open_permission_request("s1", request)
        yield format_frame("text", "Need to write. ")
        yield format_permission_request(request)
        decision = await waiter
        decisions.append(decision)
        yield format_frame("text", "done" if decision.behavior == "allow" else "skipped")
        yield format_frame("done")

    def on_event(event: SnapshotEvent) -> None:
        if event.kind == "permission-request":
            asyncio.ensure_future(runtime.send_permission_decision("p1", "allow"))

    runtime.subscribe("s1", on_event)
    reconciler = runtime.start_stream("s1", producer())
    final = await reconciler.wait()

    assert decisions[0].behavior == "allow"
    assert decisions[0].updated_input == {"path": "a.txt"}
    assert final.phase == StreamPhase.COMPLETED
    assert final.permission_resolved == "allow"
    assert final.final_message_content == "Need to write. done"
    record = await store.get_permission_request("p1")
    assert record is not None and record.status == "allow"
    assert runtime.get_snapshot("s1") is not None
    await runtime.shutdown()


@pytest.mark.asyncio
async def test_stopping_stream_aborts_outstanding_permission() -> None:
    runtime = CoreRuntime()
    request = PermissionRequest(permission_request_id="p1", tool_name="Bash")
    decisions = []

    async def producer():
        yield format_frame("text", "about to run")
        decisions.append(await runtime.request_permission("s1", request))

    runtime.subscribe("s1", lambda _event: None)
    reconciler = runtime.start_stream("s1", producer())

    async def until(predicate) -> None:
        while not predicate():
            await asyncio.sleep(0.001)

    await asyncio.wait_for(until(lambda: runtime.permissions.pending_for("s1") is not None), timeout=2)
    assert runtime.stop_stream("s1") is True
    await reconciler.wait()
    await asyncio.wait_for(until(lambda: bool(decisions)), timeout=2)

    assert decisions[0].behavior == "deny"
    assert decisions[0].message == "Request aborted"
    assert runtime.get_snapshot("s1").phase == StreamPhase.STOPPED  # type: ignore[union-attr]
    assert runtime.stop_stream("s1") is False


@pytest.mark.asyncio
async def test_duplicate_stream_rejected_through_runtime() -> None:
    runtime = CoreRuntime()
    gate = asyncio.Event()

    async def producer():
        await gate.wait()
        yield format_frame("done")

    runtime.start_stream("s1", producer())
    with pytest.raises(StreamAlreadyActiveError):
        runtime.start_stream("s1", producer())
    gate.set()
    await runtime.shutdown()


@pytest.mark.asyncio
async def test_start_job_from_params_and_follow_progress() -> None:
    runtime = CoreRuntime(InstantGenerator())
    params = [GenerationParams(prompt=p) for p in ("a", "b", "c")]

    job = await runtime.create_job(params)
    kinds: list[str] = []
    runtime.subscribe_job_progress(job.id, lambda event: kinds.append(event.kind))
    await runtime.start_job(job)
    finished = await runtime.wait_job(job.id)

    assert finished.status == JobStatus.COMPLETED
    assert kinds.count("item_completed") == 3
    assert kinds[-1] == "job_completed"
    assert await runtime.pause_job(job.id) is False
    assert await runtime.resume_job(job.id) is False
    assert await runtime.cancel_job(job.id) is False


@pytest.mark.asyncio
async def test_jobs_unavailable_without_generator() -> None:
    runtime = CoreRuntime()

    with pytest.raises(RuntimeError, match="batch_jobs_unavailable"):
        await runtime.start_job([GenerationParams(prompt="x")])


@pytest.mark.asyncio
async def test_session_accepts_new_stream_after_caller_cancels_token() -> None:
    runtime = CoreRuntime()
    token = CancelToken()
    hang = asyncio.Event()

    async def stalled():
        await hang.wait()
        yield format_frame("done")

    first = runtime.start_stream("s1", stalled(), cancel_token=token)
    token.cancel("caller")
    stopped = await asyncio.wait_for(first.wait(), timeout=2)
    hang.set()

    assert stopped.phase == StreamPhase.STOPPED
    second = runtime.start_stream("s1", iter([format_frame("text", "again"), format_frame("done")]))
    final = await second.wait()
    assert final.phase == StreamPhase.COMPLETED
    await runtime.shutdown()
