from __future__ import annotations

import pytest

from sessionflow.config import BatchConfig, RuntimeConfig
from sessionflow.errors import InvalidTransitionError
from sessionflow.jobs.models import (
    GenerationParams,
    ItemStatus,
    JobProgress,
    JobProgressEvent,
    JobStatus,
    MediaJob,
    MediaJobItem,
)


def test_batch_config_defaults_and_wire_aliases() -> None:
    defaults = BatchConfig()
    assert (defaults.concurrency, defaults.max_retries, defaults.retry_delay_ms) == (2, 2, 2000)

    parsed = BatchConfig.model_validate({"concurrency": 4, "maxRetries": 5, "retryDelayMs": 100})
    assert parsed.max_retries == 5
    assert parsed.retry_delay_ms == 100
    assert RuntimeConfig().batch == defaults


def test_backoff_doubles_per_retry() -> None:
    config = BatchConfig(retry_delay_ms=2000)

    assert [config.backoff_s(n) for n in range(3)] == [2.0, 4.0, 8.0]


def test_batch_config_bounds_concurrency() -> None:
    with pytest.raises(ValueError):
        BatchConfig(concurrency=0)


def test_job_status_machine() -> None:
    job = MediaJob()
    for status in (JobStatus.PLANNING, JobStatus.PLANNED, JobStatus.RUNNING, JobStatus.PAUSED, JobStatus.RUNNING):
        job.update_status(status)
    job.update_status(JobStatus.COMPLETED)

    assert job.is_terminal
    assert job.completed_at is not None
    with pytest.raises(InvalidTransitionError):
        job.update_status(JobStatus.RUNNING)


def test_draft_job_cannot_start_running_directly() -> None:
    with pytest.raises(InvalidTransitionError):
        MediaJob().update_status(JobStatus.RUNNING)


def test_item_status_machine_allows_retry_path_only() -> None:
    item = MediaJobItem(job_id="j", idx=0, params=GenerationParams(prompt="p"))
    item.update_status(ItemStatus.PROCESSING)
    item.update_status(ItemStatus.PENDING)
    item.update_status(ItemStatus.PROCESSING)
    item.update_status(ItemStatus.COMPLETED)

    with pytest.raises(InvalidTransitionError):
        item.update_status(ItemStatus.PENDING)


def test_batch_config_is_serialized_with_wire_names() -> None:
    job = MediaJob(config=BatchConfig(concurrency=3))

    assert '"maxRetries":2' in job.batch_config
    assert '"concurrency":3' in job.batch_config


def test_progress_event_wire_payload_is_camel_case() -> None:
    event = JobProgressEvent(
        kind="item_retry",
        job_id="j1",
        progress=JobProgress(total=3, completed=1, failed=0, processing=1),
        item_id="i1",
        item_idx=2,
        retry_count=1,
        error="quota",
    )

    wire = event.to_wire()

    assert wire["type"] == "item_retry"
    assert wire["jobId"] == "j1"
    assert wire["itemIdx"] == 2
    assert wire["retryCount"] == 1
    assert wire["progress"] == {"total": 3, "completed": 1, "failed": 0, "processing": 1}
    assert "mediaGenerationId" not in wire
