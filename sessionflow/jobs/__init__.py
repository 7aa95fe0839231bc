"""Batch media generation jobs."""

from sessionflow.config import BatchConfig

from .engine import BatchJobEngine, JobListener, Planner
from .executor import (
    GenerationResult,
    ItemFailure,
    ItemOutcome,
    ItemSuccess,
    JobItemExecutor,
    MediaGenerator,
)
from .models import (
    GenerationParams,
    ItemStatus,
    JobProgress,
    JobProgressEvent,
    JobStatus,
    MediaJob,
    MediaJobItem,
)

__all__ = [
    "BatchConfig",
    "BatchJobEngine",
    "GenerationParams",
    "GenerationResult",
    "ItemFailure",
    "ItemOutcome",
    "ItemStatus",
    "ItemSuccess",
    "JobItemExecutor",
    "JobListener",
    "JobProgress",
    "JobProgressEvent",
    "JobStatus",
    "MediaGenerator",
    "MediaJob",
    "MediaJobItem",
    "Planner",
]
