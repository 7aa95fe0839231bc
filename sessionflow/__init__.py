"""Session stream reconciliation and batch media job orchestration."""

from .cancel import CancelToken
from .config import BatchConfig, RuntimeConfig
from .errors import (
    InvalidTransitionError,
    JobNotFoundError,
    PermissionConflictError,
    SessionflowError,
    StoreError,
    StreamAlreadyActiveError,
)
from .jobs import BatchJobEngine, GenerationParams, GenerationResult, JobProgressEvent, MediaJob, MediaJobItem
from .observers import ListenerSet
from .runtime import CoreRuntime
from .store import InMemoryStore, Store
from .streams import (
    PermissionCorrelator,
    PermissionDecision,
    PermissionRequest,
    SessionStreamReconciler,
    SessionStreamSnapshot,
    SnapshotEvent,
    StreamPhase,
    StreamRegistry,
)

__all__ = [
    "BatchConfig",
    "BatchJobEngine",
    "CancelToken",
    "CoreRuntime",
    "GenerationParams",
    "GenerationResult",
    "InMemoryStore",
    "InvalidTransitionError",
    "JobNotFoundError",
    "JobProgressEvent",
    "ListenerSet",
    "MediaJob",
    "MediaJobItem",
    "PermissionConflictError",
    "PermissionCorrelator",
    "PermissionDecision",
    "PermissionRequest",
    "RuntimeConfig",
    "SessionStreamReconciler",
    "SessionStreamSnapshot",
    "SessionflowError",
    "SnapshotEvent",
    "StoreError",
    "Store",
    "StreamAlreadyActiveError",
    "StreamPhase",
    "StreamRegistry",
    "__version__",
]

__version__ = "0.1.0"
