"""Exception types raised by the sessionflow runtime."""

from __future__ import annotations


class SessionflowError(RuntimeError):
    """Base class for runtime errors."""


class StreamAlreadyActiveError(SessionflowError):
    """Raised when a second live stream is registered for one session."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"stream_already_active: {session_id}")
        self.session_id = session_id


class PermissionConflictError(SessionflowError):
    """Raised when a session already has an outstanding permission request."""

    def __init__(self, session_id: str, pending_id: str) -> None:
        super().__init__(f"permission_already_pending: {session_id} ({pending_id})")
        self.session_id = session_id
        self.pending_id = pending_id


class InvalidTransitionError(SessionflowError):
    """Raised on an illegal job or job item status transition."""

    def __init__(self, entity: str, current: str, target: str) -> None:
        super().__init__(f"invalid_transition: {entity} {current} -> {target}")
        self.entity = entity
        self.current = current
        self.target = target


class JobNotFoundError(SessionflowError, KeyError):
    """Raised when a job id is not known to the engine."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"job_not_found: {job_id}")
        self.job_id = job_id

    def __str__(self) -> str:
        return f"job_not_found: {self.job_id}"


class StoreError(SessionflowError):
    """Raised by store implementations when a write or read fails."""


__all__ = [
    "InvalidTransitionError",
    "JobNotFoundError",
    "PermissionConflictError",
    "SessionflowError",
    "StoreError",
    "StreamAlreadyActiveError",
]
