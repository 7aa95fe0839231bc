"""Correlates in-flight permission requests with asynchronous user decisions."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Literal

from pydantic import BaseModel

from sessionflow.cancel import CancelToken
from sessionflow.errors import PermissionConflictError

from .decoder import format_frame
from .models import PermissionRequest, PermissionSuggestion

if TYPE_CHECKING:
    from sessionflow.store import PermissionStatus, SessionStore

logger = logging.getLogger("sessionflow.permissions")

DENIED_MESSAGE = "User denied permission"
ABORTED_MESSAGE = "Request aborted"

DecisionChoice = Literal["allow", "allow_session", "deny"]


class PermissionDecision(BaseModel):
    """Payload handed back to the producer that asked for permission."""

    behavior: Literal["allow", "deny"]
    updated_permissions: list[PermissionSuggestion] | None = None
    updated_input: dict[str, Any] | None = None
    message: str | None = None

    @classmethod
    def allow(
        cls,
        *,
        updated_input: dict[str, Any] | None = None,
        updated_permissions: list[PermissionSuggestion] | None = None,
    ) -> PermissionDecision:
        return cls(behavior="allow", updated_input=updated_input, updated_permissions=updated_permissions)

    @classmethod
    def deny(cls, message: str = DENIED_MESSAGE) -> PermissionDecision:
        return cls(behavior="deny", message=message)

    @classmethod
    def from_choice(
        cls,
        choice: DecisionChoice,
        request: PermissionRequest,
        *,
        updated_input: dict[str, Any] | None = None,
    ) -> PermissionDecision:
        if choice == "deny":
            return cls.deny()
        permissions = request.suggestions if choice == "allow_session" else None
        return cls.allow(updated_input=updated_input, updated_permissions=permissions)


def format_permission_request(request: PermissionRequest) -> str:
    """Wire frame announcing ``request`` to stream consumers."""
    return format_frame(
        "permission_request",
        request.model_dump_json(by_alias=True, exclude_none=True),
    )


@dataclass(slots=True)
class _Waiter:
    session_id: str
    request: PermissionRequest
    future: asyncio.Future[PermissionDecision]
    created_at: float = field(default_factory=time.time)
    detach: Callable[[], None] | None = None


ResolvedHook = Callable[[str, str, Literal["allow", "deny"]], None]


class PermissionCorrelator:
    """Holds at most one outstanding ``correlation id -> waiter`` pair per session.

    There is no built-in timeout: an unanswered request blocks its producer
    until a decision arrives or the session is cancelled.
    """

    def __init__(
        self,
        *,
        store: SessionStore | None = None,
        on_resolved: ResolvedHook | None = None,
    ) -> None:
        self._store = store
        self._on_resolved = on_resolved
        self._by_session: dict[str, _Waiter] = {}
        self._by_id: dict[str, str] = {}
        self._background: set[asyncio.Task[None]] = set()

    def set_resolved_hook(self, hook: ResolvedHook | None) -> None:
        self._on_resolved = hook

    def pending_for(self, session_id: str) -> PermissionRequest | None:
        waiter = self._by_session.get(session_id)
        return waiter.request if waiter is not None else None

    def open_request(
        self,
        session_id: str,
        request: PermissionRequest,
        *,
        cancel_token: CancelToken | None = None,
    ) -> asyncio.Future[PermissionDecision]:
        """Register a waiter synchronously and return the future carrying the decision.

        Producers should open the request before emitting the
        ``permission_request`` frame so a fast decision can never miss it.
        """
        existing = self._by_session.get(session_id)
        if existing is not None:
            logger.warning(
                "permission_conflict",
                extra={
                    "session_id": session_id,
                    "pending_id": existing.request.permission_request_id,
                    "rejected_id": request.permission_request_id,
                },
            )
            raise PermissionConflictError(session_id, existing.request.permission_request_id)
        correlation_id = request.permission_request_id
        future: asyncio.Future[PermissionDecision] = asyncio.get_running_loop().create_future()
        waiter = _Waiter(session_id=session_id, request=request, future=future)
        self._by_session[session_id] = waiter
        self._by_id[correlation_id] = session_id
        if cancel_token is not None:
            waiter.detach = cancel_token.add_callback(
                lambda _reason: self._abort(correlation_id, ABORTED_MESSAGE)
            )
        future.add_done_callback(lambda fut: self._on_future_done(correlation_id, fut))
        self._spawn(self._persist_request(session_id, request))
        return future

    async def request_permission(
        self,
        session_id: str,
        request: PermissionRequest,
        *,
        cancel_token: CancelToken | None = None,
    ) -> PermissionDecision:
        return await self.open_request(session_id, request, cancel_token=cancel_token)

    async def resolve_permission(
        self,
        correlation_id: str,
        decision: PermissionDecision | DecisionChoice,
        *,
        updated_input: dict[str, Any] | None = None,
    ) -> bool:
        """Deliver a decision. Unknown or already-resolved ids are a benign miss."""
        waiter = self._pop(correlation_id)
        if waiter is None:
            logger.info("permission_decision_missed", extra={"correlation_id": correlation_id})
            return False
        if isinstance(decision, str):
            decision = PermissionDecision.from_choice(decision, waiter.request, updated_input=updated_input)
        if decision.behavior == "allow" and decision.updated_input is None:
            decision = decision.model_copy(update={"updated_input": dict(waiter.request.tool_input)})
        await self._persist_resolution(
            correlation_id,
            decision.behavior,
            decision.model_dump(mode="json", exclude_none=True, exclude={"behavior"}),
        )
        if not waiter.future.done():
            waiter.future.set_result(decision)
        if self._on_resolved is not None:
            try:
                self._on_resolved(waiter.session_id, correlation_id, decision.behavior)
            except Exception:
                logger.exception(
                    "permission_resolved_hook_failed",
                    extra={"session_id": waiter.session_id, "correlation_id": correlation_id},
                )
        logger.debug(
            "permission_resolved",
            extra={"session_id": waiter.session_id, "correlation_id": correlation_id, "behavior": decision.behavior},
        )
        return True

    def cancel_session(self, session_id: str, message: str = ABORTED_MESSAGE) -> bool:
        """Deny the outstanding request of ``session_id``, if any."""
        waiter = self._by_session.get(session_id)
        if waiter is None:
            return False
        return self._abort(waiter.request.permission_request_id, message)

    def cancel_all(self, message: str = ABORTED_MESSAGE) -> int:
        return sum(1 for session_id in list(self._by_session) if self.cancel_session(session_id, message))

    def _abort(self, correlation_id: str, message: str) -> bool:
        waiter = self._pop(correlation_id)
        if waiter is None:
            return False
        if not waiter.future.done():
            waiter.future.set_result(PermissionDecision.deny(message))
        self._spawn(self._persist_resolution(correlation_id, "aborted", {"message": message}))
        logger.info("permission_aborted", extra={"session_id": waiter.session_id, "correlation_id": correlation_id})
        return True

    def _pop(self, correlation_id: str) -> _Waiter | None:
        session_id = self._by_id.pop(correlation_id, None)
        if session_id is None:
            return None
        waiter = self._by_session.get(session_id)
        if waiter is None or waiter.request.permission_request_id != correlation_id:
            return None
        del self._by_session[session_id]
        if waiter.detach is not None:
            waiter.detach()
        return waiter

    def _on_future_done(self, correlation_id: str, future: asyncio.Future[PermissionDecision]) -> None:
        # The awaiting producer went away without a decision.
        if future.cancelled() and self._pop(correlation_id) is not None:
            self._spawn(self._persist_resolution(correlation_id, "aborted", {"message": ABORTED_MESSAGE}))

    def _spawn(self, coro: Any) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _persist_request(self, session_id: str, request: PermissionRequest) -> None:
        if self._store is None:
            return
        try:
            await self._store.save_permission_request(session_id, request)
        except Exception:
            logger.exception(
                "permission_persist_failed",
                extra={"session_id": session_id, "correlation_id": request.permission_request_id},
            )

    async def _persist_resolution(
        self,
        correlation_id: str,
        status: PermissionStatus,
        resolution: dict[str, Any],
    ) -> None:
        if self._store is None:
            return
        try:
            await self._store.resolve_permission_request(correlation_id, status, resolution)
        except Exception:
            logger.exception("permission_persist_failed", extra={"correlation_id": correlation_id})


__all__ = [
    "ABORTED_MESSAGE",
    "DENIED_MESSAGE",
    "DecisionChoice",
    "PermissionCorrelator",
    "PermissionDecision",
    "format_permission_request",
]
