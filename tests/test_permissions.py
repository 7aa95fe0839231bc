from __future__ import annotations

import asyncio

import pytest

from sessionflow.cancel import CancelToken
from sessionflow.errors import PermissionConflictError
from sessionflow.store import InMemoryStore
from sessionflow.streams.models import PermissionRequest, PermissionSuggestion
from sessionflow.streams.permissions import (
    ABORTED_MESSAGE,
    DENIED_MESSAGE,
    PermissionCorrelator,
    PermissionDecision,
    format_permission_request,
)


def _request(request_id: str = "p1", **extra) -> PermissionRequest:
    return PermissionRequest(
        permission_request_id=request_id,
        tool_name="Bash",
        tool_input={"command": "ls"},
        **extra,
    )


async def _settle() -> None:
    for _ in range(3):
        await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_allow_unblocks_waiter_with_original_input() -> None:
    store = InMemoryStore()
    correlator = PermissionCorrelator(store=store)
    waiter = asyncio.create_task(correlator.request_permission("s1", _request()))
    await _settle()

    assert correlator.pending_for("s1") is not None
    assert await correlator.resolve_permission("p1", "allow") is True

    decision = await waiter
    assert decision.behavior == "allow"
    assert decision.updated_input == {"command": "ls"}
    assert correlator.pending_for("s1") is None
    record = await store.get_permission_request("p1")
    assert record is not None and record.status == "allow"


@pytest.mark.asyncio
async def test_allow_session_grants_suggestions() -> None:
    suggestion = PermissionSuggestion(type="addRules", behavior="allow", destination="session")
    correlator = PermissionCorrelator()
    future = correlator.open_request("s1", _request(suggestions=[suggestion]))

    await correlator.resolve_permission("p1", "allow_session")

    decision = future.result()
    assert decision.updated_permissions == [suggestion]


@pytest.mark.asyncio
async def test_deny_carries_user_message() -> None:
    correlator = PermissionCorrelator()
    future = correlator.open_request("s1", _request())

    await correlator.resolve_permission("p1", PermissionDecision.deny())

    assert future.result() == PermissionDecision(behavior="deny", message=DENIED_MESSAGE)


@pytest.mark.asyncio
async def test_unknown_or_repeated_decision_is_benign_miss() -> None:
    correlator = PermissionCorrelator()
    correlator.open_request("s1", _request())

    assert await correlator.resolve_permission("nope", "allow") is False
    assert await correlator.resolve_permission("p1", "deny") is True
    assert await correlator.resolve_permission("p1", "allow") is False


@pytest.mark.asyncio
async def test_one_outstanding_request_per_session() -> None:
    correlator = PermissionCorrelator()
    correlator.open_request("s1", _request("p1"))

    with pytest.raises(PermissionConflictError) as excinfo:
        correlator.open_request("s1", _request("p2"))

    assert excinfo.value.pending_id == "p1"
    other = correlator.open_request("s2", _request("p3"))
    assert not other.done()


@pytest.mark.asyncio
async def test_cancel_token_aborts_waiter() -> None:
    store = InMemoryStore()
    correlator = PermissionCorrelator(store=store)
    token = CancelToken()
    future = correlator.open_request("s1", _request(), cancel_token=token)

    token.cancel("user")
    await _settle()

    assert future.result() == PermissionDecision.deny(ABORTED_MESSAGE)
    record = await store.get_permission_request("p1")
    assert record is not None and record.status == "aborted"
    assert await correlator.resolve_permission("p1", "allow") is False


@pytest.mark.asyncio
async def test_cancel_session_denies_pending_request() -> None:
    correlator = PermissionCorrelator()
    future = correlator.open_request("s1", _request())

    assert correlator.cancel_session("s1") is True
    assert correlator.cancel_session("s1") is False
    assert future.result().message == ABORTED_MESSAGE


@pytest.mark.asyncio
async def test_resolved_hook_receives_session_and_behavior() -> None:
    calls: list[tuple[str, str, str]] = []
    correlator = PermissionCorrelator(on_resolved=lambda *args: calls.append(args))
    correlator.open_request("s1", _request())

    await correlator.resolve_permission("p1", "deny")

    assert calls == [("s1", "p1", "deny")]


@pytest.mark.asyncio
async def test_store_failure_does_not_block_resolution() -> None:
    class BrokenStore(InMemoryStore):
        async def save_permission_request(self, session_id, request):
            raise OSError("disk full")

        async def resolve_permission_request(self, permission_request_id, status, resolution=None):
            raise OSError("disk full")

    correlator = PermissionCorrelator(store=BrokenStore())
    future = correlator.open_request("s1", _request())
    await _settle()

    assert await correlator.resolve_permission("p1", "allow") is True
    assert future.result().behavior == "allow"


def test_permission_request_frame_uses_wire_names() -> None:
    frame = format_permission_request(_request(decision_reason="outside workspace"))

    assert '\\"permissionRequestId\\":\\"p1\\"' in frame
    assert "decisionReason" in frame
