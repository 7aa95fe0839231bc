from __future__ import annotations

import asyncio

import pytest

from sessionflow.cancel import CancelToken
from sessionflow.observers import ListenerSet, queue_listener


def test_listener_set_isolates_failures_and_keeps_order() -> None:
    received: list[str] = []
    listeners: ListenerSet[int] = ListenerSet("numbers")
    listeners.add(lambda value: received.append(f"a{value}"))
    listeners.add(lambda value: 1 / 0)
    listeners.add(lambda value: received.append(f"c{value}"))

    listeners.notify(1)

    assert received == ["a1", "c1"]


def test_on_empty_fires_once_when_last_listener_leaves() -> None:
    emptied: list[bool] = []
    listeners: ListenerSet[int] = ListenerSet(on_empty=lambda: emptied.append(True))
    first = listeners.add(lambda _value: None)
    second = listeners.add(lambda _value: None)

    first()
    first()
    assert emptied == []
    second()
    assert emptied == [True]
    assert len(listeners) == 0


def test_same_callable_subscribed_twice_is_removed_one_at_a_time() -> None:
    received: list[int] = []
    listeners: ListenerSet[int] = ListenerSet()
    unsubscribe = listeners.add(received.append)
    listeners.add(received.append)

    unsubscribe()
    listeners.notify(7)

    assert received == [7]


@pytest.mark.asyncio
async def test_queue_listener_evicts_oldest_for_critical_values() -> None:
    queue: asyncio.Queue[str] = asyncio.Queue(maxsize=2)
    listener = queue_listener(queue, is_critical=lambda value: value.startswith("!"))

    for value in ("a", "b", "c", "!end"):
        listener(value)

    assert [queue.get_nowait(), queue.get_nowait()] == ["b", "!end"]


@pytest.mark.asyncio
async def test_cancel_token_runs_callbacks_once() -> None:
    token = CancelToken()
    reasons: list[str | None] = []
    remove = token.add_callback(reasons.append)
    token.add_callback(lambda reason: reasons.append(f"second:{reason}"))
    remove()

    assert token.cancel("user") is True
    assert token.cancel("again") is False
    assert await token.wait() == "user"
    assert reasons == ["second:user"]

    token.add_callback(reasons.append)
    assert reasons == ["second:user", "user"]
