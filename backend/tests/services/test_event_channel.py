"""Event Channel + Cancellation Token tests.

Invariants:
    - result() resolves on the terminal push, with or without consumption
    - Iteration yields push order and stops after the terminal event
    - Any push after the terminal event raises EventChannelClosedError
    - fail(exc): buffered events first, then exc; result() raises exc
    - race(): returns the work's value, or RunCancelledError when the token fires
"""

import asyncio

import pytest

from turnloop.core.errors import EventChannelClosedError, RunCancelledError
from turnloop.infrastructure.cancellation import CancellationToken, race
from turnloop.infrastructure.event_channel import EventChannel


class _Ev:
    def __init__(self, type, payload=None):
        self.type = type
        self.payload = payload


def _channel() -> EventChannel:
    return EventChannel(lambda e: e.type == "end", lambda e: e.payload)


# ==============================================================================
# EventChannel
# ==============================================================================


async def test_result_resolves_without_consumption():
    channel = _channel()
    channel.push(_Ev("a"))
    channel.push(_Ev("end", ["done"]))
    assert await asyncio.wait_for(channel.result(), timeout=1) == ["done"]


async def test_iteration_yields_in_order_and_stops_after_terminal():
    channel = _channel()
    for t in ("a", "b", "end"):
        channel.push(_Ev(t))
    assert [e.type async for e in channel] == ["a", "b", "end"]


async def test_push_after_terminal_raises():
    channel = _channel()
    channel.push(_Ev("end"))
    with pytest.raises(EventChannelClosedError):
        channel.push(_Ev("end"))
    with pytest.raises(EventChannelClosedError):
        channel.push(_Ev("late"))


async def test_consumer_sees_events_pushed_later():
    channel = _channel()

    async def produce():
        await asyncio.sleep(0)
        channel.push(_Ev("a"))
        await asyncio.sleep(0)
        channel.push(_Ev("end", 1))

    task = asyncio.create_task(produce())
    channel.attach(task)
    seen = [e.type async for e in channel]
    assert seen == ["a", "end"]
    assert channel.task is task


async def test_fail_raises_after_buffered_events():
    channel = _channel()
    channel.push(_Ev("a"))
    channel.fail(ValueError("collaborator broke"))
    seen = []
    with pytest.raises(ValueError, match="collaborator broke"):
        async for e in channel:
            seen.append(e.type)
    assert seen == ["a"]
    with pytest.raises(ValueError):
        await channel.result()
    assert channel.closed


async def test_fail_after_terminal_is_ignored():
    channel = _channel()
    channel.push(_Ev("end", 7))
    channel.fail(RuntimeError("late"))
    assert await channel.result() == 7


# ==============================================================================
# CancellationToken
# ==============================================================================


async def test_race_returns_value():
    token = CancellationToken()

    async def work():
        return 42

    assert await token.race(work()) == 42


async def test_race_cancels_inner_work_when_token_fires():
    token = CancellationToken()
    inner_cancelled = asyncio.Event()

    async def work():
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            inner_cancelled.set()
            raise

    async def fire():
        await asyncio.sleep(0)
        token.cancel()

    asyncio.create_task(fire())
    with pytest.raises(RunCancelledError):
        await token.race(work())
    assert inner_cancelled.is_set()


async def test_race_on_cancelled_token_never_starts_work():
    token = CancellationToken()
    token.cancel()
    started = []

    async def work():
        started.append(True)

    with pytest.raises(RunCancelledError):
        await token.race(work())
    assert started == []


async def test_race_propagates_work_errors():
    async def work():
        raise KeyError("inner")

    with pytest.raises(KeyError):
        await CancellationToken().race(work())


async def test_module_race_without_token():
    async def work():
        return "ok"

    assert await race(work(), None) == "ok"


async def test_cancel_is_idempotent():
    token = CancellationToken()
    token.cancel()
    token.cancel()
    assert token.cancelled
    await asyncio.wait_for(token.wait(), timeout=1)
