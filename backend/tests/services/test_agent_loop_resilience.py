"""Agent Turn Loop resilience — fatal sentinel, steering, follow-ups, cancellation.

Invariants:
    - A backend failure ends the run: turn_end then agent_end, one model call
    - Steering after a tool result leaves the rest of the batch unexecuted
    - Follow-ups restart the loop after it would have stopped
    - Cancellation turns an in-flight tool into a "Run cancelled" error result
      and the next model call into an aborted sentinel; agent_end still fires
    - A raising collaborator fails the channel with its exception
    - Every message_start has exactly one later message_end for the same object
"""

import asyncio

import pytest

from turnloop.core.domain_types import FATAL_TIMESTAMP, StopReason
from turnloop.core.errors import RunCancelledError
from turnloop.core.messages import user_text
from turnloop.infrastructure.cancellation import CancellationToken
from turnloop.services.agent_loop import AgentContext, AgentLoopConfig, agent_loop
from turnloop.services.tool_registry import ToolRegistry

from tests.services.mock_backend import (
    ScriptedBackend, blocking_tool, collect, error_reply, hanging_reply,
    raising_reply, recording_tool, text_reply, tool_reply, types_of,
)


def _config(*responses, **kwargs) -> AgentLoopConfig:
    return AgentLoopConfig(backend=ScriptedBackend(responses), **kwargs)


def _once(messages):
    """Provider returning `messages` on its first call, then nothing."""
    pending = [list(messages)]

    async def provider():
        return pending.pop() if pending else []

    return provider


def _assert_starts_paired_with_ends(events):
    """Each message_start has exactly one later message_end for the same object."""
    open_messages = []
    for event in events:
        if event.type == "message_start":
            assert not any(m is event.message for m in open_messages)
            open_messages.append(event.message)
        elif event.type == "message_end":
            matches = [i for i, m in enumerate(open_messages) if m is event.message]
            assert len(matches) == 1
            del open_messages[matches[0]]
    assert open_messages == []


# ==============================================================================
# Fatal sentinel
# ==============================================================================


async def test_backend_raise_ends_run_after_one_call():
    context = AgentContext()
    config = _config(raising_reply(RuntimeError("boom")), text_reply("unused"))
    channel = agent_loop([user_text("hi")], context, config)
    events = await collect(channel)

    assert types_of(events)[-2:] == ["turn_end", "agent_end"]
    assert len(config.backend.requests) == 1
    turn_end = events[-2]
    assert turn_end.tool_results == []
    assert turn_end.message.timestamp == FATAL_TIMESTAMP
    assert turn_end.message.error_message == "boom"
    produced = await channel.result()
    assert produced[-1] is turn_end.message


async def test_error_event_skips_follow_up_poll():
    polls = []

    async def follow_ups():
        polls.append(True)
        return [user_text("more")]

    config = _config(
        error_reply("overloaded"), get_follow_up_messages=follow_ups,
    )
    events = await collect(agent_loop([user_text("hi")], AgentContext(), config))
    assert types_of(events)[-2:] == ["turn_end", "agent_end"]
    assert polls == []
    assert events[-1].messages[-1].stop_reason == StopReason.ERROR


async def test_fatal_after_tool_turn_keeps_tool_results_in_transcript():
    context = AgentContext(tools=ToolRegistry([recording_tool("t", [])]))
    config = _config(tool_reply(("c1", "t", {})), error_reply())
    events = await collect(agent_loop([user_text("go")], context, config))
    assert [m.role for m in context.messages] == ["user", "assistant", "tool", "assistant"]
    assert context.messages[-1].timestamp == FATAL_TIMESTAMP
    assert types_of(events).count("turn_end") == 2


# ==============================================================================
# Steering and follow-ups
# ==============================================================================


async def test_steering_interrupts_tool_batch():
    log = []
    steer = user_text("stop and summarize")
    delivered = []

    async def get_steering():
        if len(log) == 1 and not delivered:
            delivered.append(True)
            return [steer]
        return []

    context = AgentContext(tools=ToolRegistry([recording_tool("t", log)]))
    config = _config(
        tool_reply(("c1", "t", {"i": 1}), ("c2", "t", {"i": 2}), ("c3", "t", {"i": 3})),
        text_reply("summary"),
        get_steering_messages=get_steering,
    )
    events = await collect(agent_loop([user_text("go")], context, config))

    assert log == [("t", {"i": 1})]
    assert types_of(events).count("tool_execution_start") == 1
    assert [m.role for m in context.messages] == [
        "user", "assistant", "tool", "user", "assistant",
    ]
    assert context.messages[3] is steer
    second_request = config.backend.requests[1]
    assert second_request.messages[-1] is steer
    assert types_of(events)[-1] == "agent_end"


async def test_steering_before_first_call_is_committed():
    steer = user_text("also consider this")
    config = _config(text_reply("ok"), get_steering_messages=_once([steer]))
    context = AgentContext()
    await collect(agent_loop([user_text("hi")], context, config))
    assert config.backend.requests[0].messages[-1] is steer
    assert len(config.backend.requests) == 1


async def test_follow_ups_restart_loop():
    more = user_text("one more thing")
    config = _config(
        text_reply("first"), text_reply("second"),
        get_follow_up_messages=_once([more]),
    )
    channel = agent_loop([user_text("hi")], AgentContext(), config)
    events = await collect(channel)

    assert len(config.backend.requests) == 2
    assert types_of(events).count("turn_start") == 2
    produced = await channel.result()
    assert [m.role for m in produced] == ["user", "assistant", "user", "assistant"]
    assert produced[2] is more


# ==============================================================================
# Cancellation
# ==============================================================================


async def test_cancel_during_tool_execution():
    started = asyncio.Event()
    token = CancellationToken()
    context = AgentContext(tools=ToolRegistry([blocking_tool("wait", started)]))
    config = _config(tool_reply(("c1", "wait", {})), text_reply("unused"))

    channel = agent_loop([user_text("go")], context, config, token)
    consumer = asyncio.create_task(collect(channel))
    await asyncio.wait_for(started.wait(), timeout=2)
    token.cancel()
    events = await asyncio.wait_for(consumer, timeout=2)

    end = [e for e in events if e.type == "tool_execution_end"][0]
    assert end.result == "Run cancelled"
    assert end.is_error
    assert len(config.backend.requests) == 1
    assert context.messages[-1].stop_reason == StopReason.ABORTED
    assert types_of(events)[-2:] == ["turn_end", "agent_end"]


async def test_cancel_during_model_stream():
    token = CancellationToken()
    channel = agent_loop(
        [user_text("hi")], AgentContext(), _config(hanging_reply()), token,
    )
    events = []

    async def consume():
        async for event in channel:
            events.append(event)
            if event.type == "message_update":
                token.cancel()

    await asyncio.wait_for(consume(), timeout=2)
    assert types_of(events)[-3:] == ["message_end", "turn_end", "agent_end"]
    sentinel = events[-1].messages[-1]
    assert sentinel.stop_reason == StopReason.ABORTED
    assert sentinel.content == []


async def test_task_cancellation_fails_channel():
    context = AgentContext()
    channel = agent_loop([user_text("hi")], context, _config(hanging_reply()))
    await asyncio.sleep(0.01)
    channel.task.cancel()
    with pytest.raises(RunCancelledError):
        await asyncio.wait_for(collect(channel), timeout=2)
    with pytest.raises(RunCancelledError):
        await channel.result()
    assert not context.busy


# ==============================================================================
# Collaborator failures
# ==============================================================================


async def test_raising_steering_provider_fails_channel():
    async def get_steering():
        raise ValueError("queue unavailable")

    context = AgentContext()
    channel = agent_loop(
        [user_text("hi")], context,
        _config(text_reply("unused"), get_steering_messages=get_steering),
    )
    with pytest.raises(ValueError, match="queue unavailable"):
        await collect(channel)
    with pytest.raises(ValueError):
        await channel.result()
    await channel.task
    assert not context.busy


async def test_missing_tool_result_continues_run():
    config = _config(tool_reply(("c1", "ghost", {})), text_reply("recovered"))
    context = AgentContext()
    events = await collect(agent_loop([user_text("go")], context, config))
    end = [e for e in events if e.type == "tool_execution_end"][0]
    assert end.result == "Tool ghost not found"
    assert end.is_error
    assert context.messages[-1].content[0].text == "recovered"


async def test_raising_transform_context_fails_channel():
    async def transform(messages, cancel):
        raise ValueError("bad transform")

    context = AgentContext()
    channel = agent_loop(
        [user_text("hi")], context,
        _config(text_reply("unused"), transform_context=transform),
    )
    with pytest.raises(ValueError, match="bad transform"):
        await collect(channel)
    assert channel.closed
    await channel.task
    assert not context.busy


# ==============================================================================
# Event pairing
# ==============================================================================


async def test_message_events_pair_across_tool_steering_and_fatal_turns():
    log = []
    delivered = []

    async def get_steering():
        if len(log) == 1 and not delivered:
            delivered.append(True)
            return [user_text("change of plan")]
        return []

    context = AgentContext(tools=ToolRegistry([recording_tool("t", log)]))
    config = _config(
        tool_reply(("c1", "t", {"i": 1}), ("c2", "t", {"i": 2})),
        error_reply("overloaded"),
        get_steering_messages=get_steering,
    )
    events = await collect(agent_loop([user_text("go")], context, config))

    _assert_starts_paired_with_ends(events)
    starts = [e.message for e in events if e.type == "message_start"]
    assert [m.role for m in starts] == ["user", "assistant", "tool", "user", "assistant"]
    assert starts[-1].timestamp == FATAL_TIMESTAMP
    assert log == [("t", {"i": 1})]
    assert types_of(events)[-2:] == ["turn_end", "agent_end"]
