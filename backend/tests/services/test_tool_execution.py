"""Tool Execution Engine + Tool Registry tests.

Invariants:
    - Calls run sequentially in source order, one ToolMessage each
    - Missing tool / missing execute / raised error → error result, is_error=True
    - on_update emits tool_execution_update
    - Non-empty steering poll stops the batch after the current call
    - Registry rejects duplicate names
"""

import pytest

from turnloop.core.errors import DuplicateToolError
from turnloop.core.messages import ToolCallContent, user_text
from turnloop.services.tool_execution import execute_tool_calls
from turnloop.services.tool_registry import Tool, ToolRegistry

from tests.services.mock_backend import recording_tool


def _call(cid, name, **args) -> ToolCallContent:
    return ToolCallContent(id=cid, name=name, args=args)


def _types(events):
    return [e.type for e in events]


# ==============================================================================
# Registry
# ==============================================================================


def test_registry_rejects_duplicate_names():
    registry = ToolRegistry([Tool(name="read")])
    with pytest.raises(DuplicateToolError):
        registry.register(Tool(name="read"))


def test_registry_lookup_and_schemas():
    registry = ToolRegistry([
        Tool(name="read", description="Read", parameters={"type": "object"}),
        Tool(name="write"),
    ])
    assert "read" in registry
    assert "grep" not in registry
    assert registry.get("grep") is None
    assert [t.name for t in registry] == ["read", "write"]
    assert len(registry) == 2
    schemas = registry.schemas()
    assert schemas[0].description == "Read"
    assert schemas[1].parameters == {"type": "object", "properties": {}}


# ==============================================================================
# Execution
# ==============================================================================


async def test_calls_execute_sequentially_in_order():
    log = []
    registry = ToolRegistry([recording_tool("a", log), recording_tool("b", log)])
    events = []
    outcome = await execute_tool_calls(
        [_call("1", "b", n=1), _call("2", "a", n=2), _call("3", "b", n=3)],
        registry, events.append,
    )
    assert log == [("b", {"n": 1}), ("a", {"n": 2}), ("b", {"n": 3})]
    assert [m.content[0].tool_call_id for m in outcome.tool_results] == ["1", "2", "3"]
    assert outcome.tool_results[0].content[0].result == {"n": 1}
    assert outcome.steering_messages == []
    assert _types(events)[:4] == [
        "tool_execution_start", "tool_execution_end", "message_start", "message_end",
    ]


async def test_missing_tool_yields_error_result():
    events = []
    outcome = await execute_tool_calls(
        [_call("1", "nope")], ToolRegistry(), events.append,
    )
    block = outcome.tool_results[0].content[0]
    assert block.result == "Tool nope not found"
    assert block.is_error
    end = [e for e in events if e.type == "tool_execution_end"][0]
    assert end.is_error
    assert end.result == "Tool nope not found"


async def test_no_registry_yields_error_result():
    outcome = await execute_tool_calls([_call("1", "read")], None, lambda e: None)
    assert outcome.tool_results[0].content[0].result == "Tool read not found"


async def test_tool_without_execute_yields_error_result():
    outcome = await execute_tool_calls(
        [_call("1", "stub")], ToolRegistry([Tool(name="stub")]), lambda e: None,
    )
    block = outcome.tool_results[0].content[0]
    assert block.result == "Tool stub has no execute function"
    assert block.is_error


async def test_raised_error_message_becomes_result():
    log = []
    registry = ToolRegistry([
        recording_tool("boom", log, raises=ValueError("disk full")),
        recording_tool("ok", log),
    ])
    outcome = await execute_tool_calls(
        [_call("1", "boom"), _call("2", "ok")], registry, lambda e: None,
    )
    first, second = (m.content[0] for m in outcome.tool_results)
    assert first.result == "disk full"
    assert first.is_error
    assert not second.is_error
    assert len(log) == 2


async def test_on_update_emits_partial_results():
    registry = ToolRegistry([recording_tool("slow", [], updates=("10%", "90%"))])
    events = []
    await execute_tool_calls([_call("1", "slow")], registry, events.append)
    updates = [e for e in events if e.type == "tool_execution_update"]
    assert [u.partial_result for u in updates] == ["10%", "90%"]
    assert _types(events).index("tool_execution_update") < _types(events).index(
        "tool_execution_end",
    )


async def test_steering_stops_remaining_calls():
    log = []
    registry = ToolRegistry([recording_tool("t", log)])
    steering = user_text("stop, do something else")
    polls = []

    async def get_steering():
        polls.append(len(log))
        return [steering] if len(log) == 1 else []

    outcome = await execute_tool_calls(
        [_call("1", "t"), _call("2", "t"), _call("3", "t")],
        registry, lambda e: None, get_steering_messages=get_steering,
    )
    assert len(outcome.tool_results) == 1
    assert outcome.steering_messages == [steering]
    assert log == [("t", {})]
    assert polls == [1]


async def test_steering_polled_after_every_result():
    registry = ToolRegistry([recording_tool("t", [])])
    polls = []

    async def get_steering():
        polls.append(True)
        return []

    outcome = await execute_tool_calls(
        [_call("1", "t"), _call("2", "t")], registry, lambda e: None,
        get_steering_messages=get_steering,
    )
    assert len(outcome.tool_results) == 2
    assert len(polls) == 2
