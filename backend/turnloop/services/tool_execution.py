"""Tool Execution Engine — runs one assistant message's tool calls, in order.

Invariants:
    - Strictly sequential, source order; never concurrent
    - Every executed call yields exactly one ToolMessage with one tool-result block
    - Tool failures never raise: missing tool, missing execute, a raised error or
      cancellation all become an error result with is_error=True
    - tool_execution_end is always emitted, with the same is_error as the result
    - A non-empty steering poll after a result stops the batch; the remaining
      calls are left unexecuted

Design Decisions:
    - is_error threaded to both the event and the ToolResultContent: the
      backend adapter forwards it to the provider
    - Steering provider polled once per executed call, never before the first
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from turnloop.core.backend_protocols import CancellationLike, MessagesProvider
from turnloop.core.errors import RunCancelledError
from turnloop.core.events import (
    ToolExecutionEnd, ToolExecutionStart, ToolExecutionUpdate, message_pair,
)
from turnloop.core.messages import ToolCallContent, ToolMessage, tool_result_message
from turnloop.infrastructure.cancellation import race
from turnloop.services.tool_registry import ToolRegistry

logger = logging.getLogger(__name__)


@dataclass
class ToolExecutionOutcome:
    tool_results: list[ToolMessage] = field(default_factory=list)
    steering_messages: list = field(default_factory=list)


async def execute_tool_calls(
    tool_calls: list[ToolCallContent],
    registry: ToolRegistry | None,
    emit: Callable[[Any], None],
    cancel: CancellationLike | None = None,
    get_steering_messages: MessagesProvider | None = None,
) -> ToolExecutionOutcome:
    """Execute calls one by one; stop early if steering messages arrive."""
    outcome = ToolExecutionOutcome()

    for index, call in enumerate(tool_calls):
        emit(ToolExecutionStart(
            tool_call_id=call.id, tool_name=call.name, args=call.args,
        ))
        result, is_error = await _execute_one(call, registry, emit, cancel)
        emit(ToolExecutionEnd(
            tool_call_id=call.id, tool_name=call.name, args=call.args,
            result=result, is_error=is_error,
        ))

        message = tool_result_message(call.id, call.name, result, is_error)
        outcome.tool_results.append(message)
        for event in message_pair(message):
            emit(event)

        if get_steering_messages is None:
            continue
        steering = await get_steering_messages()
        if steering:
            skipped = len(tool_calls) - index - 1
            logger.info(
                "Steering interrupt, %d tool call(s) left unexecuted", skipped,
                extra={"tool_call_id": call.id},
            )
            outcome.steering_messages = list(steering)
            break

    return outcome


async def _execute_one(call, registry, emit, cancel) -> tuple[Any, bool]:
    """Returns (result, is_error)."""
    tool = registry.get(call.name) if registry is not None else None
    if tool is None:
        return f"Tool {call.name} not found", True
    if tool.execute is None:
        return f"Tool {call.name} has no execute function", True

    def on_update(partial_result: Any) -> None:
        emit(ToolExecutionUpdate(
            tool_call_id=call.id, tool_name=call.name, args=call.args,
            partial_result=partial_result,
        ))

    try:
        result = await race(tool.execute(call.id, call.args, cancel, on_update), cancel)
    except RunCancelledError as e:
        return e.message, True
    except Exception as e:
        logger.warning(
            "Tool raised: %s", e,
            extra={"tool_name": call.name, "tool_call_id": call.id},
        )
        return str(e) or type(e).__name__, True
    return result, False
