"""Agent Turn Loop — the state machine that composes one run.

Invariants:
    - The feed starts with agent_start and ends with exactly one agent_end,
      unless a collaborator raises: then the channel fails with that exception
    - agent_end.messages holds only messages produced by this invocation
    - The fatal sentinel ends the run at once: turn_end (no tool results),
      then agent_end; no further model calls, tools or follow-up polls
    - Continue on an empty transcript raises EmptyTranscriptError before any
      task is scheduled
    - A context is owned by at most one live run (TranscriptBusyError)

Design Decisions:
    - Returns the EventChannel synchronously; the run is an asyncio task the
      channel keeps a reference to
    - The outer follow-up loop has no iteration cap: stopping is the
      follow-up provider's decision
    - Steering captured mid-batch replaces the next steering poll for that cycle
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from turnloop.core.backend_protocols import (
    CancellationLike, ContextTransform, MessagesProvider, ModelBackend,
)
from turnloop.core.errors import (
    EmptyTranscriptError, RunCancelledError, TranscriptBusyError,
)
from turnloop.core.events import (
    AgentEnd, AgentStart, TurnEnd, TurnStart,
    agent_end_messages, is_agent_end, message_pair,
)
from turnloop.core.messages import is_fatal, tool_calls_of
from turnloop.infrastructure.event_channel import EventChannel
from turnloop.services.stream_response import stream_assistant_response
from turnloop.services.tool_execution import execute_tool_calls
from turnloop.services.tool_registry import ToolRegistry

logger = logging.getLogger(__name__)


@dataclass
class AgentContext:
    """System prompt, transcript and tools of one conversation."""
    system_prompt: str = ""
    messages: list = field(default_factory=list)
    tools: ToolRegistry | None = None
    _busy: bool = field(default=False, init=False, repr=False, compare=False)

    @property
    def busy(self) -> bool:
        return self._busy

    def claim(self) -> None:
        if self._busy:
            raise TranscriptBusyError()
        self._busy = True

    def release(self) -> None:
        self._busy = False


@dataclass
class AgentLoopConfig:
    backend: ModelBackend
    get_steering_messages: MessagesProvider | None = None
    get_follow_up_messages: MessagesProvider | None = None
    transform_context: ContextTransform | None = None


def agent_loop(
    prompts: list,
    context: AgentContext,
    config: AgentLoopConfig,
    cancel: CancellationLike | None = None,
) -> EventChannel:
    """Start a run with new prompt messages appended to the transcript."""
    return _launch(context, config, cancel, list(prompts))


def agent_loop_continue(
    context: AgentContext,
    config: AgentLoopConfig,
    cancel: CancellationLike | None = None,
) -> EventChannel:
    """Resume from the existing transcript without adding a message."""
    if not context.messages:
        raise EmptyTranscriptError()
    return _launch(context, config, cancel, [])


def _launch(context, config, cancel, prompts) -> EventChannel:
    channel: EventChannel = EventChannel(is_agent_end, agent_end_messages)
    context.claim()
    task = asyncio.create_task(
        _guarded_run(context, config, cancel, prompts, channel),
    )
    channel.attach(task)
    return channel


async def _guarded_run(context, config, cancel, prompts, channel) -> None:
    try:
        await _run(context, config, cancel, prompts, channel.push)
    except asyncio.CancelledError:
        logger.info("Agent run task cancelled")
        channel.fail(RunCancelledError())
        raise
    except Exception as e:
        logger.error("Agent run failed: %s", e, exc_info=True,
            extra={"error_code": getattr(e, "code", None)})
        channel.fail(e)
    finally:
        context.release()


async def _run(context, config, cancel, prompts, emit: Callable[[Any], None]) -> None:
    produced: list = []
    emit(AgentStart())
    emit(TurnStart())
    for prompt in prompts:
        _commit(context, produced, emit, prompt)

    first_turn = True
    turns = 0
    pending = await _poll(config.get_steering_messages)

    while True:
        has_more_tool_calls = True
        while has_more_tool_calls or pending:
            if first_turn:
                first_turn = False
            else:
                emit(TurnStart())
            turns += 1

            for message in pending:
                _commit(context, produced, emit, message)
            pending = []

            message = await stream_assistant_response(
                context, config.backend, emit, cancel, config.transform_context,
            )
            context.messages.append(message)
            produced.append(message)

            if is_fatal(message):
                logger.warning("Run ended by model failure: %s",
                    message.error_message, extra={"turn": turns})
                emit(TurnEnd(message=message, tool_results=[]))
                emit(AgentEnd(messages=produced))
                return

            calls = tool_calls_of(message)
            has_more_tool_calls = bool(calls)
            tool_results = []
            steering = []
            if calls:
                outcome = await execute_tool_calls(
                    calls, context.tools, emit, cancel,
                    config.get_steering_messages,
                )
                tool_results = outcome.tool_results
                steering = outcome.steering_messages
                context.messages.extend(tool_results)
                produced.extend(tool_results)

            emit(TurnEnd(message=message, tool_results=tool_results))
            pending = steering or await _poll(config.get_steering_messages)

        follow_ups = await _poll(config.get_follow_up_messages)
        if not follow_ups:
            break
        pending = follow_ups

    logger.info("Agent run finished", extra={"turn": turns})
    emit(AgentEnd(messages=produced))


def _commit(context, produced, emit, message) -> None:
    """Append a non-streamed message and announce it."""
    context.messages.append(message)
    produced.append(message)
    for event in message_pair(message):
        emit(event)


async def _poll(provider: MessagesProvider | None) -> list:
    if provider is None:
        return []
    return list(await provider() or [])
