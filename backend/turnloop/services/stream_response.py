"""Streaming Response Adapter — one model call normalized into one assistant message.

Invariants:
    - message_start fires before any backend work; exactly one message_end follows
      for the same message object, on success AND on failure
    - Adjacent text deltas collapse into one text block; thinking deltas collapse
      into their own block kind; tool calls append one atomic block each
    - Never raises on backend failure: error event, exception, cancellation or a
      stream ending without `done` all yield the fatal sentinel (timestamp -1)
    - asyncio.CancelledError passes through (task cancellation is not a backend failure)
    - transform_context runs before message_start; its failures propagate to the
      caller, cancellation while it runs yields the aborted sentinel

Design Decisions:
    - The whole stream is consumed in one awaitable raced against the token:
      the backend iterator is entered and left in the same task
    - Usage cache fields and cost stay zero: cost is computed outside the engine
"""

import logging
from collections.abc import Callable
from typing import Any

from turnloop.core.backend_protocols import (
    CancellationLike, ContextTransform, ModelBackend, ModelRequest,
)
from turnloop.core.domain_types import StopReason
from turnloop.core.errors import RunCancelledError
from turnloop.core.events import MessageEnd, MessageStart, MessageUpdate
from turnloop.core.messages import (
    AssistantMessage, TextContent, ThinkingContent, ToolCallContent, Usage,
    mark_fatal,
)
from turnloop.infrastructure.cancellation import race

logger = logging.getLogger(__name__)

EmitFn = Callable[[Any], None]

_INCOMPLETE_STREAM = "Model stream ended without completion"
_KNOWN_STOP_REASONS = frozenset(r.value for r in StopReason)


async def stream_assistant_response(
    context,
    backend: ModelBackend,
    emit: EmitFn,
    cancel: CancellationLike | None = None,
    transform_context: ContextTransform | None = None,
) -> AssistantMessage:
    """Run one model call over the context and return the finished message.

    A transform_context failure is a caller fault and propagates; only a
    cancellation while it runs becomes the aborted sentinel.
    """
    messages = list(context.messages)
    cancelled = False
    if transform_context is not None:
        try:
            messages = await race(transform_context(messages, cancel), cancel)
        except RunCancelledError:
            cancelled = True

    partial = AssistantMessage()
    emit(MessageStart(message=partial))
    if cancelled:
        return _fail(partial, emit, "Run cancelled", aborted=True)

    try:
        tools = context.tools.schemas() if context.tools is not None else []
        request = ModelRequest(
            system_prompt=context.system_prompt, messages=messages, tools=tools,
        )
        final = await race(_consume(backend, request, cancel, partial, emit), cancel)
    except RunCancelledError:
        return _fail(partial, emit, "Run cancelled", aborted=True)
    except Exception as e:
        logger.warning("Model backend raised: %s", e, exc_info=True)
        return _fail(partial, emit, str(e) or type(e).__name__)

    if final is None:
        return _fail(partial, emit, _INCOMPLETE_STREAM)
    if final.type == "error":
        return _fail(partial, emit, final.message)

    _finish(partial, final)
    emit(MessageEnd(message=partial))
    return partial


async def _consume(backend, request, cancel, partial, emit):
    """Apply deltas to the partial message; return the terminal event or None."""
    stream = backend.stream(request, cancel)
    try:
        async for event in stream:
            match event.type:
                case "start":
                    if event.model:
                        partial.model = event.model
                case "text_delta":
                    _append_delta(partial, TextContent, event.text)
                    emit(MessageUpdate(message=partial, delta=event))
                case "thinking_delta":
                    _append_delta(partial, ThinkingContent, event.text)
                    emit(MessageUpdate(message=partial, delta=event))
                case "tool_call":
                    partial.content.append(ToolCallContent(
                        id=event.id, name=event.name, args=event.args,
                    ))
                    emit(MessageUpdate(message=partial, delta=event))
                case "done" | "error":
                    return event
        return None
    finally:
        close = getattr(stream, "aclose", None)
        if close is not None:
            await close()


def _append_delta(partial: AssistantMessage, block_cls, text: str) -> None:
    """Concatenate onto a trailing block of the same kind, else append one."""
    if partial.content and isinstance(partial.content[-1], block_cls):
        partial.content[-1].text += text
    else:
        partial.content.append(block_cls(text=text))


def _finish(partial: AssistantMessage, done) -> None:
    usage = done.usage
    partial.usage = Usage(
        input=usage.input_tokens,
        output=usage.output_tokens,
        total_tokens=usage.total_tokens or usage.input_tokens + usage.output_tokens,
    )
    partial.stop_reason = _stop_reason(done.stop_reason, partial)


def _stop_reason(reported: str | None, partial: AssistantMessage) -> StopReason:
    if reported in _KNOWN_STOP_REASONS:
        return StopReason(reported)
    has_calls = any(b.type == "tool-call" for b in partial.content)
    return StopReason.TOOL_CALLS if has_calls else StopReason.STOP


def _fail(partial, emit, error: str, aborted: bool = False) -> AssistantMessage:
    logger.warning("Assistant turn failed: %s", error)
    mark_fatal(partial, error, aborted=aborted)
    emit(MessageEnd(message=partial))
    return partial
