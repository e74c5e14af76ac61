"""Anthropic Backend — default ModelBackend built on the Anthropic streaming API.

Invariants:
    - stream() never raises provider errors: AnthropicAPIError becomes a trailing
      `error` model event; the streaming adapter turns that into the fatal sentinel
    - Tool messages are sent as user `tool_result` blocks; consecutive same-role
      messages are merged (Anthropic requires strict alternation)
    - Every `tool_use` sent on the wire has a matching `tool_result`: calls left
      unexecuted by a steering interrupt get a synthetic skipped result on the
      wire only, the transcript is not touched
    - Thinking blocks and the fatal sentinel are never sent back

Design Decisions:
    - Conversion helpers are pure module functions: tested without the SDK
    - Anthropic's helper stream events (`text`, `thinking`, `content_block_stop`)
      used instead of raw deltas: tool input arrives already parsed
"""

import json
import logging
from typing import Any

from turnloop.core.backend_protocols import CancellationLike, ModelRequest, ToolSchema
from turnloop.core.errors import AnthropicAPIError, ErrorContext
from turnloop.core.messages import is_fatal
from turnloop.core.model_events import (
    BackendUsage, StreamDone, StreamError, StreamStart,
    TextDelta, ThinkingDelta, ToolCallReady,
)
from turnloop.infrastructure.anthropic_client import ResilientAnthropicClient

logger = logging.getLogger(__name__)

SKIPPED_TOOL_RESULT = "Tool call skipped: interrupted by a newer user message."

_STOP_REASONS = {
    "end_turn": "stop",
    "stop_sequence": "stop",
    "tool_use": "tool_calls",
    "max_tokens": "length",
}


class AnthropicBackend:
    """Streams one Anthropic Messages API call as model events."""

    def __init__(
        self, client: ResilientAnthropicClient, model: str,
        max_tokens: int = 8192,
    ):
        self.client = client
        self.model = model
        self.max_tokens = max_tokens

    async def stream(
        self, request: ModelRequest, cancel: CancellationLike | None = None,
    ):
        yield StreamStart(model=self.model)
        try:
            async with self.client.stream_message(
                model=self.model,
                max_tokens=self.max_tokens,
                system=request.system_prompt,
                tools=to_anthropic_tools(request.tools),
                messages=to_anthropic_messages(request.messages),
                context=ErrorContext(),
            ) as stream:
                async for event in stream:
                    model_event = map_stream_event(event)
                    if model_event is not None:
                        yield model_event
                final = await stream.get_final_message()
        except AnthropicAPIError as e:
            logger.error("Anthropic stream failed: %s", e.message,
                extra={"error_code": e.code})
            yield StreamError(message=e.message)
            return

        yield StreamDone(
            usage=usage_of(final),
            stop_reason=_STOP_REASONS.get(getattr(final, "stop_reason", None)),
        )


# -- Stream event mapping ------------------------------------------------------

def map_stream_event(event: Any):
    """SDK stream event -> model event, or None for events we do not surface."""
    etype = getattr(event, "type", None)
    if etype == "text" and event.text:
        return TextDelta(text=event.text)
    if etype == "thinking" and event.thinking:
        return ThinkingDelta(text=event.thinking)
    if etype == "content_block_stop":
        block = event.content_block
        if getattr(block, "type", None) == "tool_use":
            return ToolCallReady(
                id=block.id, name=block.name, args=dict(block.input or {}),
            )
    return None


def usage_of(message: Any) -> BackendUsage:
    usage = message.usage
    cache_create = getattr(usage, "cache_creation_input_tokens", 0) or 0
    cache_read = getattr(usage, "cache_read_input_tokens", 0) or 0
    inp = usage.input_tokens + cache_create + cache_read
    out = usage.output_tokens
    return BackendUsage(input_tokens=inp, output_tokens=out, total_tokens=inp + out)


# -- Request conversion --------------------------------------------------------

def to_anthropic_tools(tools: list[ToolSchema]) -> list[dict]:
    return [
        {
            "name": t.name,
            "description": t.description,
            "input_schema": t.parameters or {"type": "object", "properties": {}},
        }
        for t in tools
    ]


def to_anthropic_messages(messages: list) -> list[dict]:
    """Transcript -> alternating Anthropic message params."""
    wire: list[dict] = []
    for msg in messages:
        role, blocks = _to_wire(msg)
        if not blocks:
            continue
        if wire and wire[-1]["role"] == role:
            wire[-1]["content"].extend(blocks)
        else:
            wire.append({"role": role, "content": blocks})
    _patch_unresolved_tool_uses(wire)
    return wire


def _to_wire(msg) -> tuple[str, list[dict]]:
    match msg.role:
        case "user":
            return "user", [_user_block(b) for b in msg.content]
        case "assistant":
            if is_fatal(msg):
                return "assistant", []
            return "assistant", [
                wb for wb in (_assistant_block(b) for b in msg.content) if wb
            ]
        case "tool":
            return "user", [
                _tool_result_block(b) for b in msg.content
                if b.type == "tool-result"
            ]
    return msg.role, []


def _user_block(block) -> dict:
    if block.type == "text":
        return {"type": "text", "text": block.text}
    return {"type": "text", "text": json.dumps(block.model_dump(mode="json"))}


def _assistant_block(block) -> dict | None:
    if block.type == "text":
        return {"type": "text", "text": block.text} if block.text else None
    if block.type == "tool-call":
        return {
            "type": "tool_use", "id": block.id,
            "name": block.name, "input": block.args,
        }
    return None


def _tool_result_block(block) -> dict:
    wire = {
        "type": "tool_result",
        "tool_use_id": block.tool_call_id,
        "content": _result_text(block.result),
    }
    if block.is_error:
        wire["is_error"] = True
    return wire


def _result_text(result: Any) -> str:
    if isinstance(result, str):
        return result
    return json.dumps(result, ensure_ascii=False, default=str)


def _patch_unresolved_tool_uses(wire: list[dict]) -> None:
    """Give every tool_use a tool_result in the following user message."""
    for i, entry in enumerate(wire):
        if entry["role"] != "assistant":
            continue
        ids = [b["id"] for b in entry["content"] if b["type"] == "tool_use"]
        if not ids or i + 1 >= len(wire):
            continue
        following = wire[i + 1]
        answered = {
            b.get("tool_use_id") for b in following["content"]
            if b["type"] == "tool_result"
        }
        skipped = [
            {
                "type": "tool_result", "tool_use_id": tid,
                "content": SKIPPED_TOOL_RESULT, "is_error": True,
            }
            for tid in ids if tid not in answered
        ]
        if not skipped:
            continue
        results = [b for b in following["content"] if b["type"] == "tool_result"]
        others = [b for b in following["content"] if b["type"] != "tool_result"]
        following["content"] = results + skipped + others
