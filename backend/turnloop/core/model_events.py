"""Model Events — the incremental event sequence a model backend emits per call.

Invariants:
    - A well-formed stream ends with exactly one `done` or one `error` event
    - `tool_call` events carry a complete call (arguments already parsed)
    - Usage is reported only on `done`

Design Decisions:
    - Backend-neutral: the streaming adapter owns the partial message, backends
      only report deltas. Provider wire formats stay in infrastructure/
"""

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field


class BackendUsage(BaseModel):
    """Aggregate token counts as reported by the provider."""
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0


class StreamStart(BaseModel):
    type: Literal["start"] = "start"
    model: str | None = None


class TextDelta(BaseModel):
    type: Literal["text_delta"] = "text_delta"
    text: str


class ThinkingDelta(BaseModel):
    type: Literal["thinking_delta"] = "thinking_delta"
    text: str


class ToolCallReady(BaseModel):
    type: Literal["tool_call"] = "tool_call"
    id: str
    name: str
    args: dict[str, Any] = Field(default_factory=dict)


class StreamDone(BaseModel):
    type: Literal["done"] = "done"
    usage: BackendUsage = Field(default_factory=BackendUsage)
    stop_reason: str | None = None


class StreamError(BaseModel):
    type: Literal["error"] = "error"
    message: str = "model backend error"


ModelEvent = Annotated[
    Union[StreamStart, TextDelta, ThinkingDelta, ToolCallReady, StreamDone, StreamError],
    Field(discriminator="type"),
]
