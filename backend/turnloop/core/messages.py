"""Messages — tagged content blocks and transcript messages.

Invariants:
    - Content blocks discriminated by `type`, messages discriminated by `role`
    - Every message carries an ordered content list and an epoch-ms timestamp
    - A message whose timestamp is FATAL_TIMESTAMP is the fatal-failure sentinel
    - Tool messages hold exactly one tool-result block

Design Decisions:
    - pydantic models over dicts: exhaustive validation when transcripts are
      loaded back from the JSON column, model_dump for SSE and storage
    - Models are mutable: the streaming adapter grows one partial assistant
      message in place so message_start/update/end share one identity
"""

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter

from turnloop.core.domain_types import (
    FATAL_TIMESTAMP, StopReason, ToolCallId, ToolName, now_ms,
)


# ─── Content Blocks ──────────────────────────────────────────────

class TextContent(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ThinkingContent(BaseModel):
    type: Literal["thinking"] = "thinking"
    text: str


class ToolCallContent(BaseModel):
    type: Literal["tool-call"] = "tool-call"
    id: ToolCallId
    name: ToolName
    args: dict[str, Any] = Field(default_factory=dict)


class ToolResultContent(BaseModel):
    type: Literal["tool-result"] = "tool-result"
    tool_call_id: ToolCallId
    tool_name: ToolName
    result: Any = None
    is_error: bool = False


ContentBlock = Annotated[
    Union[TextContent, ThinkingContent, ToolCallContent, ToolResultContent],
    Field(discriminator="type"),
]


# ─── Usage ───────────────────────────────────────────────────────

class UsageCost(BaseModel):
    """Cost breakdown, computed by an external cost model, zero here."""
    input: float = 0.0
    output: float = 0.0
    cache_read: float = 0.0
    cache_write: float = 0.0
    total: float = 0.0


class Usage(BaseModel):
    input: int = 0
    output: int = 0
    cache_read: int = 0
    cache_write: int = 0
    total_tokens: int = 0
    cost: UsageCost = Field(default_factory=UsageCost)


# ─── Messages ────────────────────────────────────────────────────

class UserMessage(BaseModel):
    role: Literal["user"] = "user"
    content: list[ContentBlock] = Field(default_factory=list)
    timestamp: int = Field(default_factory=now_ms)
    usage: Usage | None = None


class AssistantMessage(BaseModel):
    role: Literal["assistant"] = "assistant"
    content: list[ContentBlock] = Field(default_factory=list)
    timestamp: int = Field(default_factory=now_ms)
    usage: Usage | None = None
    model: str | None = None
    stop_reason: StopReason | None = None
    error_message: str | None = None


class ToolMessage(BaseModel):
    role: Literal["tool"] = "tool"
    content: list[ContentBlock] = Field(default_factory=list)
    timestamp: int = Field(default_factory=now_ms)
    usage: Usage | None = None


Message = Annotated[
    Union[UserMessage, AssistantMessage, ToolMessage],
    Field(discriminator="role"),
]

_MESSAGE_LIST = TypeAdapter(list[Message])


# ─── Builders ────────────────────────────────────────────────────

def user_text(text: str) -> UserMessage:
    """Build a user message holding one text block."""
    return UserMessage(content=[TextContent(text=text)])


def tool_result_message(
    tool_call_id: str, tool_name: str, result: Any, is_error: bool = False,
) -> ToolMessage:
    """Build a tool message holding exactly one tool-result block."""
    return ToolMessage(content=[
        ToolResultContent(
            tool_call_id=tool_call_id, tool_name=tool_name,
            result=result, is_error=is_error,
        ),
    ])


# ─── Introspection ───────────────────────────────────────────────

def is_fatal(message: Any) -> bool:
    """True for the assistant sentinel produced by a fatal backend failure."""
    return (
        getattr(message, "role", None) == "assistant"
        and message.timestamp == FATAL_TIMESTAMP
    )


def tool_calls_of(message: Any) -> list[ToolCallContent]:
    """Ordered tool-call blocks of an assistant message (empty for other roles)."""
    if getattr(message, "role", None) != "assistant":
        return []
    return [b for b in message.content if b.type == "tool-call"]


def text_of(message: Any) -> str:
    """Concatenated text blocks of a message."""
    return "\n".join(b.text for b in message.content if b.type == "text")


def mark_fatal(message: AssistantMessage, error: str, aborted: bool = False) -> None:
    """Rewrite a partial assistant message into the fatal sentinel in place."""
    message.content = []
    message.timestamp = FATAL_TIMESTAMP
    message.usage = None
    message.stop_reason = StopReason.ABORTED if aborted else StopReason.ERROR
    message.error_message = error


# ─── Serialization ───────────────────────────────────────────────

def dump_messages(messages: list) -> list[dict]:
    """JSON-safe list of dicts (JSON column, SSE payloads)."""
    return [m.model_dump(mode="json") for m in messages]


def load_messages(data: list[dict] | None) -> list:
    """Validate stored dicts back into typed messages."""
    return _MESSAGE_LIST.validate_python(data or [])
