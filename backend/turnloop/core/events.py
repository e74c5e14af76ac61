"""Agent Events — the public, ordered event feed of one run.

Invariants:
    - A run's feed starts with agent_start and ends with exactly one agent_end
    - Every message_start is followed by exactly one message_end for the same
      message object
    - to_sse_event() produces the {"type", "data"} envelope used by the HTTP stream

Design Decisions:
    - Events reference message objects directly (no copies): identity is how
      observers pair message_start/update/end
"""

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field

from turnloop.core.messages import Message, ToolMessage
from turnloop.core.model_events import ModelEvent


class _Event(BaseModel):
    """Shared SSE rendering."""

    def to_sse_event(self) -> dict:
        data = self.model_dump(mode="json", exclude={"type"})
        return {"type": self.type, "data": data}


# -- Run boundaries ------------------------------------------------------------

class AgentStart(_Event):
    type: Literal["agent_start"] = "agent_start"


class AgentEnd(_Event):
    type: Literal["agent_end"] = "agent_end"
    messages: list[Message] = Field(default_factory=list)


# -- Turn boundaries -----------------------------------------------------------

class TurnStart(_Event):
    type: Literal["turn_start"] = "turn_start"


class TurnEnd(_Event):
    type: Literal["turn_end"] = "turn_end"
    message: Message
    tool_results: list[ToolMessage] = Field(default_factory=list)


# -- Message lifecycle ---------------------------------------------------------

class MessageStart(_Event):
    type: Literal["message_start"] = "message_start"
    message: Message


class MessageUpdate(_Event):
    type: Literal["message_update"] = "message_update"
    message: Message
    delta: ModelEvent | None = None


class MessageEnd(_Event):
    type: Literal["message_end"] = "message_end"
    message: Message


# -- Tool lifecycle ------------------------------------------------------------

class ToolExecutionStart(_Event):
    type: Literal["tool_execution_start"] = "tool_execution_start"
    tool_call_id: str
    tool_name: str
    args: dict[str, Any] = Field(default_factory=dict)


class ToolExecutionUpdate(_Event):
    type: Literal["tool_execution_update"] = "tool_execution_update"
    tool_call_id: str
    tool_name: str
    args: dict[str, Any] = Field(default_factory=dict)
    partial_result: Any = None


class ToolExecutionEnd(_Event):
    type: Literal["tool_execution_end"] = "tool_execution_end"
    tool_call_id: str
    tool_name: str
    args: dict[str, Any] = Field(default_factory=dict)
    result: Any = None
    is_error: bool = False


AgentEvent = Annotated[
    Union[
        AgentStart, AgentEnd, TurnStart, TurnEnd,
        MessageStart, MessageUpdate, MessageEnd,
        ToolExecutionStart, ToolExecutionUpdate, ToolExecutionEnd,
    ],
    Field(discriminator="type"),
]


def is_agent_end(event: Any) -> bool:
    return event.type == "agent_end"


def agent_end_messages(event: Any) -> list:
    return list(event.messages) if event.type == "agent_end" else []


def message_pair(message: Any) -> tuple[MessageStart, MessageEnd]:
    """message_start + message_end for a message that is not streamed."""
    return MessageStart(message=message), MessageEnd(message=message)
