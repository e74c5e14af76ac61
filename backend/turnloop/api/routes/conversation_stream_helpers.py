"""Conversation Stream Helpers — SSE formatting and shared dependencies.

Invariants:
    - One ResilientAnthropicClient per process, reused across all streams
    - A stored transcript that fails validation raises CorruptTranscriptError
    - get_model_backend / get_tool_registry are FastAPI dependencies so tests
      and host applications override them via app.dependency_overrides

Design Decisions:
    - SSE headers prevent proxy/browser buffering of streamed events
    - default_tools is empty: tool business logic is registered by the host
"""

import json
from uuid import UUID

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from turnloop.config import get_settings
from turnloop.core.backend_protocols import ModelBackend
from turnloop.core.errors import (
    CorruptTranscriptError, ErrorContext, ResourceNotFoundError,
)
from turnloop.core.messages import load_messages
from turnloop.infrastructure.anthropic_backend import AnthropicBackend
from turnloop.infrastructure.anthropic_client import ResilientAnthropicClient
from turnloop.models.conversation import Conversation
from turnloop.services.tool_registry import ToolRegistry

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "X-Accel-Buffering": "no",
    "Connection": "keep-alive",
}

default_tools = ToolRegistry()

_anthropic_client: ResilientAnthropicClient | None = None


def sse_line(event: dict) -> str:
    """Format event as SSE data line."""
    return f"data: {json.dumps(event, ensure_ascii=False)}\n\n"


def get_model_backend() -> ModelBackend:
    """AnthropicBackend over the process-wide client singleton."""
    global _anthropic_client
    settings = get_settings()
    if _anthropic_client is None:
        _anthropic_client = ResilientAnthropicClient(
            api_key=settings.anthropic_api_key,
            max_retries=settings.anthropic_max_retries,
            base_delay_ms=settings.anthropic_base_delay_ms,
            max_delay_ms=settings.anthropic_max_delay_ms,
            timeout_seconds=settings.anthropic_timeout_seconds,
        )
    return AnthropicBackend(
        _anthropic_client, settings.agent_model, settings.agent_max_tokens,
    )


def get_tool_registry() -> ToolRegistry:
    return default_tools


async def get_conversation_or_404(
    conversation_id: UUID, db: AsyncSession,
) -> Conversation:
    result = await db.execute(
        select(Conversation).where(Conversation.id == conversation_id),
    )
    conversation = result.scalar_one_or_none()
    if conversation is None:
        raise ResourceNotFoundError("Conversation", str(conversation_id))
    return conversation


def load_history(conversation: Conversation) -> list:
    """Typed transcript of a stored conversation; fails before any run is opened."""
    try:
        return load_messages(conversation.message_history)
    except ValidationError as e:
        raise CorruptTranscriptError(
            f"{e.error_count()} invalid field(s)",
            ErrorContext(conversation_id=str(conversation.id)),
        ) from e
