"""Conversation Stream — SSE endpoints that start or continue an agent run.

Invariants:
    - Preconditions (404, invalid or empty transcript, active run) fail before
      streaming starts and before the run slot is taken
    - Every SSE line is `data: {"type", "data"}` rendered from an AgentEvent
    - The transcript is persisted by the runner when the run ends

Design Decisions:
    - StreamingResponse for SSE: event_generator yields formatted SSE lines
    - Client disconnect cancels the run; the runner still persists what was committed
    - A response whose body never started releases the run slot in its
      background task
"""

import asyncio
import logging
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from turnloop.api.routes.conversation_stream_helpers import (
    SSE_HEADERS, get_conversation_or_404, get_model_backend,
    get_tool_registry, load_history, sse_line,
)
from turnloop.config import get_settings
from turnloop.core.backend_protocols import ModelBackend
from turnloop.core.errors import EmptyTranscriptError, ErrorContext
from turnloop.core.messages import user_text
from turnloop.infrastructure.database import get_db
from turnloop.schemas.conversation import UserMessageInput
from turnloop.services.context_compactor import ContextCompactor
from turnloop.services.conversation_runner import (
    ActiveRun, compactor_options, open_run, release_unstarted, run_conversation,
)
from turnloop.services.tool_registry import ToolRegistry

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/conversations", tags=["conversations"])


@router.post("/{conversation_id}/messages")
async def send_message(
    conversation_id: UUID,
    body: UserMessageInput,
    db: AsyncSession = Depends(get_db),
    backend: ModelBackend = Depends(get_model_backend),
    tools: ToolRegistry = Depends(get_tool_registry),
):
    """Start a run with the user's text; streams the run's events."""
    conversation = await get_conversation_or_404(conversation_id, db)
    history = load_history(conversation)
    run = open_run(conversation_id)
    events = run_conversation(
        conversation, run, backend, history, tools,
        prompts=[user_text(body.text)], compactor=_auto_compactor(conversation),
    )
    return _stream(run, events)


@router.post("/{conversation_id}/continue")
async def continue_conversation(
    conversation_id: UUID,
    db: AsyncSession = Depends(get_db),
    backend: ModelBackend = Depends(get_model_backend),
    tools: ToolRegistry = Depends(get_tool_registry),
):
    """Resume from the stored transcript without adding a message."""
    conversation = await get_conversation_or_404(conversation_id, db)
    if not conversation.message_history:
        raise EmptyTranscriptError(
            ErrorContext(conversation_id=str(conversation_id)),
        )
    history = load_history(conversation)
    run = open_run(conversation_id)
    events = run_conversation(
        conversation, run, backend, history, tools,
        compactor=_auto_compactor(conversation),
    )
    return _stream(run, events)


def _auto_compactor(conversation) -> ContextCompactor | None:
    settings = get_settings()
    if not settings.compaction_auto:
        return None
    return ContextCompactor(
        compactor_options(settings), previous_summary=conversation.last_summary,
    )


def _stream(run: ActiveRun, events) -> StreamingResponse:
    async def event_generator():
        try:
            async for event in events:
                yield sse_line(event)
        except asyncio.CancelledError:
            logger.info("Client disconnected from stream",
                extra={"conversation_id": str(run.conversation_id)})
            raise

    cleanup = BackgroundTasks()
    cleanup.add_task(release_unstarted, run)
    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
        background=cleanup,
    )
