"""Conversation Lifecycle — CRUD, run control (cancel/steer/follow-up) and compaction.

Invariants:
    - Steering, follow-up and cancel act on the conversation's active run only
    - Compaction holds the run slot for its whole duration: it answers 409 while
      a run is active, and a run requested during it answers 409
    - Steering and follow-up during a compaction answer 409; cancel aborts it
    - A compaction failure leaves the stored transcript untouched

Design Decisions:
    - Active runs live in services/conversation_runner (module-level registry)
    - Domain errors raised as TurnloopError; the global handler renders them
"""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from turnloop.api.routes.conversation_stream_helpers import (
    get_conversation_or_404, get_model_backend, load_history,
)
from turnloop.config import get_settings
from turnloop.core.backend_protocols import ModelBackend
from turnloop.core.errors import ConcurrencyError, ErrorContext, ResourceNotFoundError
from turnloop.core.messages import dump_messages, user_text
from turnloop.infrastructure.database import get_db
from turnloop.models.conversation import Conversation
from turnloop.schemas.conversation import (
    CompactRequest, CompactResponse, ConversationCreate,
    ConversationDetail, ConversationResponse, UserMessageInput,
)
from turnloop.services.context_compactor import ContextCompactor
from turnloop.services.conversation_runner import (
    cancel_run, close_run, compactor_options, get_active_run, open_run,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/conversations", tags=["conversations"])


@router.post(
    "", response_model=ConversationResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_conversation(
    body: ConversationCreate, db: AsyncSession = Depends(get_db),
):
    system_prompt = body.system_prompt
    if system_prompt is None:
        system_prompt = get_settings().agent_system_prompt
    conversation = Conversation(system_prompt=system_prompt, message_history=[])
    db.add(conversation)
    await db.commit()
    await db.refresh(conversation)
    logger.info("Conversation created",
        extra={"conversation_id": str(conversation.id)})
    return _summary(conversation)


@router.get("/{conversation_id}", response_model=ConversationDetail)
async def get_conversation(
    conversation_id: UUID, db: AsyncSession = Depends(get_db),
):
    conversation = await get_conversation_or_404(conversation_id, db)
    return ConversationDetail(
        **_summary(conversation).model_dump(),
        messages=conversation.message_history or [],
        last_summary=conversation.last_summary,
    )


@router.delete("/{conversation_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_conversation(
    conversation_id: UUID, db: AsyncSession = Depends(get_db),
):
    """Delete the conversation; an active run is cancelled first."""
    conversation = await get_conversation_or_404(conversation_id, db)
    cancel_run(conversation_id)
    await db.delete(conversation)
    await db.commit()


@router.post("/{conversation_id}/cancel")
async def cancel_conversation_run(conversation_id: UUID):
    if not cancel_run(conversation_id):
        raise ResourceNotFoundError("Active run", str(conversation_id))
    return {"message": "Run cancelled"}


@router.post("/{conversation_id}/steer", status_code=status.HTTP_202_ACCEPTED)
async def steer_conversation(conversation_id: UUID, body: UserMessageInput):
    """Queue a message injected before the active run's next model call."""
    run = _active_run_or_404(conversation_id)
    run.steering.append(user_text(body.text))
    return {"queued": "steering", "pending": len(run.steering)}


@router.post("/{conversation_id}/follow-up", status_code=status.HTTP_202_ACCEPTED)
async def follow_up_conversation(conversation_id: UUID, body: UserMessageInput):
    """Queue a message that restarts the active run once it would stop."""
    run = _active_run_or_404(conversation_id)
    run.follow_ups.append(user_text(body.text))
    return {"queued": "follow_up", "pending": len(run.follow_ups)}


@router.post("/{conversation_id}/compact", response_model=CompactResponse)
async def compact_conversation(
    conversation_id: UUID,
    body: CompactRequest | None = None,
    db: AsyncSession = Depends(get_db),
    backend: ModelBackend = Depends(get_model_backend),
):
    conversation = await get_conversation_or_404(conversation_id, db)
    history = load_history(conversation)
    run = open_run(conversation_id, kind="compaction")
    try:
        mode = body.mode if body else None
        compactor = ContextCompactor(
            compactor_options(get_settings(), mode),
            previous_summary=conversation.last_summary,
        )
        result = await compactor.run(history, backend, run.cancel)
        if result.changed:
            conversation.message_history = dump_messages(result.messages)
            conversation.last_summary = compactor.previous_summary
            await db.commit()
    finally:
        close_run(run)
    return CompactResponse(
        compacted_count=result.compacted_count,
        tokens_before=result.tokens_before,
        tokens_after=result.tokens_after,
        strategies=result.strategies,
        summary=result.summary,
    )


def _active_run_or_404(conversation_id: UUID):
    run = get_active_run(conversation_id)
    if run is None:
        raise ResourceNotFoundError("Active run", str(conversation_id))
    if run.kind != "run":
        raise ConcurrencyError(
            f"Conversation is busy with a {run.kind}, not a run",
            ErrorContext(conversation_id=str(conversation_id)),
        )
    return run


def _summary(conversation: Conversation) -> ConversationResponse:
    return ConversationResponse(
        id=conversation.id,
        system_prompt=conversation.system_prompt,
        message_count=len(conversation.message_history or []),
        total_input_tokens=conversation.total_input_tokens,
        total_output_tokens=conversation.total_output_tokens,
        created_at=conversation.created_at,
    )
