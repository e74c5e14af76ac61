"""Conversation Runner — bridges one persisted conversation to one agent run.

Invariants:
    - At most one active run or compaction per conversation (ConcurrencyError
      otherwise); both hold the same slot in _active_runs
    - A run whose event stream is never iterated gives its slot back
      (release_unstarted); once iterated, run_conversation closes it
    - Steering and follow-up messages are queued on the active run and drained
      by the turn loop's providers
    - The transcript is persisted once the run ends, also when the client
      disconnected mid-stream or the run failed
    - Auto-compaction (when enabled) runs before the turn loop, never inside it;
      a compaction failure is reported and the run continues uncompacted

Design Decisions:
    - _active_runs as module-level dict: single-process uvicorn, runs are
      lost on restart while the transcript up to the last finished run is not
    - Persistence in its own task with its own DB session (db_manager): the
      request session may already be closed when a disconnected run finishes
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy import select

from turnloop.core.backend_protocols import ModelBackend
from turnloop.core.context_compaction import PruneOptions
from turnloop.core.domain_types import CompactionMode
from turnloop.core.errors import (
    CompactionError, ConcurrencyError, ErrorContext, TurnloopError,
)
from turnloop.core.messages import dump_messages
from turnloop.infrastructure import database
from turnloop.infrastructure.cancellation import CancellationToken
from turnloop.infrastructure.event_channel import EventChannel
from turnloop.models.conversation import Conversation
from turnloop.services.agent_loop import (
    AgentContext, AgentLoopConfig, agent_loop, agent_loop_continue,
)
from turnloop.services.context_compactor import CompactorOptions, ContextCompactor
from turnloop.services.context_summarizer import SummarizeOptions
from turnloop.services.tool_registry import ToolRegistry

logger = logging.getLogger(__name__)


@dataclass
class ActiveRun:
    """Per-run handles shared between the stream route and control routes."""
    conversation_id: UUID
    kind: str = "run"
    cancel: CancellationToken = field(default_factory=CancellationToken)
    steering: list = field(default_factory=list)
    follow_ups: list = field(default_factory=list)
    persisted: asyncio.Task | None = None
    started: bool = False

    async def take_steering(self) -> list:
        messages, self.steering = self.steering, []
        return messages

    async def take_follow_ups(self) -> list:
        messages, self.follow_ups = self.follow_ups, []
        return messages


_active_runs: dict[UUID, ActiveRun] = {}


def open_run(conversation_id: UUID, kind: str = "run") -> ActiveRun:
    """Claim the conversation's slot; kind is "run" or "compaction"."""
    current = _active_runs.get(conversation_id)
    if current is not None:
        raise ConcurrencyError(
            f"Conversation already has an active {current.kind}",
            ErrorContext(conversation_id=str(conversation_id)),
        )
    run = ActiveRun(conversation_id, kind)
    _active_runs[conversation_id] = run
    return run


def get_active_run(conversation_id: UUID) -> ActiveRun | None:
    return _active_runs.get(conversation_id)


def close_run(run: ActiveRun) -> None:
    if _active_runs.get(run.conversation_id) is run:
        del _active_runs[run.conversation_id]


async def release_unstarted(run: ActiveRun) -> None:
    """Free the slot of a run whose event stream was never iterated."""
    if not run.started:
        close_run(run)


def cancel_run(conversation_id: UUID) -> bool:
    run = _active_runs.get(conversation_id)
    if run is None:
        return False
    run.cancel.cancel()
    return True


def active_run_count() -> int:
    return len(_active_runs)


# -- Compaction ----------------------------------------------------------------

def compactor_options(settings, mode: CompactionMode | None = None) -> CompactorOptions:
    """CompactorOptions from application settings (mode overridable per call)."""
    return CompactorOptions(
        threshold=settings.compaction_threshold,
        mode=mode or settings.compaction_mode,
        prune=PruneOptions(
            minimum=settings.compaction_prune_minimum,
            protect=settings.compaction_prune_protect,
            protected_tools=frozenset(settings.compaction_protected_tools),
            protected_turns=settings.compaction_protected_turns,
        ),
        summarize=SummarizeOptions(
            keep_recent_tokens=settings.compaction_keep_recent_tokens,
            protected_turns=settings.compaction_protected_turns,
        ),
    )


def compaction_event(result) -> dict:
    return {
        "type": "compaction",
        "data": {
            "compacted_count": result.compacted_count,
            "tokens_before": result.tokens_before,
            "tokens_after": result.tokens_after,
            "strategies": result.strategies,
        },
    }


# -- Run -----------------------------------------------------------------------

async def run_conversation(
    conversation: Conversation,
    run: ActiveRun,
    backend: ModelBackend,
    history: list,
    tools: ToolRegistry | None = None,
    prompts: list | None = None,
    compactor: ContextCompactor | None = None,
) -> AsyncIterator[dict]:
    """Drive one run and yield its events as SSE dicts.

    prompts=None continues from `history`. The caller opened `run` and checked
    preconditions; once iterated, this generator owns closing it.
    """
    run.started = True
    ctx = ErrorContext(conversation_id=str(conversation.id))
    try:
        context = AgentContext(
            system_prompt=conversation.system_prompt,
            messages=list(history),
            tools=tools,
        )
        if compactor is not None and compactor.needs_compaction(context.messages):
            try:
                result = await compactor.run(context.messages, backend, run.cancel)
                context.messages = result.messages
                yield compaction_event(result)
            except CompactionError as e:
                logger.warning("Auto-compaction failed: %s", e.message,
                    extra={"conversation_id": ctx.conversation_id,
                           "error_code": e.code})
                yield e.to_sse_event()

        config = AgentLoopConfig(
            backend=backend,
            get_steering_messages=run.take_steering,
            get_follow_up_messages=run.take_follow_ups,
        )
        if prompts is None:
            channel = agent_loop_continue(context, config, run.cancel)
        else:
            channel = agent_loop(prompts, context, config, run.cancel)
    except BaseException:
        close_run(run)
        raise

    summary = compactor.previous_summary if compactor is not None else None
    run.persisted = asyncio.create_task(
        _persist_when_done(conversation.id, context, channel, run, summary),
    )

    try:
        async for event in channel:
            yield event.to_sse_event()
    except TurnloopError as e:
        yield e.to_sse_event()
    except Exception:
        yield unexpected_error_event()
    finally:
        if not channel.closed:
            logger.info("Stream consumer left, cancelling run",
                extra={"conversation_id": ctx.conversation_id})
            run.cancel.cancel()
    await asyncio.shield(run.persisted)


def unexpected_error_event() -> dict:
    return {
        "type": "error",
        "data": {
            "code": "INTERNAL_ERROR",
            "message": "An unexpected error occurred",
            "severity": "critical",
            "recoverable": False,
        },
    }


async def _persist_when_done(
    conversation_id: UUID, context: AgentContext, channel: EventChannel,
    run: ActiveRun, summary: str | None,
) -> None:
    try:
        produced = await channel.result()
    except Exception as e:
        logger.error("Run ended abnormally: %s", e,
            extra={"conversation_id": str(conversation_id)})
        produced = []
    try:
        await save_transcript(conversation_id, context.messages, produced, summary)
    except TurnloopError as e:
        logger.error("Failed to persist transcript: %s", e.message,
            extra={"conversation_id": str(conversation_id), "error_code": e.code})
    finally:
        close_run(run)


async def save_transcript(
    conversation_id: UUID, messages: list, produced: list,
    summary: str | None = None,
) -> None:
    """Store the transcript and add the run's assistant usage to the totals."""
    if not database.db_manager:
        logger.error("Cannot persist conversation %s: database not initialized",
            conversation_id)
        return

    input_tokens = sum(m.usage.input for m in produced
        if m.role == "assistant" and m.usage)
    output_tokens = sum(m.usage.output for m in produced
        if m.role == "assistant" and m.usage)

    async with database.db_manager.session() as db:
        result = await db.execute(
            select(Conversation).where(Conversation.id == conversation_id),
        )
        conversation = result.scalar_one_or_none()
        if conversation is None:
            logger.warning("Conversation %s deleted before its run finished",
                conversation_id)
            return
        conversation.message_history = dump_messages(messages)
        conversation.total_input_tokens += input_tokens
        conversation.total_output_tokens += output_tokens
        if summary is not None:
            conversation.last_summary = summary
        conversation.updated_at = datetime.now(timezone.utc)
        await db.commit()
    logger.info("Transcript persisted", extra={
        "conversation_id": str(conversation_id),
        "input_tokens": input_tokens, "output_tokens": output_tokens,
    })
