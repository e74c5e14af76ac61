"""Context Summarizer — replaces old transcript history with one summary message.

Invariants:
    - One model call per summarization, with a fixed "summarize only" system prompt
    - The kept segment is returned as the same message objects, unmodified
    - The summary message is placed immediately before the kept segment
    - Any failure raises SummarizationError, including a stream that ends
      without `done`; the input list is never mutated

Design Decisions:
    - File lists computed from tool calls, not from the model: appended verbatim
      so paths survive any summarization quality
    - A previous summary is passed separately and its message dropped from the
      serialized segment, so it is not summarized twice
"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass

from turnloop.core.backend_protocols import CancellationLike, ModelBackend, ModelRequest
from turnloop.core.context_compaction import (
    DEFAULT_PROTECTED_TURNS, CompactionResult, estimate_total, find_cut_index,
)
from turnloop.core.conversation_digest import (
    SUMMARIZATION_SYSTEM_PROMPT, FileOperations, build_summary_message,
    build_summary_prompt, compute_file_lists, extract_file_ops,
    format_file_operations, is_summary_message, serialize_conversation,
)
from turnloop.core.errors import SummarizationError, TurnloopError
from turnloop.core.messages import user_text
from turnloop.infrastructure.cancellation import race

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SummarizeOptions:
    keep_recent_tokens: int = 20_000
    protected_turns: int = DEFAULT_PROTECTED_TURNS
    file_tools: Mapping[str, str] | None = None


async def summarize_history(
    messages: list,
    backend: ModelBackend,
    options: SummarizeOptions | None = None,
    previous_summary: str | None = None,
    cancel: CancellationLike | None = None,
) -> CompactionResult:
    options = options or SummarizeOptions()
    tokens_before = estimate_total(messages)
    cut = find_cut_index(messages, options.keep_recent_tokens, options.protected_turns)
    if cut == 0:
        return CompactionResult(list(messages), 0, tokens_before, tokens_before)

    to_summarize, kept = messages[:cut], messages[cut:]
    ops = FileOperations()
    for message in to_summarize:
        extract_file_ops(message, ops, options.file_tools)

    segment = to_summarize
    if previous_summary:
        segment = [m for m in to_summarize if not is_summary_message(m)]
    prompt = build_summary_prompt(serialize_conversation(segment), previous_summary)

    text = await _generate_summary(backend, prompt, cancel)
    summary = text + format_file_operations(*compute_file_lists(ops))

    result = [build_summary_message(summary), *kept]
    tokens_after = estimate_total(result)
    logger.info(
        "Summarized %d message(s)", cut,
        extra={"tokens_before": tokens_before, "tokens_after": tokens_after},
    )
    return CompactionResult(
        result,
        compacted_count=cut,
        tokens_before=tokens_before,
        tokens_after=tokens_after,
        summary=summary,
        strategies=["summarize"],
    )


async def _generate_summary(backend, prompt: str, cancel) -> str:
    request = ModelRequest(
        system_prompt=SUMMARIZATION_SYSTEM_PROMPT, messages=[user_text(prompt)],
    )
    try:
        text = await race(_collect_text(backend, request, cancel), cancel)
    except SummarizationError:
        raise
    except TurnloopError as e:
        raise SummarizationError(e.message) from e
    except Exception as e:
        raise SummarizationError(str(e) or type(e).__name__) from e

    text = text.strip()
    if not text:
        raise SummarizationError("model returned an empty summary")
    return text


async def _collect_text(backend, request, cancel) -> str:
    chunks: list[str] = []
    completed = False
    stream = backend.stream(request, cancel)
    try:
        async for event in stream:
            if event.type == "text_delta":
                chunks.append(event.text)
            elif event.type == "error":
                raise SummarizationError(event.message)
            elif event.type == "done":
                completed = True
                break
    finally:
        close = getattr(stream, "aclose", None)
        if close is not None:
            await close()
    if not completed:
        raise SummarizationError("Model stream ended without completion")
    return "".join(chunks)
