"""Context Compactor tests — threshold, modes, commit-or-no-op, summary carry-over.

Invariants:
    - At or below the threshold nothing changes and no model call is made
    - prune mode never calls the model; summarize runs only when still too large
    - Failures propagate and leave the caller's list untouched
    - The latest summary is fed into the next summarization
"""

import pytest

from turnloop.core.context_compaction import (
    PRUNED_PLACEHOLDER, PruneOptions, estimate_total, prune,
)
from turnloop.core.conversation_digest import is_summary_message
from turnloop.core.domain_types import CompactionMode
from turnloop.core.errors import CompactionError, SummarizationError
from turnloop.core.messages import (
    AssistantMessage, TextContent, ToolCallContent, tool_result_message, user_text,
)
from turnloop.services.context_compactor import CompactorOptions, ContextCompactor
from turnloop.services.context_summarizer import SummarizeOptions

from tests.services.mock_backend import ScriptedBackend, error_reply, text_reply

EAGER_PRUNE = PruneOptions(minimum=0, protect=0)
SHORT_KEEP = SummarizeOptions(keep_recent_tokens=500)


def _transcript(size: int = 8_000) -> list:
    """Seven tool turns followed by a short closing exchange."""
    messages = []
    for i in range(7):
        call_id = f"call_{i}"
        messages.extend([
            user_text(f"step {i}"),
            AssistantMessage(content=[
                ToolCallContent(id=call_id, name="read", args={"path": f"f{i}.py"}),
            ]),
            tool_result_message(call_id, "read", "x" * size),
        ])
    messages.extend([
        user_text("wrap up"),
        AssistantMessage(content=[TextContent(text="done")]),
    ])
    return messages


def _compactor(mode=CompactionMode.HYBRID, threshold=1_000, **kwargs):
    return ContextCompactor(CompactorOptions(
        threshold=threshold, mode=mode, prune=EAGER_PRUNE, summarize=SHORT_KEEP,
    ), **kwargs)


# ==============================================================================
# Threshold
# ==============================================================================


async def test_below_threshold_is_noop():
    messages = _transcript()
    compactor = _compactor(threshold=estimate_total(messages))
    backend = ScriptedBackend([])

    assert not compactor.needs_compaction(messages)
    result = await compactor.run(messages, backend)

    assert not result.changed
    assert result.messages == messages
    assert result.messages is not messages
    assert backend.requests == []


# ==============================================================================
# Modes
# ==============================================================================


async def test_prune_mode_never_calls_model():
    messages = _transcript()
    result = await _compactor(CompactionMode.PRUNE).run(messages)

    assert result.strategies == ["prune"]
    assert result.summary is None
    assert len(result.messages) == len(messages)
    pruned = [
        m.content[0].result for m in result.messages if m.role == "tool"
    ]
    assert pruned[:6] == [PRUNED_PLACEHOLDER] * 6
    assert pruned[6] == "x" * 8_000


async def test_hybrid_stops_after_prune_when_enough():
    messages = _transcript()
    after_prune = estimate_total(prune(messages, EAGER_PRUNE).messages)
    backend = ScriptedBackend([])

    result = await _compactor(threshold=after_prune).run(messages, backend)

    assert result.strategies == ["prune"]
    assert backend.requests == []
    assert result.tokens_after == after_prune


async def test_hybrid_summarizes_when_prune_insufficient():
    messages = _transcript()
    backend = ScriptedBackend([text_reply("read seven files")])
    compactor = _compactor()

    result = await compactor.run(messages, backend)

    assert result.strategies == ["prune", "summarize"]
    assert is_summary_message(result.messages[0])
    assert result.messages[-1] is messages[-1]
    assert result.summary.startswith("read seven files")
    assert "<read-files>" in result.summary
    assert compactor.previous_summary == result.summary
    assert len(backend.requests) == 1
    assert PRUNED_PLACEHOLDER in backend.requests[0].messages[0].content[0].text


async def test_summarize_mode_skips_prune():
    messages = _transcript()
    backend = ScriptedBackend([text_reply("summary")])
    result = await _compactor(CompactionMode.SUMMARIZE).run(messages, backend)
    assert result.strategies == ["summarize"]
    assert PRUNED_PLACEHOLDER not in backend.requests[0].messages[0].content[0].text


async def test_previous_summary_carried_forward():
    backend = ScriptedBackend([text_reply("first summary"), text_reply("second")])
    compactor = _compactor(CompactionMode.SUMMARIZE)
    first = await compactor.run(_transcript(), backend)

    grown = [*first.messages, *_transcript()]
    second = await compactor.run(grown, backend)

    prompt = backend.requests[1].messages[0].content[0].text
    assert "<previous-summary>\nfirst summary" in prompt
    assert second.summary.startswith("second")
    assert compactor.previous_summary == second.summary


async def test_seeded_previous_summary_used():
    backend = ScriptedBackend([text_reply("new")])
    compactor = _compactor(
        CompactionMode.SUMMARIZE, previous_summary="from last session",
    )
    await compactor.run(_transcript(), backend)
    prompt = backend.requests[0].messages[0].content[0].text
    assert "from last session" in prompt


# ==============================================================================
# Failures
# ==============================================================================


async def test_summarize_without_backend_raises():
    with pytest.raises(CompactionError) as exc_info:
        await _compactor(CompactionMode.SUMMARIZE).run(_transcript())
    assert exc_info.value.code == "SUMMARIZATION_UNAVAILABLE"


async def test_summarization_failure_leaves_state_untouched():
    messages = _transcript()
    snapshot = list(messages)
    compactor = _compactor(previous_summary="kept")

    with pytest.raises(SummarizationError):
        await compactor.run(messages, ScriptedBackend([error_reply("overloaded")]))

    assert messages == snapshot
    assert compactor.previous_summary == "kept"
    assert all(
        m.content[0].result != PRUNED_PLACEHOLDER
        for m in messages if m.role == "tool"
    )
