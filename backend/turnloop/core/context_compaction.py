"""Context Compaction — pure token estimation, pruning and cut-point selection.

Invariants:
    - All functions are pure (no IO, no async, no DB)
    - Returns NEW lists; never mutates input messages
    - The two most recent user-delimited turns are never touched
    - Pruning is commit-or-no-op: either every marked block is rewritten or the
      transcript is returned unchanged
    - PRUNED_PLACEHOLDER blocks are neither counted nor re-marked (idempotency)

Design Decisions:
    - Token estimate is len(json) / 4: cheap and best effort, not a tokenizer
    - Prune marks individual tool-result blocks so protected tools sharing a
      message with prunable ones keep their content
    - Cut point never leaves a tool message at the head of the kept segment:
      the matching tool-call must stay with its result
"""

import math
from dataclasses import dataclass, field

from turnloop.core.messages import ToolResultContent


PRUNED_PLACEHOLDER = "(result pruned)"
DEFAULT_PROTECTED_TOOLS = frozenset({"skill"})
DEFAULT_PROTECTED_TURNS = 2


@dataclass(frozen=True)
class PruneOptions:
    minimum: int = 20_000
    protect: int = 40_000
    protected_tools: frozenset[str] = DEFAULT_PROTECTED_TOOLS
    protected_turns: int = DEFAULT_PROTECTED_TURNS


@dataclass
class CompactionResult:
    """Outcome of one compaction strategy (or the whole compactor run)."""
    messages: list
    compacted_count: int = 0
    tokens_before: int = 0
    tokens_after: int = 0
    summary: str | None = None
    strategies: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return self.compacted_count > 0


# === Token estimation =========================================================

def estimate_tokens(message) -> int:
    """Best-effort token count of one message (or content block)."""
    return math.ceil(len(message.model_dump_json()) / 4)


def estimate_total(messages: list) -> int:
    return sum(estimate_tokens(m) for m in messages)


# === Turn boundaries ==========================================================

def protected_start(messages: list, protected_turns: int = DEFAULT_PROTECTED_TURNS) -> int:
    """Index where the protected window of recent turns begins.

    Returns 0 when the transcript holds fewer user messages than the window,
    meaning the whole transcript is protected.
    """
    if protected_turns <= 0:
        return len(messages)
    turns = 0
    for i in range(len(messages) - 1, -1, -1):
        if messages[i].role == "user":
            turns += 1
            if turns >= protected_turns:
                return i
    return 0


# === Prune ====================================================================

def prune(messages: list, options: PruneOptions | None = None) -> CompactionResult:
    """Replace old, large tool results with PRUNED_PLACEHOLDER.

    Scans newest to oldest; outside the protected turns, eligible tool-result
    blocks accumulate an estimate and every block past `protect` is marked.
    Commits only when the marked volume exceeds `minimum`.
    """
    options = options or PruneOptions()
    tokens_before = estimate_total(messages)
    marked, pruned_tokens = _mark_prunable(messages, options)

    if pruned_tokens <= options.minimum:
        return CompactionResult(
            list(messages), 0, tokens_before, tokens_before,
        )

    result = [
        _prune_message(msg, marked[i]) if i in marked else msg
        for i, msg in enumerate(messages)
    ]
    return CompactionResult(
        result,
        compacted_count=sum(len(blocks) for blocks in marked.values()),
        tokens_before=tokens_before,
        tokens_after=estimate_total(result),
        strategies=["prune"],
    )


def _mark_prunable(
    messages: list, options: PruneOptions,
) -> tuple[dict[int, set[int]], int]:
    """Backward pass. Returns ({message_index: {block_index}}, marked_tokens)."""
    marked: dict[int, set[int]] = {}
    total = 0
    pruned = 0
    turns = 0

    for i in range(len(messages) - 1, -1, -1):
        msg = messages[i]
        if msg.role == "user":
            turns += 1
        if turns < options.protected_turns:
            continue
        if msg.role != "tool":
            continue
        for j, block in enumerate(msg.content):
            if not _is_prunable(block, options):
                continue
            estimate = estimate_tokens(block)
            total += estimate
            if total > options.protect:
                pruned += estimate
                marked.setdefault(i, set()).add(j)
    return marked, pruned


def _is_prunable(block, options: PruneOptions) -> bool:
    if block.type != "tool-result":
        return False
    if block.tool_name in options.protected_tools:
        return False
    return block.result != PRUNED_PLACEHOLDER


def _prune_message(msg, block_indices: set[int]):
    """Copy of msg with marked tool-result blocks replaced. Timestamp preserved."""
    content = [
        _pruned_block(block) if j in block_indices else block
        for j, block in enumerate(msg.content)
    ]
    return msg.model_copy(update={"content": content})


def _pruned_block(block: ToolResultContent) -> ToolResultContent:
    return block.model_copy(update={"result": PRUNED_PLACEHOLDER})


# === Summarize cut point ======================================================

def find_cut_index(
    messages: list, keep_recent_tokens: int,
    protected_turns: int = DEFAULT_PROTECTED_TURNS,
) -> int:
    """Index of the first message kept verbatim; everything before is summarized.

    0 means nothing to summarize.
    """
    cut = 0
    accumulated = 0
    for i in range(len(messages) - 1, -1, -1):
        accumulated += estimate_tokens(messages[i])
        if accumulated >= keep_recent_tokens:
            cut = i
            break

    cut = min(cut, protected_start(messages, protected_turns))
    while cut > 0 and messages[cut].role == "tool":
        cut -= 1
    return cut
