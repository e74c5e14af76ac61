"""Context Compactor — threshold-driven prune and/or summarize, commit-or-no-op.

Invariants:
    - Below the threshold the transcript is returned unchanged
    - Prune runs first (when the mode allows); summarize only if the pruned
      estimate still exceeds the threshold
    - Never mutates the input list; on any failure nothing is returned, the
      error propagates as a CompactionError subclass
    - The last summary is carried forward into the next summarization

Design Decisions:
    - Invoked by the host between runs, never from inside the turn loop
    - Backend passed per call: the compactor may run without one when the
      mode never summarizes
"""

import logging
from dataclasses import dataclass, field

from turnloop.core.backend_protocols import CancellationLike, ModelBackend
from turnloop.core.context_compaction import (
    CompactionResult, PruneOptions, estimate_total, prune,
)
from turnloop.core.domain_types import CompactionMode
from turnloop.core.errors import CompactionError, ErrorCategory
from turnloop.services.context_summarizer import SummarizeOptions, summarize_history

logger = logging.getLogger(__name__)


@dataclass
class CompactorOptions:
    threshold: int = 30_000
    mode: CompactionMode = CompactionMode.HYBRID
    prune: PruneOptions = field(default_factory=PruneOptions)
    summarize: SummarizeOptions = field(default_factory=SummarizeOptions)


class ContextCompactor:
    """Shrinks a transcript's estimated footprint below a threshold."""

    def __init__(
        self, options: CompactorOptions | None = None,
        previous_summary: str | None = None,
    ):
        self.options = options or CompactorOptions()
        self._previous_summary = previous_summary

    @property
    def previous_summary(self) -> str | None:
        return self._previous_summary

    def needs_compaction(self, messages: list) -> bool:
        return estimate_total(messages) > self.options.threshold

    async def run(
        self, messages: list, backend: ModelBackend | None = None,
        cancel: CancellationLike | None = None,
    ) -> CompactionResult:
        tokens_before = estimate_total(messages)
        if tokens_before <= self.options.threshold:
            return CompactionResult(list(messages), 0, tokens_before, tokens_before)

        mode = self.options.mode
        working = list(messages)
        compacted = 0
        strategies: list[str] = []
        summary = None

        if mode in (CompactionMode.PRUNE, CompactionMode.HYBRID):
            pruned = prune(working, self.options.prune)
            if pruned.changed:
                working = pruned.messages
                compacted += pruned.compacted_count
                strategies.append("prune")

        if (
            mode in (CompactionMode.SUMMARIZE, CompactionMode.HYBRID)
            and estimate_total(working) > self.options.threshold
        ):
            if backend is None:
                raise CompactionError(
                    "Summarization required but no model backend configured",
                    "SUMMARIZATION_UNAVAILABLE", ErrorCategory.VALIDATION,
                )
            summarized = await summarize_history(
                working, backend, self.options.summarize,
                self._previous_summary, cancel,
            )
            if summarized.changed:
                working = summarized.messages
                compacted += summarized.compacted_count
                summary = summarized.summary
                strategies.append("summarize")
                self._previous_summary = summary

        tokens_after = estimate_total(working)
        logger.info(
            "Compaction finished: %s", ",".join(strategies) or "no-op",
            extra={
                "compacted_count": compacted,
                "tokens_before": tokens_before,
                "tokens_after": tokens_after,
            },
        )
        return CompactionResult(
            working,
            compacted_count=compacted,
            tokens_before=tokens_before,
            tokens_after=tokens_after,
            summary=summary,
            strategies=strategies,
        )
