"""Domain Types — rich types that replace bare primitives across the codebase.

Invariants:
    - Timestamps are wall-clock epoch milliseconds (int)
    - FATAL_TIMESTAMP (-1) is reserved for the terminal assistant message of a
      fatally-failed run and never produced anywhere else
    - All valid states encoded as Enums

Design Decisions:
    - NewType over dataclass wrappers: zero runtime cost, full type-checker support
    - str Enums: serialize to JSON without custom encoders (SSE + JSON column)
"""

import time
from enum import Enum
from typing import NewType


# ─── Identity Types ──────────────────────────────────────────────

ToolCallId = NewType("ToolCallId", str)
ToolName = NewType("ToolName", str)


# ─── Constants ───────────────────────────────────────────────────

FATAL_TIMESTAMP = -1


def now_ms() -> int:
    """Current wall-clock time as epoch milliseconds."""
    return int(time.time() * 1000)


# ─── Enums ───────────────────────────────────────────────────────

class StopReason(str, Enum):
    """Why an assistant message stopped."""
    STOP = "stop"
    LENGTH = "length"
    TOOL_CALLS = "tool_calls"
    ERROR = "error"
    ABORTED = "aborted"


class CompactionMode(str, Enum):
    """Which compaction strategies the compactor may apply."""
    PRUNE = "prune"
    SUMMARIZE = "summarize"
    HYBRID = "hybrid"
