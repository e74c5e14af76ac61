"""Error Hierarchy — typed, categorized exceptions for all turnloop failure modes.

Invariants:
    - Every error has a code (str), category (ErrorCategory), severity (ErrorSeverity)
      and an HTTP status; subclasses declare them as class attributes
    - to_response() produces the REST envelope; to_sse_event() the SSE envelope
    - Tool failures and model failures are NOT raised through this hierarchy inside
      a run: tools become error tool-results, model failures become the fatal sentinel

Design Decisions:
    - Single hierarchy with TurnloopError base: FastAPI global handler catches all
    - ErrorContext as dataclass: observability fields without coupling to logging
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class ErrorSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class ErrorCategory(str, Enum):
    VALIDATION = "validation"
    RESOURCE_NOT_FOUND = "resource_not_found"
    CONFLICT = "conflict"
    CANCELLED = "cancelled"
    DATABASE = "database"
    EXTERNAL_API = "external_api"
    INTERNAL = "internal"


_RECOVERABLE = (ErrorSeverity.INFO, ErrorSeverity.WARNING)


@dataclass
class ErrorContext:
    """Where the error happened; every field optional."""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    conversation_id: str | None = None
    tool_name: str | None = None
    turn: int | None = None
    user_message: str | None = None
    retry_after_ms: int | None = None
    debug_info: dict[str, Any] | None = None


class TurnloopError(Exception):
    """Base exception for all turnloop errors."""
    code = "TURNLOOP_ERROR"
    category = ErrorCategory.INTERNAL
    severity = ErrorSeverity.ERROR
    http_status = 500

    def __init__(
        self,
        message: str,
        context: ErrorContext | None = None,
        *,
        code: str | None = None,
        category: ErrorCategory | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.context = context or ErrorContext()
        if code is not None:
            self.code = code
        if category is not None:
            self.category = category

    @property
    def recoverable(self) -> bool:
        return self.severity in _RECOVERABLE

    def to_response(self) -> dict:
        """REST body: {"error": {code, message, category, severity, timestamp, context}}."""
        ctx = self.context
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "category": self.category.value,
                "severity": self.severity.value,
                "timestamp": ctx.timestamp.isoformat(),
                "context": {
                    "conversation_id": ctx.conversation_id,
                    "tool_name": ctx.tool_name,
                    "turn": ctx.turn,
                    "retry_after_ms": ctx.retry_after_ms,
                },
            },
        }

    def to_sse_event(self) -> dict:
        """In-stream error event, shaped like every other SSE event."""
        return {
            "type": "error",
            "data": {
                "code": self.code,
                "message": self.context.user_message or self.message,
                "severity": self.severity.value,
                "recoverable": self.recoverable,
                "tool_name": self.context.tool_name,
            },
        }


# ─── Usage Errors (400-level) ───────────────────────────────────

class EmptyTranscriptError(TurnloopError):
    """Continuation requested on a transcript with no messages."""
    code = "EMPTY_TRANSCRIPT"
    category = ErrorCategory.VALIDATION
    http_status = 400

    def __init__(self, context: ErrorContext | None = None):
        super().__init__("Cannot continue: no messages in context", context)


class DuplicateToolError(TurnloopError):
    code = "DUPLICATE_TOOL"
    category = ErrorCategory.VALIDATION
    http_status = 400

    def __init__(self, tool_name: str, context: ErrorContext | None = None):
        super().__init__(f"Tool '{tool_name}' is already registered", context)
        self.context.tool_name = tool_name


class ResourceNotFoundError(TurnloopError):
    code = "RESOURCE_NOT_FOUND"
    category = ErrorCategory.RESOURCE_NOT_FOUND
    http_status = 404

    def __init__(
        self, resource_type: str, resource_id: str, context: ErrorContext | None = None,
    ):
        super().__init__(f"{resource_type} '{resource_id}' not found", context)


class ConcurrencyError(TurnloopError):
    """A second run or a compaction raced an active run."""
    code = "CONCURRENCY_CONFLICT"
    category = ErrorCategory.CONFLICT
    http_status = 409


class TranscriptBusyError(ConcurrencyError):
    """A second run tried to take ownership of a transcript already in use."""
    code = "TRANSCRIPT_BUSY"

    def __init__(self, context: ErrorContext | None = None):
        super().__init__("Transcript is already owned by an active run", context)


class RunCancelledError(TurnloopError):
    """The run's cancellation token fired while work was in flight."""
    code = "RUN_CANCELLED"
    category = ErrorCategory.CANCELLED
    severity = ErrorSeverity.WARNING
    http_status = 499

    def __init__(self, context: ErrorContext | None = None):
        super().__init__("Run cancelled", context)


# ─── Compaction ─────────────────────────────────────────────────

class CompactionError(TurnloopError):
    """Context compaction could not complete; transcript left unchanged."""
    code = "COMPACTION_FAILED"

    def __init__(
        self, message: str, code: str | None = None,
        category: ErrorCategory | None = None,
        context: ErrorContext | None = None,
    ):
        super().__init__(message, context, code=code, category=category)


class SummarizationError(CompactionError):
    """The summarization model call failed or returned nothing usable."""
    code = "SUMMARIZATION_FAILED"
    category = ErrorCategory.EXTERNAL_API

    def __init__(self, message: str, context: ErrorContext | None = None):
        super().__init__(f"Summarization failed: {message}", context=context)


# ─── Infrastructure Errors (500-level) ──────────────────────────

class EventChannelClosedError(TurnloopError):
    """Event pushed after the channel already produced its terminal event."""
    code = "EVENT_CHANNEL_CLOSED"
    severity = ErrorSeverity.CRITICAL

    def __init__(self, event_type: str | None = None, context: ErrorContext | None = None):
        detail = f" ({event_type})" if event_type else ""
        super().__init__(
            f"Event channel already terminated; rejected push{detail}", context,
        )


class CorruptTranscriptError(TurnloopError):
    """Stored message history failed validation; no run can be built on it."""
    code = "CORRUPT_TRANSCRIPT"
    category = ErrorCategory.DATABASE

    def __init__(self, detail: str, context: ErrorContext | None = None):
        super().__init__(f"Stored transcript is invalid: {detail}", context)


class DatabaseError(TurnloopError):
    code = "DATABASE_ERROR"
    category = ErrorCategory.DATABASE
    severity = ErrorSeverity.CRITICAL
    http_status = 503

    def __init__(self, message: str, operation: str, context: ErrorContext | None = None):
        super().__init__(f"Database {operation} failed: {message}", context)
        self.operation = operation


class AnthropicAPIError(TurnloopError):
    """Anthropic API call failed after the client's retry policy gave up."""
    code = "ANTHROPIC_API_ERROR"
    category = ErrorCategory.EXTERNAL_API
    severity = ErrorSeverity.CRITICAL
    http_status = 503

    def __init__(
        self,
        message: str,
        api_error_type: str,
        retry_after_ms: int | None = None,
        context: ErrorContext | None = None,
    ):
        super().__init__(f"Anthropic API error ({api_error_type}): {message}", context)
        self.context.retry_after_ms = retry_after_ms
        self.api_error_type = api_error_type
