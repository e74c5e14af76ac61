"""Conversation Schemas — Pydantic models with field-level validation for API boundaries.

Invariants:
    - UserMessageInput.text: 1-100000 chars, stripped, non-empty
    - CompactRequest.mode falls back to the configured mode when omitted

Design Decisions:
    - field_validator for side-effect-free transforms (strip)
    - Transcript returned as dumped message dicts: same shape as SSE payloads
"""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from turnloop.core.domain_types import CompactionMode


class ConversationCreate(BaseModel):
    """Conversation creation; system prompt optional (configured default used)."""
    system_prompt: str | None = Field(None, max_length=100_000)


class ConversationResponse(BaseModel):
    id: UUID
    system_prompt: str
    message_count: int
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    created_at: datetime


class ConversationDetail(ConversationResponse):
    messages: list[dict] = Field(default_factory=list)
    last_summary: str | None = None


class UserMessageInput(BaseModel):
    """User text for a new run, a steering message or a follow-up."""
    text: str = Field(min_length=1, max_length=100_000)

    @field_validator("text")
    @classmethod
    def strip_text(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("text cannot be empty or whitespace")
        return v


class CompactRequest(BaseModel):
    mode: CompactionMode | None = None


class CompactResponse(BaseModel):
    compacted_count: int
    tokens_before: int
    tokens_after: int
    strategies: list[str] = Field(default_factory=list)
    summary: str | None = None
