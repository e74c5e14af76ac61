"""Conversation ORM — one persisted transcript with its carried-forward summary.

Invariants:
    - id is UUID primary key
    - message_history stores the transcript as dumped messages (dump_messages)
    - last_summary is the compactor's previous summary, carried into the next one
    - Token totals only ever grow (summed from assistant usage after each run)

Design Decisions:
    - JSON column for message_history: the transcript is loaded and saved whole
      around each run, never queried by field
    - No child tables: tool calls and results live inside the transcript
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import DateTime, Integer, JSON, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from turnloop.db.base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Conversation(Base):
    __tablename__ = "conversations"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4,
    )
    system_prompt: Mapped[str] = mapped_column(Text, nullable=False, default="")
    message_history: Mapped[list] = mapped_column(
        JSON, nullable=False, default=list,
    )
    last_summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    total_input_tokens: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0,
    )
    total_output_tokens: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow,
        onupdate=_utcnow,
    )
