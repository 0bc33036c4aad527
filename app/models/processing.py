"""Processing state vocabulary and the columns shared by analysable sessions."""

from __future__ import annotations

from enum import Enum

from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text

from app.models.base import JsonType, utcnow


class ProcessingState(str, Enum):
    """Lifecycle states of an analysis run."""

    PENDING = "pending"
    PROCESSING = "processing"
    PREVIEW_READY = "preview_ready"
    AI_ANALYZING = "ai_analyzing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ProcessingState.COMPLETED, ProcessingState.FAILED)


class ProcessingColumnsMixin:
    """Columns every record processed by the analysis pipeline carries."""

    title = Column(String(255), nullable=True)
    prompt_text = Column(Text, nullable=True)
    language = Column(String(10), nullable=False, default="en")
    media_kind = Column(String(10), nullable=False, default="audio")
    media_keys = Column(JsonType, nullable=False, default=list)

    processing_state = Column(
        String(32),
        nullable=False,
        default=ProcessingState.PENDING.value,
        index=True,
    )
    progress_percent = Column(Integer, nullable=False, default=0)
    completed = Column(Boolean, nullable=False, default=False)
    incomplete_reason = Column(Text, nullable=True)
    duration_ms = Column(Integer, nullable=True)
    processed_at = Column(DateTime, nullable=True)
    analysis_result = Column(JsonType, nullable=True)
    error_details = Column(JsonType, nullable=True)

    lease_token = Column(String(64), nullable=True)
    lease_expires_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


__all__ = ["ProcessingState", "ProcessingColumnsMixin"]
