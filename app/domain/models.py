from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class SessionRef(BaseModel):
    """Identity of a record processed by the analysis pipeline."""

    id: UUID
    trial: bool = False

    model_config = ConfigDict(frozen=True)

    @property
    def label(self) -> str:
        return f"{'trial' if self.trial else 'session'}:{self.id}"


class SessionSnapshot(BaseModel):
    """Read-only view of a session or trial session row."""

    id: UUID
    trial: bool = False
    title: Optional[str] = None
    prompt_text: Optional[str] = None
    language: str = "en"
    media_kind: str = "audio"
    media_keys: list[str] = Field(default_factory=list)
    processing_state: str = "pending"
    progress_percent: int = 0
    completed: bool = False
    incomplete_reason: Optional[str] = None
    duration_ms: Optional[int] = None
    processed_at: Optional[datetime] = None
    analysis_result: Optional[dict[str, Any]] = None
    target_seconds: Optional[int] = None
    minimum_duration_enforced: bool = False
    expires_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True, frozen=True)

    @property
    def ref(self) -> SessionRef:
        return SessionRef(id=self.id, trial=self.trial)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and now >= self.expires_at


__all__ = ["SessionRef", "SessionSnapshot"]
