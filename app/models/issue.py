"""SQLAlchemy model for detected speech issues."""

from __future__ import annotations

import uuid

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import relationship, validates

from app.models.base import Base, JsonType, utcnow

ISSUE_SOURCES = ("rule", "ai")


class Issue(Base):
    __tablename__ = "issues"
    __table_args__ = (
        CheckConstraint("start_ms >= 0", name="ck_issues_start_non_negative"),
        CheckConstraint("end_ms > start_ms", name="ck_issues_end_after_start"),
    )

    id = Column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        nullable=False,
    )
    session_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("speech_sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    kind = Column(String(64), nullable=False)
    category = Column(String(64), nullable=False)
    start_ms = Column(Integer, nullable=False)
    end_ms = Column(Integer, nullable=False)
    text = Column(Text, nullable=False, default="")
    source = Column(String(8), nullable=False)
    severity = Column(String(8), nullable=False, default="low")
    rationale = Column(Text, nullable=True)
    tip = Column(Text, nullable=True)
    confidence = Column(Float, nullable=True)
    details = Column(JsonType, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    session = relationship("SpeechSession", back_populates="issues")

    @validates("start_ms")
    def _validate_start(self, _key, value):
        if value is None or value < 0:
            raise ValueError(f"start_ms must be >= 0 (got {value!r})")
        if self.end_ms is not None and self.end_ms <= value:
            raise ValueError(f"end_ms must be greater than start_ms ({self.end_ms} <= {value})")
        return value

    @validates("end_ms")
    def _validate_end(self, _key, value):
        if value is None:
            raise ValueError("end_ms is required")
        if self.start_ms is not None and value <= self.start_ms:
            raise ValueError(f"end_ms must be greater than start_ms ({value} <= {self.start_ms})")
        return value

    @validates("source")
    def _validate_source(self, _key, value):
        if value not in ISSUE_SOURCES:
            raise ValueError(f"Unknown issue source {value!r}")
        return value

    @property
    def duration_ms(self) -> int:
        return self.end_ms - self.start_ms


__all__ = ["Issue", "ISSUE_SOURCES"]
