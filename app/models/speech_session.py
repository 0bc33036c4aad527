"""SQLAlchemy model for permanent recording sessions."""

from __future__ import annotations

import uuid

from sqlalchemy import Boolean, Column, Integer, Uuid
from sqlalchemy.orm import relationship

from app.models.base import Base
from app.models.processing import ProcessingColumnsMixin


class SpeechSession(ProcessingColumnsMixin, Base):
    __tablename__ = "speech_sessions"

    id = Column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        nullable=False,
    )
    user_id = Column(Integer, nullable=True, index=True)
    target_seconds = Column(Integer, nullable=True)
    minimum_duration_enforced = Column(Boolean, nullable=False, default=False)

    issues = relationship(
        "Issue",
        back_populates="session",
        cascade="all, delete-orphan",
        order_by="Issue.start_ms",
    )


__all__ = ["SpeechSession"]
