"""Vector representations of session highlights."""

from __future__ import annotations

import uuid

from sqlalchemy import Column, DateTime, String, Text, Uuid

from app.models.base import Base, JsonType, utcnow


class SessionEmbedding(Base):
    __tablename__ = "session_embeddings"

    id = Column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        nullable=False,
    )
    session_id = Column(Uuid(as_uuid=True), nullable=False, index=True)
    label = Column(String(64), nullable=False)
    content = Column(Text, nullable=False)
    vector = Column(JsonType, nullable=False)
    model_id = Column(String(128), nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)


__all__ = ["SessionEmbedding"]
