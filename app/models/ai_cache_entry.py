"""Persistent key/value rows backing the AI response cache."""

from __future__ import annotations

from sqlalchemy import Column, DateTime, String

from app.models.base import Base, JsonType, utcnow


class AiCacheEntry(Base):
    __tablename__ = "ai_cache_entries"

    key = Column(String(255), primary_key=True)
    value = Column(JsonType, nullable=False)
    expires_at = Column(DateTime, nullable=False, index=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


__all__ = ["AiCacheEntry"]
