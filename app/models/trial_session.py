"""SQLAlchemy model for unauthenticated, expiring trial sessions."""

from __future__ import annotations

import secrets
import uuid
from datetime import datetime, timedelta

from sqlalchemy import Column, DateTime, String, Uuid

from app.models.base import Base, utcnow
from app.models.processing import ProcessingColumnsMixin

TRIAL_LIFETIME = timedelta(hours=24)


def generate_trial_token() -> str:
    return secrets.token_urlsafe(24)


def default_expiry() -> datetime:
    return utcnow() + TRIAL_LIFETIME


class TrialSession(ProcessingColumnsMixin, Base):
    """Same processing lifecycle as a session, plus a token and a hard expiry."""

    __tablename__ = "trial_sessions"

    id = Column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        nullable=False,
    )
    token = Column(
        String(64),
        unique=True,
        nullable=False,
        index=True,
        default=generate_trial_token,
    )
    expires_at = Column(DateTime, nullable=False, default=default_expiry, index=True)

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) >= self.expires_at


__all__ = ["TrialSession", "TRIAL_LIFETIME", "generate_trial_token"]
