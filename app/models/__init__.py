"""SQLAlchemy models for the analysis backend."""

from .base import Base
from .ai_cache_entry import AiCacheEntry  # noqa: F401
from .issue import Issue  # noqa: F401
from .processing import ProcessingState  # noqa: F401
from .session_embedding import SessionEmbedding  # noqa: F401
from .speech_session import SpeechSession  # noqa: F401
from .trial_session import TrialSession  # noqa: F401

__all__ = [
    "Base",
    "AiCacheEntry",
    "Issue",
    "ProcessingState",
    "SessionEmbedding",
    "SpeechSession",
    "TrialSession",
]
