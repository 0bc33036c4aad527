from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, BinaryIO, Mapping, Optional, Sequence

from app.domain.models import SessionRef, SessionSnapshot
from app.pipelines.analysis.types import DetectedIssue, EmbeddingVector


class SessionStoreInterface(ABC):
    """Persistence contract for sessions, trial sessions and their issues"""

    @abstractmethod
    async def load(self, ref: SessionRef) -> SessionSnapshot:
        """Return the current row or raise ``RecordNotFound``."""

    @abstractmethod
    async def find_trial_by_token(self, token: str) -> SessionSnapshot:
        ...

    @abstractmethod
    async def update(self, ref: SessionRef, **fields: Any) -> None:
        ...

    @abstractmethod
    async def replace_issues(self, ref: SessionRef, issues: Sequence[DetectedIssue]) -> int:
        """Delete every issue of the session and insert ``issues`` in one transaction."""

    @abstractmethod
    async def list_issues(self, ref: SessionRef) -> list[DetectedIssue]:
        ...

    @abstractmethod
    async def acquire_lease(self, ref: SessionRef, token: str, ttl_seconds: int) -> bool:
        ...

    @abstractmethod
    async def release_lease(self, ref: SessionRef, token: str) -> None:
        ...

    @abstractmethod
    async def store_embeddings(self, ref: SessionRef, vectors: Sequence[EmbeddingVector]) -> None:
        ...

    @abstractmethod
    async def find_stuck(self, older_than: datetime) -> list[SessionRef]:
        ...

    @abstractmethod
    async def delete_expired_trials(self, now: datetime) -> int:
        ...


@dataclass(frozen=True)
class BlobRef(ABC):
    """Handle to an uploaded recording in the media store"""

    key: str
    filename: Optional[str] = None
    content_type: Optional[str] = None

    @abstractmethod
    def open(self) -> BinaryIO:
        """Return a readable byte stream; callers close it."""


class MediaStoreInterface(ABC):
    """Contract for the blob store holding uploaded recordings"""

    @abstractmethod
    async def fetch_first_attached_blob(self, session: SessionSnapshot) -> BlobRef:
        ...

    @abstractmethod
    async def delete_blobs(self, keys: Sequence[str]) -> None:
        ...


class AiCacheInterface(ABC):
    """Key/value cache with per-entry TTL for paid AI responses"""

    @abstractmethod
    async def get(self, key: str) -> Optional[Mapping[str, Any]]:
        ...

    @abstractmethod
    async def set(self, key: str, value: Mapping[str, Any], ttl_seconds: float) -> None:
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...

    @abstractmethod
    async def clear_expired(self) -> int:
        ...


class ErrorReporterInterface(ABC):
    """External error-tracking collaborator"""

    @abstractmethod
    def report(self, exc: BaseException, context: Mapping[str, Any]) -> None:
        ...


class JobQueueInterface(ABC):
    """Transport handing processing jobs to workers"""

    @abstractmethod
    async def publish(self, message: Mapping[str, Any]) -> bool:
        ...


__all__ = [
    "AiCacheInterface",
    "BlobRef",
    "ErrorReporterInterface",
    "JobQueueInterface",
    "MediaStoreInterface",
    "SessionStoreInterface",
]
