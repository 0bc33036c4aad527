"""Shared fakes for the analysis pipeline tests."""

from __future__ import annotations

import os

os.environ.setdefault("DB_URL_OVERRIDE", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("BEDROCK_ENABLED", "false")

import io  # noqa: E402
import uuid  # noqa: E402
from contextlib import asynccontextmanager  # noqa: E402
from dataclasses import dataclass  # noqa: E402
from pathlib import Path  # noqa: E402
from typing import Any, Optional, Sequence  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from app.application.interfaces import (  # noqa: E402
    BlobRef,
    ErrorReporterInterface,
    MediaStoreInterface,
    SessionStoreInterface,
)
from app.config.settings import AnalysisThresholds  # noqa: E402
from app.domain.models import SessionRef, SessionSnapshot  # noqa: E402
from app.models import Base  # noqa: E402
from app.models.base import utcnow  # noqa: E402
from app.pipelines.analysis.errors import RecordNotFound  # noqa: E402
from app.pipelines.analysis.types import DetectedIssue, ExtractedMedia, Word  # noqa: E402
from app.services.ai_cache import InMemoryAiCache  # noqa: E402
from app.services.transcribe import ProviderTranscript  # noqa: E402


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


def make_words(text: str, *, start_ms: int = 0, step_ms: int = 400, length_ms: int = 300) -> tuple[Word, ...]:
    """Evenly spaced timed words for ``text``."""

    words = []
    for index, token in enumerate(text.split()):
        begin = start_ms + index * step_ms
        words.append(Word(text=token, start_ms=begin, end_ms=begin + length_ms, confidence=0.99))
    return tuple(words)


def filler_issue(start_ms: int, text: str = "um", **changes: Any) -> DetectedIssue:
    values = dict(
        kind="filler_word",
        category="filler_words",
        start_ms=start_ms,
        end_ms=start_ms + 300,
        text=text,
        severity="medium",
        tip="Pause silently instead of filling the gap.",
    )
    values.update(changes)
    return DetectedIssue(**values)


class FakeSessionStore(SessionStoreInterface):
    """Dict-backed store that keeps every update for assertions."""

    def __init__(self) -> None:
        self.rows: dict[uuid.UUID, dict[str, Any]] = {}
        self.issues: dict[uuid.UUID, list[DetectedIssue]] = {}
        self.embeddings: dict[uuid.UUID, list] = {}
        self.updates: list[dict[str, Any]] = []
        self.released: list[str] = []

    def add(self, *, trial: bool = False, **fields: Any) -> SessionRef:
        session_id = fields.pop("id", None) or uuid.uuid4()
        row = {
            "id": session_id,
            "trial": trial,
            "title": None,
            "prompt_text": None,
            "language": "en",
            "media_kind": "audio",
            "media_keys": ["uploads/recording.webm"],
            "processing_state": "pending",
            "progress_percent": 0,
            "completed": False,
            "incomplete_reason": None,
            "duration_ms": None,
            "processed_at": None,
            "analysis_result": None,
            "error_details": None,
            "target_seconds": None,
            "minimum_duration_enforced": False,
            "expires_at": None,
            "token": uuid.uuid4().hex,
            "lease_token": None,
            "lease_expires_at": None,
            "updated_at": utcnow(),
        }
        row.update(fields)
        self.rows[session_id] = row
        return SessionRef(id=session_id, trial=trial)

    def row(self, ref: SessionRef) -> dict[str, Any]:
        return self.rows[ref.id]

    def _get(self, ref: SessionRef) -> dict[str, Any]:
        row = self.rows.get(ref.id)
        if row is None or row["trial"] != ref.trial:
            raise RecordNotFound(f"{ref.label} not found")
        return row

    @staticmethod
    def _snapshot(row: dict[str, Any]) -> SessionSnapshot:
        fields = set(SessionSnapshot.model_fields)
        return SessionSnapshot(**{key: value for key, value in row.items() if key in fields})

    async def load(self, ref: SessionRef) -> SessionSnapshot:
        return self._snapshot(self._get(ref))

    async def find_trial_by_token(self, token: str) -> SessionSnapshot:
        for row in self.rows.values():
            if row["trial"] and row["token"] == token:
                return self._snapshot(row)
        raise RecordNotFound("trial session not found")

    async def update(self, ref: SessionRef, **fields: Any) -> None:
        row = self._get(ref)
        self.updates.append(dict(fields))
        row.update(fields)
        row["updated_at"] = utcnow()

    async def replace_issues(self, ref: SessionRef, issues: Sequence[DetectedIssue]) -> int:
        if ref.trial:
            return 0
        self.issues[ref.id] = list(issues)
        return len(issues)

    async def list_issues(self, ref: SessionRef) -> list[DetectedIssue]:
        return list(self.issues.get(ref.id, []))

    async def acquire_lease(self, ref: SessionRef, token: str, ttl_seconds: int) -> bool:
        row = self._get(ref)
        if row["lease_token"] is not None:
            return False
        row["lease_token"] = token
        return True

    async def release_lease(self, ref: SessionRef, token: str) -> None:
        row = self._get(ref)
        if row["lease_token"] == token:
            row["lease_token"] = None
            row["lease_expires_at"] = None
        self.released.append(token)

    async def store_embeddings(self, ref: SessionRef, vectors) -> None:
        self.embeddings[ref.id] = list(vectors)

    async def find_stuck(self, older_than):
        return [
            SessionRef(id=row["id"], trial=row["trial"])
            for row in self.rows.values()
            if row["processing_state"] in ("processing", "preview_ready", "ai_analyzing")
            and row["updated_at"] < older_than
        ]

    async def delete_expired_trials(self, now) -> int:
        expired = [
            key
            for key, row in self.rows.items()
            if row["trial"] and row["expires_at"] is not None and row["expires_at"] <= now
        ]
        for key in expired:
            del self.rows[key]
        return len(expired)

    def progress_history(self) -> list[int]:
        return [update["progress_percent"] for update in self.updates if "progress_percent" in update]

    def state_history(self) -> list[str]:
        return [update["processing_state"] for update in self.updates if "processing_state" in update]


@dataclass(frozen=True)
class FakeBlob(BlobRef):
    payload: bytes = b"RIFF-fake-audio"

    def open(self):
        return io.BytesIO(self.payload)


class FakeMediaStore(MediaStoreInterface):
    def __init__(self) -> None:
        self.deleted: list[str] = []

    async def fetch_first_attached_blob(self, session: SessionSnapshot) -> BlobRef:
        return FakeBlob(key=session.media_keys[0], filename="recording.webm")

    async def delete_blobs(self, keys) -> None:
        self.deleted.extend(keys)


class FakeExtractor:
    """Yields a fixed ``ExtractedMedia`` or raises the configured error."""

    def __init__(self, duration_seconds: float = 30.0, error: Exception | None = None) -> None:
        self.duration_seconds = duration_seconds
        self.error = error
        self.cleaned_up = 0

    @asynccontextmanager
    async def extract(self, blob):
        if self.error is not None:
            raise self.error
        try:
            yield ExtractedMedia(
                audio_path=Path("/tmp/fake/audio.wav"),
                duration_seconds=self.duration_seconds,
                format="wav",
                sample_rate=16000,
                channels=1,
                file_size_bytes=960_000,
                source_format="webm",
            )
        finally:
            self.cleaned_up += 1


class FakeSpeechToText:
    def __init__(self, transcript: str = "", words: Sequence[Word] = (), error: Exception | None = None) -> None:
        self.transcript = transcript
        self.words = tuple(words)
        self.error = error
        self.calls: list[dict[str, Any]] = []

    async def transcribe_file(self, audio_path, *, language_code, language_model=None):
        self.calls.append({"language_code": language_code, "language_model": language_model})
        if self.error is not None:
            raise self.error
        return ProviderTranscript(transcript=self.transcript, words=self.words)


class FakeLlm:
    """Stands in for ``BedrockLlmClient``; replies are consumed in order."""

    def __init__(self, *replies: Any, configured: bool = True, quota_exhausted: bool = False) -> None:
        self.replies = list(replies)
        self.is_configured = configured
        self.quota_exhausted = quota_exhausted
        self.calls: list[dict[str, Any]] = []

    async def invoke(self, **kwargs: Any) -> Optional[str]:
        self.calls.append(kwargs)
        reply = self.replies.pop(0) if self.replies else None
        if isinstance(reply, BaseException):
            raise reply
        return reply


class FakeEmbeddingClient:
    def __init__(self, configured: bool = True, error: Exception | None = None) -> None:
        self.is_configured = configured
        self.model_id = "test-embed"
        self.error = error
        self.inputs: list[str] = []

    async def embed(self, text: str) -> list[float]:
        if self.error is not None:
            raise self.error
        self.inputs.append(text)
        return [0.1, 0.2, 0.3]


class RecordingReporter(ErrorReporterInterface):
    def __init__(self) -> None:
        self.reports: list[tuple[BaseException, dict]] = []

    def report(self, exc, context) -> None:
        self.reports.append((exc, dict(context)))


@pytest.fixture
def thresholds() -> AnalysisThresholds:
    return AnalysisThresholds()


@pytest.fixture
def store() -> FakeSessionStore:
    return FakeSessionStore()


@pytest.fixture
def cache() -> InMemoryAiCache:
    return InMemoryAiCache()


@pytest.fixture
async def sql_scope():
    """Fresh in-memory SQLite database with every table created."""

    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    @asynccontextmanager
    async def scope():
        async with factory() as session:
            yield session

    yield scope
    await engine.dispose()
