"""Typed containers shared across the analysis pipeline.

These dataclasses intentionally live in their own module so every stage
(`extraction`, `transcription`, `rules`, `refinement`, `metrics`,
`embeddings`, `orchestrator`) can import them without creating circular
dependencies. Each stage hands the next one a frozen record instead of a
loosely-shaped dictionary.
"""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Mapping, Optional

from app.domain.models import SessionSnapshot

ISSUE_SEVERITIES = ("low", "medium", "high")


class ProcessingMode(str, Enum):
    """How a run sequences its stages."""

    SINGLE_PASS = "single_pass"
    TWO_PHASE = "two_phase"


@dataclass(frozen=True)
class ProcessingOptions:
    """Caller-supplied switches for one processing run."""

    skip_ai: bool = False
    skip_embeddings: bool = False
    language: Optional[str] = None
    reprocess: bool = False

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any] | None) -> "ProcessingOptions":
        payload = payload or {}
        return cls(
            skip_ai=bool(payload.get("skip_ai", False)),
            skip_embeddings=bool(payload.get("skip_embeddings", False)),
            language=payload.get("language") or None,
            reprocess=bool(payload.get("reprocess", False)),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ExtractedMedia:
    """Normalized audio produced by the media extractor."""

    audio_path: Path
    duration_seconds: float
    format: str
    sample_rate: int
    channels: int
    file_size_bytes: int
    source_format: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "duration_seconds": round(self.duration_seconds, 3),
            "format": self.format,
            "sample_rate": self.sample_rate,
            "channels": self.channels,
            "file_size_bytes": self.file_size_bytes,
            "source_format": self.source_format,
        }


@dataclass(frozen=True)
class Word:
    """One recognised token with its timing in milliseconds."""

    text: str
    start_ms: Optional[int]
    end_ms: Optional[int]
    confidence: Optional[float] = None

    @property
    def has_timing(self) -> bool:
        return (
            self.start_ms is not None
            and self.end_ms is not None
            and self.end_ms >= self.start_ms
        )

    @property
    def normalized(self) -> str:
        return normalize_token(self.text)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Utterance:
    text: str
    start_ms: int
    end_ms: int


@dataclass(frozen=True)
class TranscriptionResult:
    """Validated output of the transcription stage."""

    transcript: str
    words: tuple[Word, ...]
    utterances: tuple[Utterance, ...] = ()
    language_code: Optional[str] = None
    model: Optional[str] = None
    duration_seconds: Optional[float] = None

    @property
    def word_count(self) -> int:
        return len(self.words)

    @property
    def timing_coverage(self) -> float:
        if not self.words:
            return 0.0
        timed = sum(1 for word in self.words if word.has_timing)
        return timed / len(self.words)

    @property
    def timed_words(self) -> tuple[Word, ...]:
        return tuple(word for word in self.words if word.has_timing)


@dataclass(frozen=True)
class DetectedIssue:
    """A speech problem located in time.

    Construction fails for an empty or inverted range so an invalid issue
    can never reach persistence.
    """

    kind: str
    category: str
    start_ms: int
    end_ms: int
    text: str
    source: str = "rule"
    severity: str = "low"
    rationale: Optional[str] = None
    tip: Optional[str] = None
    confidence: Optional[float] = None
    details: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.start_ms < 0:
            raise ValueError(f"Issue start_ms must be >= 0 (got {self.start_ms})")
        if self.end_ms <= self.start_ms:
            raise ValueError(
                f"Issue end_ms must be greater than start_ms ({self.end_ms} <= {self.start_ms})"
            )
        if self.source not in ("rule", "ai"):
            raise ValueError(f"Unknown issue source {self.source!r}")
        if self.severity not in ISSUE_SEVERITIES:
            raise ValueError(f"Unknown issue severity {self.severity!r}")

    @property
    def duration_ms(self) -> int:
        return self.end_ms - self.start_ms

    def as_ai(self, **changes: Any) -> "DetectedIssue":
        return replace(self, source="ai", **changes)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["details"] = dict(self.details)
        payload["duration_ms"] = self.duration_ms
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "DetectedIssue":
        return cls(
            kind=payload["kind"],
            category=payload.get("category", "other"),
            start_ms=int(payload["start_ms"]),
            end_ms=int(payload["end_ms"]),
            text=payload.get("text", ""),
            source=payload.get("source", "rule"),
            severity=payload.get("severity", "low"),
            rationale=payload.get("rationale"),
            tip=payload.get("tip"),
            confidence=payload.get("confidence"),
            details=dict(payload.get("details") or {}),
        )


@dataclass(frozen=True)
class RefinementResult:
    """Outcome of the AI refiner; `fallback` marks rule issues passed through."""

    refined_issues: tuple[DetectedIssue, ...]
    insights: tuple[str, ...] = ()
    micro_tips: tuple[str, ...] = ()
    summary: Optional[str] = None
    fallback: bool = False
    fallback_reason: Optional[str] = None
    cache_hit: bool = False
    confirmed_count: int = 0
    rejected_count: int = 0
    discovered_count: int = 0

    @classmethod
    def fallback_from(
        cls,
        rule_issues: tuple[DetectedIssue, ...] | list[DetectedIssue],
        reason: str,
    ) -> "RefinementResult":
        return cls(
            refined_issues=tuple(rule_issues),
            fallback=True,
            fallback_reason=reason,
        )

    def metadata(self) -> dict[str, Any]:
        return {
            "status": "fallback" if self.fallback else "refined",
            "fallback_mode": self.fallback,
            "fallback_reason": self.fallback_reason,
            "cache_hit": self.cache_hit,
            "confirmed": self.confirmed_count,
            "rejected": self.rejected_count,
            "discovered": self.discovered_count,
            "summary": self.summary,
            "insights": list(self.insights),
        }


@dataclass(frozen=True)
class RefinementSkipped:
    reason: str

    def metadata(self) -> dict[str, Any]:
        return {"status": "skipped", "skipped": True, "reason": self.reason}


@dataclass(frozen=True)
class RelevanceOutcome:
    on_topic: bool
    relevance_score: float
    feedback: Optional[str] = None
    checked: bool = True

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class EmbeddingVector:
    label: str
    content: str
    vector: tuple[float, ...]
    model_id: str


@dataclass(frozen=True)
class EmbeddingSet:
    vectors: tuple[EmbeddingVector, ...]

    def metadata(self) -> dict[str, Any]:
        return {
            "skipped": False,
            "count": len(self.vectors),
            "labels": [vector.label for vector in self.vectors],
        }


@dataclass(frozen=True)
class EmbeddingSkipped:
    reason: str

    def metadata(self) -> dict[str, Any]:
        return {"skipped": True, "reason": self.reason}


@dataclass(frozen=True)
class StageRecord:
    """Timing and outcome of one stage, kept in pipeline_metadata."""

    name: str
    status: str
    duration_ms: int
    detail: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        payload = {"name": self.name, "status": self.status, "duration_ms": self.duration_ms}
        if self.detail:
            payload["detail"] = self.detail
        return payload


@dataclass
class PipelineRunContext:
    """Ephemeral state of one run; discarded when the job finishes."""

    session: SessionSnapshot
    mode: ProcessingMode
    options: ProcessingOptions
    attempt: int = 1
    started_at: float = field(default_factory=time.monotonic)
    current_stage: str = "pending"
    stages: list[StageRecord] = field(default_factory=list)
    media: Optional[ExtractedMedia] = None
    transcription: Optional[TranscriptionResult] = None
    rule_issues: tuple[DetectedIssue, ...] = ()
    final_issues: tuple[DetectedIssue, ...] = ()
    relevance: Optional[RelevanceOutcome] = None

    @property
    def language(self) -> str:
        return self.options.language or self.session.language or "en"

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started_at) * 1000)

    def record(self, name: str, status: str, started: float, detail: str | None = None) -> StageRecord:
        entry = StageRecord(
            name=name,
            status=status,
            duration_ms=int((time.monotonic() - started) * 1000),
            detail=detail,
        )
        self.stages.append(entry)
        return entry

    def stage_metadata(self) -> list[dict[str, Any]]:
        return [stage.to_dict() for stage in self.stages]


def normalize_token(value: str) -> str:
    """Lower-case a token and strip surrounding punctuation."""

    return value.strip().strip(".,!?;:\"'()[]{}…-").lower()


__all__ = [
    "DetectedIssue",
    "EmbeddingSet",
    "EmbeddingSkipped",
    "EmbeddingVector",
    "ExtractedMedia",
    "ISSUE_SEVERITIES",
    "PipelineRunContext",
    "ProcessingMode",
    "ProcessingOptions",
    "RefinementResult",
    "RefinementSkipped",
    "RelevanceOutcome",
    "StageRecord",
    "TranscriptionResult",
    "Utterance",
    "Word",
    "normalize_token",
]
