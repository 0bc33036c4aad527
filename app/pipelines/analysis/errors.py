"""Error taxonomy of the analysis pipeline and its user-facing copy.

Every stage raises a ``PipelineError`` subclass tagged with a closed
``PipelineErrorKind`` and a short ``reason``. Only the orchestrator turns
those into the sentences shown to users, so all of the copy lives in
``USER_MESSAGES`` below.
"""

from __future__ import annotations

from enum import Enum
from typing import ClassVar


class PipelineErrorKind(str, Enum):
    MEDIA_EXTRACTION = "media_extraction"
    TRANSCRIPTION = "transcription"
    ANALYSIS = "analysis"
    AI_PROVIDER = "ai_provider"
    UNEXPECTED = "unexpected"


class PipelineError(RuntimeError):
    """Base class for every error a stage can raise."""

    kind: ClassVar[PipelineErrorKind] = PipelineErrorKind.UNEXPECTED
    recoverable: ClassVar[bool] = False

    def __init__(self, message: str, *, reason: str = "generic") -> None:
        super().__init__(message)
        self.reason = reason


class MediaExtractionError(PipelineError):
    kind = PipelineErrorKind.MEDIA_EXTRACTION


class TranscriptionError(PipelineError):
    kind = PipelineErrorKind.TRANSCRIPTION


class AnalysisError(PipelineError):
    kind = PipelineErrorKind.ANALYSIS


class AiProviderError(PipelineError):
    """Raised inside the AI stages only; the refiner turns it into a fallback."""

    kind = PipelineErrorKind.AI_PROVIDER
    recoverable = True


class RecordNotFound(LookupError):
    """The session targeted by a job no longer exists."""


class LeaseUnavailable(RuntimeError):
    """Another run currently holds the processing lease for the session."""


class InvalidStateTransition(RuntimeError):
    """A run tried to move a session backwards or skip a state."""


_GENERIC_REASON = "generic"

USER_MESSAGES: dict[PipelineErrorKind, dict[str, str]] = {
    PipelineErrorKind.MEDIA_EXTRACTION: {
        "too_short": "Your recording is too short. Please record at least 1 second of audio.",
        "empty_file": "The uploaded file appears to be empty. Please try recording again.",
        "corrupted": "The audio file appears to be corrupted. Please try recording again.",
        "no_audio": (
            "The uploaded file doesn't contain any detectable audio. "
            "Please ensure you spoke during recording and try again."
        ),
        _GENERIC_REASON: "There was an issue with your audio file. Please try recording again.",
    },
    PipelineErrorKind.TRANSCRIPTION: {
        "rate_limited": "Transcription service is busy. Please try again in a few moments.",
        "auth_failed": "Speech recognition service is temporarily unavailable. Please try again later.",
        "insufficient_words_trial": "Recording too short - please speak for at least 10 seconds.",
        _GENERIC_REASON: "Unable to transcribe your speech. Please ensure you spoke clearly and try again.",
    },
    PipelineErrorKind.ANALYSIS: {
        _GENERIC_REASON: "There was an issue analyzing your speech. Please try again.",
    },
    PipelineErrorKind.AI_PROVIDER: {
        "rate_limited": "AI enhancement is temporarily busy. Your basic speech analysis is complete.",
        "quota_exceeded": "AI enhancement is temporarily unavailable. Your basic speech analysis is complete.",
        _GENERIC_REASON: "AI enhancement is temporarily unavailable. Your basic speech analysis is complete.",
    },
    PipelineErrorKind.UNEXPECTED: {
        _GENERIC_REASON: "An unexpected error occurred during analysis. Please try again.",
    },
}

STUCK_SESSION_MESSAGE = "Processing took too long and was stopped. Please try again."

_STAGE_BY_KIND = {
    PipelineErrorKind.MEDIA_EXTRACTION: "media_extraction",
    PipelineErrorKind.TRANSCRIPTION: "transcription",
    PipelineErrorKind.ANALYSIS: "analysis",
    PipelineErrorKind.AI_PROVIDER: "ai_processing",
    PipelineErrorKind.UNEXPECTED: "unknown",
}


def classify(exc: BaseException) -> tuple[PipelineErrorKind, str]:
    """Return ``(kind, reason)`` for any exception escaping a stage."""

    if isinstance(exc, PipelineError):
        return exc.kind, exc.reason
    return PipelineErrorKind.UNEXPECTED, _GENERIC_REASON


def user_message_for(kind: PipelineErrorKind, reason: str, *, trial: bool = False) -> str:
    messages = USER_MESSAGES[kind]
    if trial and reason == "insufficient_words":
        reason = "insufficient_words_trial"
    return messages.get(reason, messages[_GENERIC_REASON])


def pipeline_stage_for(kind: PipelineErrorKind) -> str:
    return _STAGE_BY_KIND[kind]


__all__ = [
    "AiProviderError",
    "AnalysisError",
    "InvalidStateTransition",
    "LeaseUnavailable",
    "MediaExtractionError",
    "PipelineError",
    "PipelineErrorKind",
    "RecordNotFound",
    "STUCK_SESSION_MESSAGE",
    "TranscriptionError",
    "USER_MESSAGES",
    "classify",
    "pipeline_stage_for",
    "user_message_for",
]
