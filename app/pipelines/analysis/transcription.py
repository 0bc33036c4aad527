"""Transcription stage (Stage 02 of the analysis pipeline).

Wraps the Amazon Transcribe streaming service: routes the session language
to a provider locale, enforces a timeout, and validates the result before
any rule sees it.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional, Protocol

from app.config.settings import AnalysisThresholds, TranscribeConfig, settings
from app.services.transcribe import ProviderTranscript, TranscribeServiceError, get_transcribe_service

from .errors import TranscriptionError
from .types import TranscriptionResult

logger = logging.getLogger("app.services.analysis_pipeline")
transcript_logger = logging.getLogger("app.logs.transcript")

LANGUAGE_ROUTES: dict[str, str] = {
    "en": "en-US",
    "es": "es-US",
    "pt": "pt-BR",
    "fr": "fr-FR",
    "de": "de-DE",
    "it": "it-IT",
}


class SpeechToText(Protocol):
    async def transcribe_file(
        self,
        audio_path: Path,
        *,
        language_code: str,
        language_model: str | None = None,
    ) -> ProviderTranscript:
        ...


def provider_language(language: Optional[str], default: str = "en-US") -> str:
    """Map ``pt`` or ``pt-BR`` style codes onto a provider locale."""

    if not language:
        return default
    base = language.replace("_", "-").split("-", 1)[0].lower()
    return LANGUAGE_ROUTES.get(base, default)


class TranscriptionAdapter:
    def __init__(
        self,
        service: SpeechToText | None = None,
        thresholds: AnalysisThresholds | None = None,
        config: TranscribeConfig | None = None,
    ) -> None:
        self._service = service
        self._thresholds = thresholds or settings.analysis
        self._config = config or settings.transcribe

    def _resolve_service(self) -> SpeechToText:
        if self._service is None:
            self._service = get_transcribe_service()
        return self._service

    async def transcribe(
        self,
        audio_path: Path,
        language: Optional[str] = None,
        model_hint: Optional[str] = None,
        *,
        trial: bool = False,
        audio_duration_seconds: Optional[float] = None,
    ) -> TranscriptionResult:
        language_code = provider_language(language, self._config.default_language_code)
        service = self._resolve_service()
        # Audio is streamed in real time, so the budget grows with the clip.
        timeout = self._config.timeout_seconds + max(audio_duration_seconds or 0.0, 0.0)

        try:
            raw = await asyncio.wait_for(
                service.transcribe_file(
                    audio_path,
                    language_code=language_code,
                    language_model=model_hint,
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError as exc:
            raise TranscriptionError(
                f"Transcription exceeded {timeout:.0f}s", reason="timeout"
            ) from exc
        except TranscribeServiceError as exc:
            raise TranscriptionError(str(exc), reason=exc.reason) from exc

        result = TranscriptionResult(
            transcript=(raw.transcript or "").strip(),
            words=tuple(raw.words),
            utterances=tuple(raw.utterances),
            language_code=raw.language_code or language_code,
            model=raw.model or model_hint,
            duration_seconds=raw.duration_seconds,
        )
        self._validate(result, trial=trial)
        transcript_logger.info(
            "language=%s words=%s transcript=%s",
            result.language_code,
            result.word_count,
            result.transcript,
        )
        return result

    def _validate(self, result: TranscriptionResult, *, trial: bool) -> None:
        t = self._thresholds
        if not result.transcript:
            raise TranscriptionError("Transcript is empty", reason="no_speech")
        if not result.words:
            raise TranscriptionError("Transcript has no word timings", reason="no_timing")

        required = t.trial_min_words_required if trial else t.min_words_required
        if result.word_count < required:
            raise TranscriptionError(
                f"Only {result.word_count} word(s) recognised; {required} required",
                reason="insufficient_words",
            )
        if result.word_count < t.warn_words_threshold:
            logger.warning("Short transcript words=%s", result.word_count)

        coverage = result.timing_coverage
        if coverage < t.min_timing_coverage:
            logger.warning("Low word timing coverage %.2f", coverage)


__all__ = ["LANGUAGE_ROUTES", "SpeechToText", "TranscriptionAdapter", "provider_language"]
