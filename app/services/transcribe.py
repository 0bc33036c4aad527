"""Amazon Transcribe integration helpers using the Streaming API."""

from __future__ import annotations

import asyncio
import logging
import os
import wave
from dataclasses import dataclass, field
from pathlib import Path

from amazon_transcribe.client import TranscribeStreamingClient
from amazon_transcribe.exceptions import BadRequestException, LimitExceededException
from amazon_transcribe.handlers import TranscriptResultStreamHandler
from amazon_transcribe.model import TranscriptEvent
from fastapi.concurrency import run_in_threadpool

from app.config.settings import TranscribeConfig, settings
from app.pipelines.analysis.types import Utterance, Word

logger = logging.getLogger(__name__)

_AUTH_MARKERS = ("credential", "unrecognizedclient", "forbidden", "accessdenied", "403")


@dataclass(frozen=True)
class ProviderTranscript:
    """Raw provider output before validation."""

    transcript: str
    words: tuple[Word, ...] = ()
    utterances: tuple[Utterance, ...] = ()
    duration_seconds: float | None = None
    language_code: str | None = None
    model: str | None = None


class TranscribeServiceError(RuntimeError):
    """Raised when Amazon Transcribe fails to process audio successfully."""

    def __init__(self, message: str, *, reason: str = "provider") -> None:
        super().__init__(message)
        self.reason = reason


class TranscribeService:
    """High-level facade for streaming audio to Amazon Transcribe."""

    def __init__(self, config: TranscribeConfig | None = None) -> None:
        self._config = config or settings.transcribe

        # Ensure credentials are available to the SDK
        if settings.s3.access_key:
            os.environ.setdefault("AWS_ACCESS_KEY_ID", settings.s3.access_key)
        if settings.s3.secret_key:
            os.environ.setdefault("AWS_SECRET_ACCESS_KEY", settings.s3.secret_key)

        self._client = TranscribeStreamingClient(region=self._config.region)

    async def transcribe_file(
        self,
        audio_path: Path,
        *,
        language_code: str,
        language_model: str | None = None,
    ) -> ProviderTranscript:
        """Stream a 16-bit mono WAV to Transcribe and collect word timings."""

        pcm_data, sample_rate = await run_in_threadpool(_read_pcm, audio_path)
        if not pcm_data:
            raise TranscribeServiceError("Audio file contains no frames.", reason="bad_audio")

        stream_kwargs = {
            "language_code": language_code,
            "media_sample_rate_hz": sample_rate,
            "media_encoding": "pcm",
        }
        if language_model:
            stream_kwargs["language_model_name"] = language_model

        try:
            stream = await self._client.start_stream_transcription(**stream_kwargs)
        except Exception as exc:  # pragma: no cover - integration failure
            raise _classify(exc) from exc

        handler = _WordCollectingHandler(stream.output_stream)

        async def write_chunks() -> None:
            chunk_size = self._config.chunk_size_bytes
            bytes_per_sec = sample_rate * 2  # 16-bit = 2 bytes
            sleep_time = chunk_size / bytes_per_sec

            logger.info(
                "Starting stream bytes=%s chunk=%s sleep=%.4fs language=%s",
                len(pcm_data),
                chunk_size,
                sleep_time,
                language_code,
            )
            for offset in range(0, len(pcm_data), chunk_size):
                await stream.input_stream.send_audio_event(
                    audio_chunk=pcm_data[offset : offset + chunk_size]
                )
                # Transcribe expects roughly real-time pacing.
                await asyncio.sleep(sleep_time)
            await stream.input_stream.end_stream()

        try:
            await asyncio.gather(write_chunks(), handler.handle_events())
        except Exception as exc:  # pragma: no cover - integration failure
            logger.error("Streaming loop failed: %s", exc)
            raise _classify(exc) from exc

        logger.info(
            "Transcription complete chars=%s words=%s",
            len(handler.transcript),
            len(handler.words),
        )
        return ProviderTranscript(
            transcript=handler.transcript.strip(),
            words=tuple(handler.words),
            utterances=tuple(handler.utterances),
            duration_seconds=len(pcm_data) / (sample_rate * 2),
            language_code=language_code,
            model=language_model,
        )


def _read_pcm(audio_path: Path) -> tuple[bytes, int]:
    with wave.open(str(audio_path), "rb") as wav_file:
        return wav_file.readframes(wav_file.getnframes()), wav_file.getframerate()


def _classify(exc: BaseException) -> TranscribeServiceError:
    if isinstance(exc, LimitExceededException):
        return TranscribeServiceError(str(exc), reason="rate_limited")
    if isinstance(exc, BadRequestException):
        return TranscribeServiceError(str(exc), reason="bad_audio")
    message = str(exc)
    if any(marker in message.lower() for marker in _AUTH_MARKERS):
        return TranscribeServiceError(message, reason="auth_failed")
    return TranscribeServiceError(f"Streaming transcription failed: {message}")


class _WordCollectingHandler(TranscriptResultStreamHandler):
    def __init__(self, transcript_result_stream):
        super().__init__(transcript_result_stream)
        self.transcript = ""
        self.words: list[Word] = []
        self.utterances: list[Utterance] = []

    async def handle_transcript_event(self, transcript_event: TranscriptEvent):
        for result in transcript_event.transcript.results:
            if result.is_partial or not result.alternatives:
                continue
            alternative = result.alternatives[0]
            self.transcript += alternative.transcript + " "
            self.utterances.append(
                Utterance(
                    text=alternative.transcript,
                    start_ms=int((result.start_time or 0) * 1000),
                    end_ms=int((result.end_time or 0) * 1000),
                )
            )
            for item in alternative.items or []:
                if item.item_type != "pronunciation":
                    continue
                self.words.append(
                    Word(
                        text=item.content,
                        start_ms=_to_ms(item.start_time),
                        end_ms=_to_ms(item.end_time),
                        confidence=getattr(item, "confidence", None),
                    )
                )


def _to_ms(seconds: float | None) -> int | None:
    if seconds is None:
        return None
    return int(round(seconds * 1000))


@dataclass
class _ServiceHolder:
    service: TranscribeService | None = field(default=None)


_HOLDER = _ServiceHolder()


def get_transcribe_service() -> TranscribeService:
    """Return a lazily-instantiated transcribe service singleton."""

    if _HOLDER.service is None:
        _HOLDER.service = TranscribeService()
    return _HOLDER.service


__all__ = [
    "ProviderTranscript",
    "TranscribeService",
    "TranscribeServiceError",
    "get_transcribe_service",
]
