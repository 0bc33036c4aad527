"""Media extraction (Stage 01 of the analysis pipeline).

Turns an uploaded recording (audio or video container) into a 16 kHz mono
16-bit WAV that the transcription stage can stream. ``ffprobe`` checks the
container first so an unreadable upload fails as ``corrupted`` and a
silent video fails as ``no_audio`` before anything is transcoded.

``MediaExtractor.extract`` is an async context manager: every temp file it
creates is removed when the ``async with`` block exits, whatever happens
inside it.
"""

from __future__ import annotations

import json
import logging
import shutil
import subprocess
import tempfile
import wave
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Callable

from fastapi.concurrency import run_in_threadpool

from app.application.interfaces import BlobRef
from app.config.settings import AnalysisThresholds, settings
from app.services.storage import StorageError

from .errors import MediaExtractionError
from .types import ExtractedMedia

logger = logging.getLogger("app.services.analysis_pipeline")

_COPY_CHUNK_BYTES = 1024 * 1024
_TARGET_CHANNELS = 1


class MediaExtractor:
    """Materialise, probe and transcode one uploaded recording."""

    def __init__(
        self,
        thresholds: AnalysisThresholds | None = None,
        *,
        sample_rate: int | None = None,
        ffmpeg: str = "ffmpeg",
        ffprobe: str = "ffprobe",
        timeout_seconds: float = 300.0,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ) -> None:
        self._thresholds = thresholds or settings.analysis
        self._sample_rate = sample_rate or settings.transcribe.sample_rate_hz
        self._ffmpeg = ffmpeg
        self._ffprobe = ffprobe
        self._timeout = timeout_seconds
        self._run = runner

    @asynccontextmanager
    async def extract(self, blob: BlobRef) -> AsyncIterator[ExtractedMedia]:
        workdir = Path(tempfile.mkdtemp(prefix="speech-extract-"))
        try:
            media = await run_in_threadpool(self._extract_sync, blob, workdir)
            yield media
        finally:
            shutil.rmtree(workdir, ignore_errors=True)

    def _extract_sync(self, blob: BlobRef, workdir: Path) -> ExtractedMedia:
        source_path = workdir / f"source{_suffix_for(blob)}"
        size = self._materialise(blob, source_path)
        if size == 0:
            raise MediaExtractionError(f"Recording {blob.key} is empty", reason="empty_file")

        probe = self._probe(source_path)
        streams = probe.get("streams") or []
        if not any(stream.get("codec_type") == "audio" for stream in streams):
            raise MediaExtractionError(
                f"Recording {blob.key} has no audio stream", reason="no_audio"
            )
        source_format = (probe.get("format") or {}).get("format_name")

        wav_path = workdir / "audio.wav"
        self._transcode(source_path, wav_path)
        duration_seconds, sample_rate, channels = _wav_properties(wav_path)

        if duration_seconds <= 0:
            raise MediaExtractionError(
                f"Recording {blob.key} decoded to no audio", reason="no_audio"
            )
        if duration_seconds < self._thresholds.min_duration_seconds:
            raise MediaExtractionError(
                f"Recording {blob.key} lasts {duration_seconds:.2f}s", reason="too_short"
            )

        logger.info(
            "Extracted media key=%s source_format=%s bytes=%s duration=%.2fs",
            blob.key,
            source_format,
            size,
            duration_seconds,
        )
        return ExtractedMedia(
            audio_path=wav_path,
            duration_seconds=duration_seconds,
            format="wav",
            sample_rate=sample_rate,
            channels=channels,
            file_size_bytes=wav_path.stat().st_size,
            source_format=source_format,
        )

    def _materialise(self, blob: BlobRef, target: Path) -> int:
        try:
            stream = blob.open()
        except (StorageError, OSError) as exc:
            raise MediaExtractionError(
                f"Recording {blob.key} could not be read: {exc}", reason="empty_file"
            ) from exc
        try:
            with target.open("wb") as handle:
                while True:
                    chunk = stream.read(_COPY_CHUNK_BYTES)
                    if not chunk:
                        break
                    handle.write(chunk)
        finally:
            close = getattr(stream, "close", None)
            if close is not None:
                close()
        return target.stat().st_size

    def _probe(self, source_path: Path) -> dict:
        process = self._invoke(
            [
                self._ffprobe,
                "-v", "error",
                "-show_streams",
                "-show_format",
                "-of", "json",
                str(source_path),
            ],
            step="ffprobe",
        )
        try:
            return json.loads(process.stdout or b"{}")
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise MediaExtractionError(
                "ffprobe returned unreadable output", reason="corrupted"
            ) from exc

    def _transcode(self, source_path: Path, wav_path: Path) -> None:
        self._invoke(
            [
                self._ffmpeg,
                "-y",
                "-i", str(source_path),
                "-vn",
                "-ac", str(_TARGET_CHANNELS),
                "-ar", str(self._sample_rate),
                "-acodec", "pcm_s16le",
                str(wav_path),
            ],
            step="ffmpeg",
        )
        if not wav_path.exists() or wav_path.stat().st_size == 0:
            raise MediaExtractionError("ffmpeg produced no output", reason="no_audio")

    def _invoke(self, command: list[str], *, step: str) -> subprocess.CompletedProcess:
        try:
            return self._run(
                command,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                check=True,
                timeout=self._timeout,
            )
        except subprocess.CalledProcessError as exc:
            error_msg = exc.stderr.decode("utf-8", errors="replace") if exc.stderr else "No stderr"
            logger.error("%s failed. stderr: %s", step, error_msg)
            raise MediaExtractionError(f"{step} could not read the recording", reason="corrupted") from exc
        except subprocess.TimeoutExpired as exc:
            raise MediaExtractionError(f"{step} timed out after {self._timeout}s", reason="timeout") from exc
        except FileNotFoundError as exc:
            raise MediaExtractionError(f"{step} is not installed", reason="tooling") from exc


def _suffix_for(blob: BlobRef) -> str:
    if blob.filename:
        suffix = Path(blob.filename).suffix
        if suffix:
            return suffix.lower()
    return ".bin"


def _wav_properties(wav_path: Path) -> tuple[float, int, int]:
    try:
        with wave.open(str(wav_path), "rb") as wav_file:
            frames = wav_file.getnframes()
            rate = wav_file.getframerate()
            channels = wav_file.getnchannels()
    except (wave.Error, EOFError) as exc:
        raise MediaExtractionError("Transcoded audio is unreadable", reason="corrupted") from exc
    duration = frames / rate if rate else 0.0
    return duration, rate, channels


def get_media_extractor() -> MediaExtractor:
    return _DEFAULT_EXTRACTOR


_DEFAULT_EXTRACTOR = MediaExtractor()


__all__ = ["MediaExtractor", "get_media_extractor"]
