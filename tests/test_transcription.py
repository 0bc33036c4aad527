"""Transcription adapter: language routing, validation and error mapping."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import pytest

from app.config.settings import TranscribeConfig
from app.pipelines.analysis.errors import TranscriptionError
from app.pipelines.analysis.transcription import TranscriptionAdapter, provider_language
from app.pipelines.analysis.types import Word
from app.services.transcribe import TranscribeServiceError

from conftest import FakeSpeechToText, make_words

AUDIO = Path("/tmp/audio.wav")


@pytest.mark.parametrize(
    "language, expected",
    [
        ("en", "en-US"),
        ("es", "es-US"),
        ("pt", "pt-BR"),
        ("pt_BR", "pt-BR"),
        ("fr-CA", "fr-FR"),
        ("de", "de-DE"),
        ("it", "it-IT"),
        ("ja", "en-US"),
        (None, "en-US"),
    ],
)
def test_language_routing(language, expected):
    assert provider_language(language) == expected


@pytest.mark.anyio
async def test_returns_validated_words_and_routes_model_hint(thresholds):
    text = "today I will talk about our roadmap"
    service = FakeSpeechToText(text, make_words(text))

    result = await TranscriptionAdapter(service, thresholds).transcribe(AUDIO, "pt", "custom-model")

    assert result.word_count == 7
    assert result.language_code == "pt-BR"
    assert result.model == "custom-model"
    assert service.calls == [{"language_code": "pt-BR", "language_model": "custom-model"}]


@pytest.mark.anyio
@pytest.mark.parametrize(
    "transcript, words, trial, reason",
    [
        ("", (), False, "no_speech"),
        ("hello there", (), False, "no_timing"),
        ("hello", make_words("hello"), False, "insufficient_words"),
        ("hello there", make_words("hello there"), True, "insufficient_words"),
    ],
)
async def test_validation_failures(thresholds, transcript, words, trial, reason):
    adapter = TranscriptionAdapter(FakeSpeechToText(transcript, words), thresholds)

    with pytest.raises(TranscriptionError) as excinfo:
        await adapter.transcribe(AUDIO, "en", trial=trial)

    assert excinfo.value.reason == reason


@pytest.mark.anyio
async def test_two_words_are_enough_outside_trials(thresholds, caplog):
    adapter = TranscriptionAdapter(FakeSpeechToText("hello there", make_words("hello there")), thresholds)

    with caplog.at_level(logging.WARNING, logger="app.services.analysis_pipeline"):
        result = await adapter.transcribe(AUDIO, "en")

    assert result.word_count == 2
    assert "Short transcript" in caplog.text


@pytest.mark.anyio
async def test_low_timing_coverage_only_warns(thresholds, caplog):
    words = (Word("one", 0, 200), Word("two", None, None), Word("three", None, None), Word("four", 900, 1000))
    adapter = TranscriptionAdapter(FakeSpeechToText("one two three four", words), thresholds)

    with caplog.at_level(logging.WARNING, logger="app.services.analysis_pipeline"):
        result = await adapter.transcribe(AUDIO, "en")

    assert result.timing_coverage == 0.5
    assert "coverage" in caplog.text.lower()


@pytest.mark.anyio
@pytest.mark.parametrize("reason", ["rate_limited", "auth_failed", "provider"])
async def test_provider_errors_keep_their_reason(thresholds, reason):
    service = FakeSpeechToText(error=TranscribeServiceError("boom", reason=reason))

    with pytest.raises(TranscriptionError) as excinfo:
        await TranscriptionAdapter(service, thresholds).transcribe(AUDIO, "en")

    assert excinfo.value.reason == reason


@pytest.mark.anyio
async def test_slow_provider_times_out(thresholds):
    class SlowService:
        async def transcribe_file(self, audio_path, *, language_code, language_model=None):
            await asyncio.sleep(5)

    config = TranscribeConfig(timeout_seconds=0.01)

    with pytest.raises(TranscriptionError) as excinfo:
        await TranscriptionAdapter(SlowService(), thresholds, config).transcribe(AUDIO, "en")

    assert excinfo.value.reason == "timeout"


class RealTimeService(FakeSpeechToText):
    """Takes as long as the clip it streams, like the streaming provider."""

    def __init__(self, clip_seconds: float) -> None:
        text = "one two three four five six"
        super().__init__(text, make_words(text))
        self.clip_seconds = clip_seconds

    async def transcribe_file(self, audio_path, *, language_code, language_model=None):
        await asyncio.sleep(self.clip_seconds)
        return await super().transcribe_file(audio_path, language_code=language_code, language_model=language_model)


@pytest.mark.anyio
async def test_long_clips_get_a_longer_timeout(thresholds):
    config = TranscribeConfig(timeout_seconds=0.2)
    adapter = TranscriptionAdapter(RealTimeService(clip_seconds=0.6), thresholds, config)

    result = await adapter.transcribe(AUDIO, "en", audio_duration_seconds=1.0)

    assert result.word_count == 6


@pytest.mark.anyio
async def test_clip_length_does_not_excuse_a_stalled_provider(thresholds):
    config = TranscribeConfig(timeout_seconds=0.2)
    adapter = TranscriptionAdapter(RealTimeService(clip_seconds=0.6), thresholds, config)

    with pytest.raises(TranscriptionError) as excinfo:
        await adapter.transcribe(AUDIO, "en", audio_duration_seconds=0.1)

    assert excinfo.value.reason == "timeout"
