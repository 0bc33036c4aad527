"""Media extraction with ffprobe/ffmpeg replaced by a scripted runner."""

from __future__ import annotations

import json
import subprocess
import wave

import pytest

from app.pipelines.analysis.errors import MediaExtractionError
from app.pipelines.analysis.extraction import MediaExtractor

from conftest import FakeBlob

pytestmark = pytest.mark.anyio


class ScriptedRunner:
    """Answers ffprobe with JSON and makes ffmpeg write a silent WAV."""

    def __init__(self, *, streams=("audio",), duration_seconds=3.0, fail_step=None):
        self.streams = streams
        self.duration_seconds = duration_seconds
        self.fail_step = fail_step
        self.commands: list[list[str]] = []

    def __call__(self, command, **kwargs):
        self.commands.append(command)
        step = command[0]
        if step == self.fail_step:
            raise subprocess.CalledProcessError(1, command, stderr=b"Invalid data found")
        if step == "ffprobe":
            payload = {
                "streams": [{"codec_type": kind} for kind in self.streams],
                "format": {"format_name": "matroska,webm"},
            }
            return subprocess.CompletedProcess(command, 0, stdout=json.dumps(payload).encode())
        rate = 16000
        with wave.open(command[-1], "wb") as wav_file:
            wav_file.setnchannels(1)
            wav_file.setsampwidth(2)
            wav_file.setframerate(rate)
            wav_file.writeframes(b"\x00\x00" * int(rate * self.duration_seconds))
        return subprocess.CompletedProcess(command, 0, stdout=b"")


def _extractor(thresholds, runner):
    return MediaExtractor(thresholds, sample_rate=16000, runner=runner)


async def test_extracts_mono_wav_and_removes_temp_files(thresholds):
    runner = ScriptedRunner(duration_seconds=2.5)
    blob = FakeBlob(key="uploads/a.webm", filename="a.webm")

    async with _extractor(thresholds, runner).extract(blob) as media:
        audio_path = media.audio_path
        assert audio_path.exists()
        assert media.duration_seconds == pytest.approx(2.5)
        assert (media.sample_rate, media.channels, media.format) == (16000, 1, "wav")
        assert media.source_format == "matroska,webm"

    assert not audio_path.exists()
    assert not audio_path.parent.exists()
    ffmpeg = runner.commands[1]
    assert ffmpeg[ffmpeg.index("-ar") + 1] == "16000"
    assert ffmpeg[ffmpeg.index("-ac") + 1] == "1"


async def test_temp_files_are_removed_when_the_caller_fails(thresholds):
    blob = FakeBlob(key="uploads/a.webm", filename="a.webm")
    with pytest.raises(RuntimeError):
        async with _extractor(thresholds, ScriptedRunner()).extract(blob) as media:
            audio_path = media.audio_path
            raise RuntimeError("transcription blew up")
    assert not audio_path.parent.exists()


@pytest.mark.parametrize(
    "runner, payload, reason",
    [
        (ScriptedRunner(duration_seconds=0.5), b"data", "too_short"),
        (ScriptedRunner(streams=("video",)), b"data", "no_audio"),
        (ScriptedRunner(duration_seconds=0), b"data", "no_audio"),
        (ScriptedRunner(fail_step="ffprobe"), b"data", "corrupted"),
        (ScriptedRunner(fail_step="ffmpeg"), b"data", "corrupted"),
        (ScriptedRunner(), b"", "empty_file"),
    ],
)
async def test_extraction_failures_carry_a_reason(thresholds, runner, payload, reason):
    blob = FakeBlob(key="uploads/a.webm", filename="a.webm", payload=payload)

    with pytest.raises(MediaExtractionError) as excinfo:
        async with _extractor(thresholds, runner).extract(blob):
            pass

    assert excinfo.value.reason == reason


async def test_missing_ffmpeg_is_reported_as_tooling(thresholds):
    def missing(command, **kwargs):
        raise FileNotFoundError(command[0])

    with pytest.raises(MediaExtractionError) as excinfo:
        async with _extractor(thresholds, missing).extract(FakeBlob(key="k", filename="a.mp3")):
            pass
    assert excinfo.value.reason == "tooling"
