"""Progress percentages, stage names and state transitions."""

from __future__ import annotations

import pytest

from app.pipelines.analysis.errors import InvalidStateTransition
from app.pipelines.analysis.progress import StatusReport, describe_progress
from app.pipelines.analysis.states import can_transition, ensure_transition
from app.pipelines.analysis.types import ProcessingMode


@pytest.mark.parametrize(
    "percent, stage",
    [
        (0, "Media Extraction"),
        (15, "Media Extraction"),
        (16, "Transcription"),
        (35, "Transcription"),
        (45, "Rule Analysis"),
        (60, "Rule Analysis"),
        (61, "AI Refinement"),
        (80, "AI Refinement"),
        (95, "Metrics"),
        (99, "Metrics"),
        (100, "Complete"),
        (140, "Complete"),
        (-5, "Media Extraction"),
    ],
)
def test_describe_progress_bands(percent, stage):
    assert describe_progress(percent) == stage


def test_status_report_payload():
    report = StatusReport("preview_ready", False, 60, "Rule Analysis")

    assert report.to_dict() == {
        "processing_state": "preview_ready",
        "completed": False,
        "progress_info": {"percent": 60, "stage": "Rule Analysis"},
        "incomplete_reason": None,
        "expired": False,
    }


@pytest.mark.parametrize(
    "mode, path",
    [
        (ProcessingMode.SINGLE_PASS, ["pending", "processing", "completed"]),
        (ProcessingMode.TWO_PHASE, ["pending", "processing", "preview_ready", "ai_analyzing", "completed"]),
        (ProcessingMode.TWO_PHASE, ["pending", "processing", "preview_ready", "completed"]),
        (ProcessingMode.SINGLE_PASS, ["pending", "processing", "failed", "pending"]),
    ],
)
def test_allowed_paths(mode, path):
    for current, target in zip(path, path[1:]):
        assert can_transition(current, target, mode)


@pytest.mark.parametrize(
    "mode, current, target",
    [
        (ProcessingMode.SINGLE_PASS, "processing", "preview_ready"),
        (ProcessingMode.SINGLE_PASS, "completed", "processing"),
        (ProcessingMode.TWO_PHASE, "completed", "failed"),
        (ProcessingMode.TWO_PHASE, "pending", "completed"),
        (ProcessingMode.TWO_PHASE, "ai_analyzing", "preview_ready"),
    ],
)
def test_forbidden_transitions_raise(mode, current, target):
    with pytest.raises(InvalidStateTransition):
        ensure_transition(current, target, mode)
