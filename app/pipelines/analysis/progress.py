"""Coarse progress percentages and the stage names pollers display.

The server persists the checkpoint percentages below as it advances, and
``describe_progress`` maps any percentage back to a name. The mapping is a
pure function of the number so client polling UI and server stay in step.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

EXTRACTION = 15
TRANSCRIPTION = 35
RELEVANCE = 45
RULE_ANALYSIS = 60
AI_REFINEMENT = 80
METRICS = 95
COMPLETE = 100

_BANDS: tuple[tuple[int, str], ...] = (
    (15, "Media Extraction"),
    (35, "Transcription"),
    (60, "Rule Analysis"),
    (80, "AI Refinement"),
    (99, "Metrics"),
)


def describe_progress(percent: int | float) -> str:
    """Return the stage name for a progress percentage."""

    value = max(0, min(100, percent))
    if value >= COMPLETE:
        return "Complete"
    for upper_bound, name in _BANDS:
        if value <= upper_bound:
            return name
    return "Metrics"


@dataclass(frozen=True)
class StatusReport:
    """Answer to ``get_status`` for a polling client."""

    processing_state: str
    completed: bool
    percent: int
    stage: str
    incomplete_reason: Optional[str] = None
    expired: bool = False

    def to_dict(self) -> dict:
        return {
            "processing_state": self.processing_state,
            "completed": self.completed,
            "progress_info": {"percent": self.percent, "stage": self.stage},
            "incomplete_reason": self.incomplete_reason,
            "expired": self.expired,
        }


__all__ = [
    "AI_REFINEMENT",
    "COMPLETE",
    "EXTRACTION",
    "METRICS",
    "RELEVANCE",
    "RULE_ANALYSIS",
    "StatusReport",
    "TRANSCRIPTION",
    "describe_progress",
]
