"""Coaching extras attached to a finished analysis.

``micro_tips`` picks at most three short, actionable tips: the AI tips when
refinement produced any, otherwise tips derived from the metrics and ranked
by impact over effort. ``key_segments`` lists the most severe issues so a
client can jump straight to them in the recording.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Sequence

from .types import DetectedIssue

MAX_TIPS = 3
MAX_KEY_SEGMENTS = 5

_IMPACT = {"high": 3, "medium": 2, "low": 1}
_EFFORT = {"low": 1, "medium": 2, "high": 3}
_SEVERITY_RANK = {"high": 0, "medium": 1, "low": 2}


@dataclass(frozen=True)
class MicroTip:
    category: str
    title: str
    action: str
    impact: str
    effort: str

    @property
    def priority(self) -> float:
        return _IMPACT[self.impact] / _EFFORT[self.effort]

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": self.category,
            "title": self.title,
            "action": self.action,
            "impact": self.impact,
            "effort": self.effort,
        }


def _metric_tips(sections: Mapping[str, Any]) -> list[MicroTip]:
    speaking = sections.get("speaking_metrics") or {}
    clarity = sections.get("clarity_metrics") or {}
    fillers = clarity.get("filler_metrics") or {}
    pauses = clarity.get("pause_metrics") or {}

    tips: list[MicroTip] = []
    band = speaking.get("speaking_rate_band")
    if band in ("too_fast", "fast"):
        tips.append(
            MicroTip("pace", "Slow Down", "Pause for a breath at the end of each sentence.", "high", "low")
        )
    elif band in ("too_slow", "slow"):
        tips.append(
            MicroTip("pace", "Pick Up the Pace", "Aim for about 150 words per minute.", "medium", "medium")
        )

    if (fillers.get("fillers_per_minute") or 0) >= 3:
        tips.append(
            MicroTip(
                "fillers",
                "Replace Fillers with Pauses",
                "When you feel an 'um' coming, stay silent for half a second instead.",
                "high",
                "medium",
            )
        )

    if (pauses.get("long_pause_count") or 0) > 0:
        tips.append(
            MicroTip("pauses", "Keep Pauses Short", "Aim for 0.5-1 second pauses between thoughts.", "medium", "low")
        )

    if (speaking.get("pace_consistency") or 1.0) < 0.7:
        tips.append(
            MicroTip("consistency", "Steady Rhythm", "Keep a constant pace through the whole answer.", "medium", "medium")
        )
    return tips


def micro_tips(sections: Mapping[str, Any], ai_tips: Sequence[str] = ()) -> list[dict[str, Any]]:
    if ai_tips:
        return [
            {"category": "ai", "title": None, "action": tip, "impact": None, "effort": None}
            for tip in list(ai_tips)[:MAX_TIPS]
        ]
    ranked = sorted(_metric_tips(sections), key=lambda tip: -tip.priority)
    return [tip.to_dict() for tip in ranked[:MAX_TIPS]]


def key_segments(issues: Sequence[DetectedIssue]) -> list[dict[str, Any]]:
    ordered = sorted(
        (issue for issue in issues if issue.category != "pace_issues"),
        key=lambda issue: (_SEVERITY_RANK.get(issue.severity, 3), issue.start_ms),
    )
    return [
        {
            "start_ms": issue.start_ms,
            "end_ms": issue.end_ms,
            "kind": issue.kind,
            "severity": issue.severity,
            "text": issue.text,
            "tip": issue.tip,
        }
        for issue in ordered[:MAX_KEY_SEGMENTS]
    ]


__all__ = ["MicroTip", "key_segments", "micro_tips"]
