"""Score computation (Stage 05 of the analysis pipeline).

All scores are decimals in [0, 1]. ``ScoreCard`` refuses anything outside
that range, and ``assert_unit_scores`` re-checks a whole analysis payload
before it is persisted, so a 0-100 percentage can never be stored.

Formulas:

* wpm = word_count / (duration_seconds / 60)
* clarity = 1 - merged_issue_ms / total_ms
* fluency = 0.7 * pace_term + 0.3 * filler_term
* engagement = pace_band * length * complexity * multiplier
* overall = 0.3 clarity + 0.25 fluency + 0.25 engagement + 0.2 pace_consistency
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

from app.config.settings import AnalysisThresholds, settings

from .types import DetectedIssue, Word

logger = logging.getLogger("app.services.analysis_pipeline")

_PRECISION = 4
_STRENGTH_THRESHOLD = 0.8
_IMPROVEMENT_THRESHOLD = 0.75
# Issues of these categories span the whole clip and say nothing about clarity.
_CLIP_WIDE_CATEGORIES = frozenset({"pace_issues"})


def clamp_unit(value: float) -> float:
    if value is None or math.isnan(value):
        return 0.0
    return max(0.0, min(1.0, float(value)))


@dataclass(frozen=True)
class ScoreCard:
    clarity: float
    fluency: float
    engagement: float
    pace_consistency: float
    overall: float

    def __post_init__(self) -> None:
        for name in ("clarity", "fluency", "engagement", "pace_consistency", "overall"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} score {value!r} is outside [0, 1]")

    def components(self) -> dict[str, float]:
        return {
            "clarity_score": self.clarity,
            "fluency_score": self.fluency,
            "engagement_score": self.engagement,
            "pace_consistency": self.pace_consistency,
        }


@dataclass(frozen=True)
class MetricsReport:
    speaking_metrics: dict[str, Any]
    clarity_metrics: dict[str, Any] = field(default_factory=dict)
    fluency_metrics: dict[str, Any] = field(default_factory=dict)
    engagement_metrics: dict[str, Any] = field(default_factory=dict)
    overall_scores: dict[str, Any] = field(default_factory=dict)
    scores: ScoreCard | None = None
    fallback: bool = False
    error: str | None = None

    @classmethod
    def minimal(cls, word_count: int, duration_seconds: float, error: str) -> "MetricsReport":
        return cls(
            speaking_metrics={
                "word_count": word_count,
                "duration_seconds": round(max(duration_seconds, 0.0), 2),
            },
            fallback=True,
            error=error,
        )

    def sections(self) -> dict[str, Any]:
        payload = {
            "speaking_metrics": dict(self.speaking_metrics),
            "clarity_metrics": dict(self.clarity_metrics),
            "fluency_metrics": dict(self.fluency_metrics),
            "engagement_metrics": dict(self.engagement_metrics),
            "overall_scores": dict(self.overall_scores),
        }
        if self.fallback:
            payload["metrics_fallback"] = {"fallback": True, "error": self.error}
        return payload

    def with_overall(self, overall: float, **extra: Any) -> "MetricsReport":
        """Copy with a replaced overall score (relevance penalty)."""

        overall = round(clamp_unit(overall), _PRECISION)
        scores = self.scores
        if scores is not None:
            scores = ScoreCard(
                clarity=scores.clarity,
                fluency=scores.fluency,
                engagement=scores.engagement,
                pace_consistency=scores.pace_consistency,
                overall=overall,
            )
        overall_scores = dict(self.overall_scores)
        overall_scores["overall_score"] = overall
        overall_scores["grade"] = score_to_grade(overall)
        overall_scores.update(extra)
        return MetricsReport(
            speaking_metrics=self.speaking_metrics,
            clarity_metrics=self.clarity_metrics,
            fluency_metrics=self.fluency_metrics,
            engagement_metrics=self.engagement_metrics,
            overall_scores=overall_scores,
            scores=scores,
            fallback=self.fallback,
            error=self.error,
        )


class MetricsEngine:
    """Turn a transcript plus its final issue list into scores."""

    def __init__(self, thresholds: AnalysisThresholds | None = None) -> None:
        self._t = thresholds or settings.analysis

    def compute(
        self,
        transcript: str,
        words: Sequence[Word],
        issues: Sequence[DetectedIssue],
        duration_seconds: float | None = None,
        language: str = "en",
    ) -> MetricsReport:
        try:
            return self._compute(transcript, words, issues, duration_seconds)
        except Exception as exc:
            word_count = len(words) if words else len((transcript or "").split())
            logger.exception("Metrics computation failed language=%s; using minimal metrics", language)
            return MetricsReport.minimal(word_count, duration_seconds or 0.0, str(exc))

    def _compute(
        self,
        transcript: str,
        words: Sequence[Word],
        issues: Sequence[DetectedIssue],
        duration_seconds: float | None,
    ) -> MetricsReport:
        t = self._t
        timed = [word for word in words if word.has_timing]
        word_count = len(words) if words else len((transcript or "").split())
        duration = _resolve_duration_seconds(timed, duration_seconds)
        duration_ms = duration * 1000
        minutes = duration / 60

        wpm = word_count / minutes if minutes > 0 else 0.0
        words_per_second = word_count / duration if duration > 0 else 0.0

        filler_count = sum(1 for issue in issues if issue.kind == "filler_word")
        filler_rate = filler_count / word_count if word_count else 0.0
        fillers_per_minute = filler_count / minutes if minutes > 0 else 0.0

        issue_ms = merged_issue_duration_ms(
            [issue for issue in issues if issue.category not in _CLIP_WIDE_CATEGORIES]
        )
        if duration_ms > 0:
            clarity = clamp_unit(1 - issue_ms / duration_ms)
        else:
            clarity = 1.0 if issue_ms == 0 else 0.0

        pace_term = clamp_unit(1 - abs(wpm - t.ideal_wpm) / t.ideal_wpm)
        filler_term = clamp_unit(1 - filler_rate * t.filler_penalty_multiplier)
        fluency = clamp_unit(t.pace_weight * pace_term + t.filler_weight * filler_term)

        pace_band = self._pace_band_factor(wpm)
        length_factor = clamp_unit(duration / t.engagement_full_length_seconds)
        complexity_factor = clamp_unit(words_per_second / t.engagement_density_target)
        engagement = clamp_unit(pace_band * length_factor * complexity_factor * t.engagement_multiplier)

        pace_consistency = clamp_unit(pace_consistency_score(timed))

        overall = clamp_unit(
            t.clarity_weight * clarity
            + t.fluency_weight * fluency
            + t.engagement_weight * engagement
            + t.pace_consistency_weight * pace_consistency
        )

        scores = ScoreCard(
            clarity=_round(clarity),
            fluency=_round(fluency),
            engagement=_round(engagement),
            pace_consistency=_round(pace_consistency),
            overall=_round(overall),
        )
        components = scores.components()

        return MetricsReport(
            speaking_metrics={
                "word_count": word_count,
                "duration_seconds": round(duration, 2),
                "wpm": round(wpm, 1),
                "words_per_second": round(words_per_second, 2),
                "speaking_rate_band": self._rate_band(wpm),
                "pace_consistency": scores.pace_consistency,
            },
            clarity_metrics={
                "clarity_score": scores.clarity,
                "issue_duration_ms": issue_ms,
                "filler_metrics": {
                    "filler_count": filler_count,
                    "filler_rate": _round(filler_rate),
                    "fillers_per_minute": round(fillers_per_minute, 1),
                },
                "pause_metrics": pause_metrics(timed, t.min_pause_ms, t.long_pause_ms),
            },
            fluency_metrics={
                "fluency_score": scores.fluency,
                "pace_term": _round(pace_term),
                "filler_term": _round(filler_term),
            },
            engagement_metrics={
                "engagement_score": scores.engagement,
                "pace_band_factor": _round(pace_band),
                "length_factor": _round(length_factor),
                "complexity_factor": _round(complexity_factor),
            },
            overall_scores={
                "overall_score": scores.overall,
                "grade": score_to_grade(scores.overall),
                "component_scores": components,
                "strengths": sorted(name for name, value in components.items() if value >= _STRENGTH_THRESHOLD),
                "areas_for_improvement": sorted(
                    name for name, value in components.items() if value < _IMPROVEMENT_THRESHOLD
                ),
            },
            scores=scores,
        )

    def _pace_band_factor(self, wpm: float) -> float:
        t = self._t
        if t.engagement_band_low <= wpm <= t.engagement_band_high:
            return 1.0
        lower = t.engagement_band_low - t.engagement_band_margin
        upper = t.engagement_band_high + t.engagement_band_margin
        if lower <= wpm <= upper:
            return 0.7
        return 0.4

    def _rate_band(self, wpm: float) -> str:
        if wpm < self._t.slow_wpm:
            return "too_slow"
        if wpm < 140:
            return "slow"
        if wpm <= 160:
            return "optimal"
        if wpm <= self._t.fast_wpm:
            return "fast"
        return "too_fast"


def merged_issue_duration_ms(issues: Sequence[DetectedIssue]) -> int:
    """Total time covered by issues, counting overlapping ranges once."""

    total = 0
    current_start = current_end = None
    for issue in sorted(issues, key=lambda item: (item.start_ms, item.end_ms)):
        if current_end is None or issue.start_ms > current_end:
            if current_end is not None:
                total += current_end - current_start
            current_start, current_end = issue.start_ms, issue.end_ms
        else:
            current_end = max(current_end, issue.end_ms)
    if current_end is not None:
        total += current_end - current_start
    return total


def pace_consistency_score(timed: Sequence[Word]) -> float:
    """1 - coefficient of variation of sliding-window WPM (1.0 for short clips)."""

    if len(timed) < 10:
        return 1.0
    window = max(len(timed) // 5, 10)
    step = max(window // 2, 1)
    rates = []
    for start in range(0, len(timed) - window + 1, step):
        chunk = timed[start : start + window]
        span_ms = chunk[-1].end_ms - chunk[0].start_ms
        if span_ms <= 0:
            continue
        rates.append(len(chunk) / (span_ms / 60_000))
    if len(rates) < 2:
        return 1.0
    mean = sum(rates) / len(rates)
    if mean <= 0:
        return 1.0
    variance = sum((rate - mean) ** 2 for rate in rates) / len(rates)
    return 1 - math.sqrt(variance) / mean


def pause_metrics(timed: Sequence[Word], min_pause_ms: int, long_pause_ms: int) -> dict[str, Any]:
    pauses = [
        following.start_ms - current.end_ms
        for current, following in zip(timed, timed[1:])
        if following.start_ms - current.end_ms >= min_pause_ms
    ]
    if not pauses:
        return {"pause_count": 0, "long_pause_count": 0, "average_pause_ms": 0, "longest_pause_ms": 0}
    return {
        "pause_count": len(pauses),
        "long_pause_count": sum(1 for pause in pauses if pause > long_pause_ms),
        "average_pause_ms": int(sum(pauses) / len(pauses)),
        "longest_pause_ms": max(pauses),
    }


def score_to_grade(score: float) -> str:
    if score >= 0.9:
        return "A"
    if score >= 0.8:
        return "B"
    if score >= 0.7:
        return "C"
    if score >= 0.6:
        return "D"
    return "F"


def assert_unit_scores(payload: Mapping[str, Any], path: str = "") -> None:
    """Raise ValueError if any ``*_score`` value in a nested payload leaves [0, 1]."""

    for key, value in payload.items():
        location = f"{path}.{key}" if path else str(key)
        if isinstance(value, Mapping):
            assert_unit_scores(value, location)
        elif str(key).endswith("_score") and isinstance(value, (int, float)) and not isinstance(value, bool):
            if not 0.0 <= float(value) <= 1.0:
                raise ValueError(f"Score {location}={value!r} is outside [0, 1]")


def _resolve_duration_seconds(timed: Sequence[Word], duration_seconds: float | None) -> float:
    if duration_seconds and duration_seconds > 0:
        return float(duration_seconds)
    if timed:
        return max(word.end_ms for word in timed) / 1000
    return 0.0


def _round(value: float) -> float:
    return round(value, _PRECISION)


__all__ = [
    "MetricsEngine",
    "MetricsReport",
    "ScoreCard",
    "assert_unit_scores",
    "clamp_unit",
    "merged_issue_duration_ms",
    "pace_consistency_score",
    "pause_metrics",
    "score_to_grade",
]
