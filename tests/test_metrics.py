"""Score computation, grades and the [0, 1] storage guard."""

from __future__ import annotations

import pytest

from app.pipelines.analysis.coaching import key_segments, micro_tips
from app.pipelines.analysis.metrics import (
    MetricsEngine,
    ScoreCard,
    assert_unit_scores,
    merged_issue_duration_ms,
    pace_consistency_score,
    score_to_grade,
)
from app.pipelines.analysis.rules import RuleDetector
from app.pipelines.analysis.types import DetectedIssue

from conftest import filler_issue, make_words


def _clip(word_count: int, seconds: float):
    step = int(seconds * 1000 / word_count)
    text = " ".join(["word"] * word_count)
    return text, make_words(text, step_ms=step, length_ms=max(step - 50, step // 2))


def test_clean_speech_at_ideal_pace_scores_high(thresholds):
    text, words = _clip(75, 30)  # 150 wpm

    report = MetricsEngine(thresholds).compute(text, words, [], 30)

    assert report.speaking_metrics["wpm"] == 150.0
    assert report.speaking_metrics["speaking_rate_band"] == "optimal"
    assert report.clarity_metrics["clarity_score"] == 1.0
    assert report.fluency_metrics["fluency_score"] == 1.0
    assert report.scores.pace_consistency == 1.0
    assert 0.0 <= report.overall_scores["overall_score"] <= 1.0
    assert report.overall_scores["grade"] in {"A", "B"}


def test_clarity_counts_overlapping_issues_once(thresholds):
    text, words = _clip(20, 10)
    issues = [
        filler_issue(1000, end_ms=2000),
        filler_issue(1500, end_ms=3000),
        filler_issue(5000, end_ms=6000),
    ]

    report = MetricsEngine(thresholds).compute(text, words, issues, 10)

    assert merged_issue_duration_ms(issues) == 3000
    assert report.clarity_metrics["clarity_score"] == pytest.approx(0.7)
    assert report.clarity_metrics["filler_metrics"]["filler_count"] == 3


def test_fast_clean_speech_keeps_full_clarity(thresholds):
    text, words = _clip(100, 25)  # 240 wpm
    issues = RuleDetector(thresholds).detect(text, words, "en", duration_seconds=25)

    report = MetricsEngine(thresholds).compute(text, words, issues, 25)

    assert [(issue.kind, issue.start_ms) for issue in issues] == [("pace_too_fast", 0)]
    assert report.clarity_metrics["clarity_score"] == 1.0
    assert report.overall_scores["overall_score"] > 0.5


def test_pace_issues_do_not_hide_real_clarity_problems(thresholds):
    text, words = _clip(20, 10)
    pace = DetectedIssue(
        kind="pace_too_slow", category="pace_issues", start_ms=0, end_ms=10_000, text=text, severity="medium"
    )

    report = MetricsEngine(thresholds).compute(text, words, [pace, filler_issue(1000, end_ms=2000)], 10)

    assert report.clarity_metrics["clarity_score"] == pytest.approx(0.9)


def test_scores_are_deterministic(thresholds):
    text, words = _clip(40, 20)
    issues = [filler_issue(400)]
    engine = MetricsEngine(thresholds)
    assert engine.compute(text, words, issues, 20).sections() == engine.compute(text, words, issues, 20).sections()


def test_every_score_stays_in_unit_range_for_extreme_input(thresholds):
    text, words = _clip(400, 10)  # 2400 wpm
    issues = [filler_issue(index * 20, end_ms=index * 20 + 10) for index in range(300)]

    report = MetricsEngine(thresholds).compute(text, words, issues, 10)

    assert_unit_scores(report.sections())
    for value in report.scores.components().values():
        assert 0.0 <= value <= 1.0


def test_failure_falls_back_to_minimal_metrics(thresholds, monkeypatch):
    engine = MetricsEngine(thresholds)

    def explode(*args, **kwargs):
        raise ZeroDivisionError("boom")

    monkeypatch.setattr(engine, "_compute", explode)
    text, words = _clip(10, 5)

    report = engine.compute(text, words, [], 5)

    assert report.fallback is True
    assert report.sections()["metrics_fallback"] == {"fallback": True, "error": "boom"}
    assert report.speaking_metrics == {"word_count": 10, "duration_seconds": 5.0}


def test_with_overall_replaces_score_and_grade(thresholds):
    text, words = _clip(75, 30)
    report = MetricsEngine(thresholds).compute(text, words, [], 30)

    penalised = report.with_overall(0.4, relevance_penalty_applied=True)

    assert penalised.overall_scores["overall_score"] == 0.4
    assert penalised.overall_scores["grade"] == "F"
    assert penalised.overall_scores["relevance_penalty_applied"] is True
    assert penalised.scores.overall == 0.4


def test_score_card_rejects_percentages():
    with pytest.raises(ValueError):
        ScoreCard(clarity=85, fluency=0.5, engagement=0.5, pace_consistency=0.5, overall=0.5)


def test_assert_unit_scores_finds_nested_percentages():
    with pytest.raises(ValueError, match="overall_scores.overall_score"):
        assert_unit_scores({"overall_scores": {"overall_score": 87.5}})


@pytest.mark.parametrize(
    "score, grade",
    [(0.95, "A"), (0.9, "A"), (0.85, "B"), (0.7, "C"), (0.65, "D"), (0.2, "F")],
)
def test_grades(score, grade):
    assert score_to_grade(score) == grade


def test_pace_consistency_drops_for_uneven_pace():
    steady = make_words(" ".join(["w"] * 40), step_ms=400)
    uneven = make_words(" ".join(["w"] * 20), step_ms=200) + make_words(
        " ".join(["w"] * 20), start_ms=4000, step_ms=900
    )
    assert pace_consistency_score(steady) == pytest.approx(1.0)
    assert pace_consistency_score(uneven) < 0.9


def test_metric_tips_rank_by_impact_over_effort(thresholds):
    text, words = _clip(100, 20)  # 300 wpm
    issues = [filler_issue(index * 1000) for index in range(10)]
    sections = MetricsEngine(thresholds).compute(text, words, issues, 20).sections()

    tips = micro_tips(sections)

    assert [tip["title"] for tip in tips][:2] == ["Slow Down", "Replace Fillers with Pauses"]
    assert len(tips) <= 3


def test_ai_tips_take_precedence():
    tips = micro_tips({}, ["Breathe.", "Smile.", "Pause.", "Extra."])
    assert [tip["action"] for tip in tips] == ["Breathe.", "Smile.", "Pause."]


def test_key_segments_skip_pace_and_rank_by_severity():
    issues = [
        DetectedIssue("pace_too_fast", "pace_issues", 0, 30_000, "fast", severity="medium"),
        filler_issue(4000, severity="low"),
        filler_issue(2000, severity="medium"),
        DetectedIssue("long_pause", "pause_issues", 9000, 13_000, "pause", severity="high"),
    ]

    segments = key_segments(issues)

    assert [segment["start_ms"] for segment in segments] == [9000, 2000, 4000]
