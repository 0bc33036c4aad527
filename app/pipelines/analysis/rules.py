"""Rule-based issue detection (Stage 03 of the analysis pipeline).

Deterministic and free of I/O: the same transcript, words and language
always produce the same issues. Phrase rules match lexicons against the
timed word stream, special rules cover speaking rate and long pauses.
Output is sorted by ``start_ms`` with ties kept in detection order, and
overlapping issues are left for the refiner and metrics to reconcile.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Sequence

from app.config.settings import AnalysisThresholds, settings

from .errors import AnalysisError
from .rulepacks import Rule, load_rules
from .types import DetectedIssue, Word

logger = logging.getLogger("app.services.analysis_pipeline")


@dataclass(frozen=True)
class _Match:
    first: int
    last: int


class RuleDetector:
    """Scan a transcript with the rule pack of its language."""

    def __init__(self, thresholds: AnalysisThresholds | None = None) -> None:
        self._thresholds = thresholds or settings.analysis

    def detect(
        self,
        transcript: str,
        words: Sequence[Word],
        language: str = "en",
        duration_seconds: float | None = None,
    ) -> list[DetectedIssue]:
        _validate_input(transcript, words)

        timed = [word for word in words if word.has_timing]
        duration_ms = _resolve_duration_ms(timed, duration_seconds)
        issues: list[DetectedIssue] = []

        for rule in load_rules(language):
            if rule.special:
                issues.extend(self._detect_special(rule, transcript, timed, duration_ms))
            else:
                issues.extend(self._detect_phrases(rule, timed, duration_ms))

        ordered = sorted(issues, key=lambda issue: issue.start_ms)
        logger.info(
            "Rule detection language=%s words=%s issues=%s",
            language,
            len(words),
            len(ordered),
        )
        return ordered

    def _detect_phrases(
        self,
        rule: Rule,
        timed: list[Word],
        duration_ms: int,
    ) -> list[DetectedIssue]:
        matches = _find_phrase_matches(rule, timed)
        if not matches:
            return []

        if rule.group_nearby:
            groups = _group_nearby(matches, timed, rule.context_window * 1000)
        else:
            groups = [[match] for match in matches]

        issues = []
        for group in groups:
            first_word = timed[group[0].first]
            last_word = timed[group[-1].last]
            start_ms, end_ms = _span(first_word.start_ms, last_word.end_ms)
            matched = [
                " ".join(word.text for word in timed[match.first : match.last + 1])
                for match in group
            ]
            issues.append(
                DetectedIssue(
                    kind=rule.kind,
                    category=rule.category,
                    start_ms=start_ms,
                    end_ms=end_ms,
                    text=" ... ".join(matched),
                    source="rule",
                    severity=rule.severity,
                    rationale=rule.description,
                    tip=rule.tip,
                    details={
                        "matched_words": matched,
                        "context": _context_text(timed, group[0].first, group[-1].last, rule.context_window),
                    },
                )
            )

        if rule.max_matches_per_minute and duration_ms > 0:
            limit = math.ceil(rule.max_matches_per_minute * duration_ms / 60_000)
            issues = issues[:limit]
        return issues

    def _detect_special(
        self,
        rule: Rule,
        transcript: str,
        timed: list[Word],
        duration_ms: int,
    ) -> list[DetectedIssue]:
        if rule.special == "long_pause_over_3s":
            return self._detect_long_pauses(rule, timed)

        if duration_ms <= 0 or len(timed) < self._thresholds.warn_words_threshold:
            return []
        wpm = len(timed) / (duration_ms / 60_000)
        too_slow = rule.special == "speaking_rate_below_120" and wpm < self._thresholds.slow_wpm
        too_fast = rule.special == "speaking_rate_above_180" and wpm > self._thresholds.fast_wpm
        if not (too_slow or too_fast):
            return []

        excerpt = transcript[:100] + ("..." if len(transcript) > 100 else "")
        return [
            DetectedIssue(
                kind=rule.kind,
                category=rule.category,
                start_ms=0,
                end_ms=duration_ms,
                text=excerpt,
                source="rule",
                severity=rule.severity,
                rationale=rule.description,
                tip=rule.tip,
                details={"speaking_rate": round(wpm, 1)},
            )
        ]

    def _detect_long_pauses(self, rule: Rule, timed: list[Word]) -> list[DetectedIssue]:
        issues = []
        for current, following in zip(timed, timed[1:]):
            gap_ms = following.start_ms - current.end_ms
            if gap_ms <= self._thresholds.long_pause_ms:
                continue
            issues.append(
                DetectedIssue(
                    kind=rule.kind,
                    category=rule.category,
                    start_ms=current.end_ms,
                    end_ms=following.start_ms,
                    text=f"{current.text}... [pause: {gap_ms / 1000:.1f}s] ...{following.text}",
                    source="rule",
                    severity=rule.severity,
                    rationale=rule.description,
                    tip=rule.tip,
                    details={"pause_duration_ms": gap_ms},
                )
            )
        return issues


def _validate_input(transcript: str, words: Sequence[Word]) -> None:
    if not isinstance(transcript, str):
        raise AnalysisError(f"Transcript must be text, got {type(transcript).__name__}")
    for index, word in enumerate(words):
        if not isinstance(word, Word):
            raise AnalysisError(f"Word {index} is not a Word record: {word!r}")
        # Untimed words are skipped; half-timed or inverted ones are malformed.
        partial = (word.start_ms is None) != (word.end_ms is None)
        if partial or (word.start_ms is not None and not word.has_timing):
            raise AnalysisError(f"Word {index} has malformed timing: {word!r}")


def _resolve_duration_ms(timed: list[Word], duration_seconds: float | None) -> int:
    if duration_seconds and duration_seconds > 0:
        return int(round(duration_seconds * 1000))
    if timed:
        return max(word.end_ms for word in timed)
    return 0


def _find_phrase_matches(rule: Rule, timed: list[Word]) -> list[_Match]:
    tokens = [word.normalized for word in timed]
    # Longest phrase first so "you know" wins over a shorter overlapping entry.
    phrases = sorted(rule.phrases, key=len, reverse=True)
    matches: list[_Match] = []
    index = 0
    while index < len(tokens):
        for phrase in phrases:
            size = len(phrase)
            if tuple(tokens[index : index + size]) == phrase:
                matches.append(_Match(first=index, last=index + size - 1))
                index += size
                break
        else:
            index += 1
    return matches


def _group_nearby(matches: list[_Match], timed: list[Word], max_gap_ms: int) -> list[list[_Match]]:
    groups: list[list[_Match]] = [[matches[0]]]
    for match in matches[1:]:
        previous = groups[-1][-1]
        gap_ms = timed[match.first].start_ms - timed[previous.last].end_ms
        if gap_ms <= max_gap_ms:
            groups[-1].append(match)
        else:
            groups.append([match])
    return groups


def _context_text(timed: list[Word], first: int, last: int, window: int) -> str:
    start = max(first - window, 0)
    end = min(last + window, len(timed) - 1)
    return " ".join(word.text for word in timed[start : end + 1])


def _span(start_ms: int, end_ms: int) -> tuple[int, int]:
    """Zero-length tokens still occupy one millisecond."""

    start = max(0, start_ms)
    return start, max(end_ms, start + 1)


__all__ = ["RuleDetector"]
