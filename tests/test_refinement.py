"""AI refinement: merge rules, retries, fallbacks and caching."""

from __future__ import annotations

import json

import pytest

from app.pipelines.analysis.refinement import AiRefiner, find_timing
from app.pipelines.analysis.types import DetectedIssue, ProcessingOptions, TranscriptionResult
from app.services.ai_cache import refinement_cache_key
from app.services.llm_client import LlmRateLimitError, LlmTimeoutError

from conftest import FakeLlm, filler_issue, make_words

TRANSCRIPT = "um so the plan is like um simple and we will ship it on friday"
WORDS = make_words(TRANSCRIPT)


def _rule_issues():
    return [
        filler_issue(WORDS[0].start_ms, "um"),
        filler_issue(WORDS[5].start_ms, "like"),
        filler_issue(WORDS[6].start_ms, "um"),
    ]


def _reply(**payload) -> str:
    payload.setdefault("summary", "Clear plan with a few fillers.")
    return json.dumps(payload)


@pytest.mark.anyio
async def test_confirmed_candidates_become_ai_issues(thresholds):
    llm = FakeLlm(
        _reply(
            confirmed=[
                {"candidate_id": 0, "confidence": 0.95},
                {"candidate_id": 1, "confidence": 0.9},
                {"candidate_id": 2},
            ],
            micro_tips=["Pause instead of saying um."],
        )
    )
    rule_issues = _rule_issues()

    result = await AiRefiner(llm=llm, thresholds=thresholds).refine(TRANSCRIPT, WORDS, rule_issues, "en")

    assert not result.fallback
    assert len(result.refined_issues) == 3
    assert all(issue.source == "ai" for issue in result.refined_issues)
    assert [issue.start_ms for issue in result.refined_issues] == [issue.start_ms for issue in rule_issues]
    assert result.refined_issues[2].confidence == thresholds.default_ai_confidence
    assert result.micro_tips == ("Pause instead of saying um.",)
    assert result.confirmed_count == 3


@pytest.mark.anyio
async def test_rejection_wins_and_unconfirmed_fillers_are_dropped(thresholds):
    hedge = DetectedIssue(
        "clarity_issue", "clarity_issues", WORDS[9].start_ms, WORDS[9].end_ms, "we", severity="low"
    )
    rule_issues = _rule_issues() + [hedge]
    llm = FakeLlm(
        _reply(
            confirmed=[{"candidate_id": 0, "confidence": 0.9}, {"candidate_id": 1, "confidence": 0.9}],
            rejected=[{"candidate_id": 1, "reason": "used as a comparison"}],
        )
    )

    result = await AiRefiner(llm=llm, thresholds=thresholds).refine(TRANSCRIPT, WORDS, rule_issues, "en")

    kinds = [(issue.kind, issue.text, issue.source) for issue in result.refined_issues]
    assert kinds == [("filler_word", "um", "ai"), ("clarity_issue", "we", "rule")]
    assert result.rejected_count == 1


@pytest.mark.anyio
async def test_low_confidence_confirmation_is_dropped(thresholds):
    llm = FakeLlm(_reply(confirmed=[{"candidate_id": 0, "confidence": 0.5}]))

    result = await AiRefiner(llm=llm, thresholds=thresholds).refine(TRANSCRIPT, WORDS, _rule_issues()[:1], "en")

    assert result.refined_issues == ()
    assert result.confirmed_count == 0


@pytest.mark.anyio
async def test_confirmed_count_only_includes_kept_issues(thresholds):
    llm = FakeLlm(
        _reply(
            confirmed=[
                {"candidate_id": 0, "confidence": 0.95},
                {"candidate_id": 1, "confidence": 0.4},
                {"candidate_id": 2, "confidence": 0.9},
            ]
        )
    )

    result = await AiRefiner(llm=llm, thresholds=thresholds).refine(TRANSCRIPT, WORDS, _rule_issues(), "en")

    assert len(result.refined_issues) == 2
    assert result.confirmed_count == 2


@pytest.mark.anyio
async def test_discovered_fillers_are_timed_or_dropped(thresholds):
    llm = FakeLlm(
        _reply(
            discovered=[
                {"word": "so", "text_snippet": "um so the", "confidence": 0.9},
                {"word": "actually", "start_ms": 5000, "confidence": 0.85, "severity": "low"},
                {"word": "basically", "confidence": 0.9},
                {"word": "um", "start_ms": WORDS[0].start_ms, "confidence": 0.9},
            ]
        )
    )

    result = await AiRefiner(llm=llm, thresholds=thresholds).refine(TRANSCRIPT, WORDS, _rule_issues(), "en")

    discovered = [issue for issue in result.refined_issues if issue.details.get("discovered")]
    assert [(issue.details["word"], issue.start_ms, issue.end_ms) for issue in discovered] == [
        ("so", WORDS[1].start_ms, WORDS[1].end_ms),
        ("actually", 5000, 5500),
    ]
    assert discovered[0].tip.startswith("Start sentences with your main point")
    assert result.discovered_count == 2


@pytest.mark.anyio
async def test_invalid_json_is_retried_before_succeeding(thresholds):
    llm = FakeLlm("not json", "", _reply(confirmed=[{"candidate_id": 0, "confidence": 0.9}]))

    result = await AiRefiner(llm=llm, thresholds=thresholds).refine(TRANSCRIPT, WORDS, _rule_issues(), "en")

    assert not result.fallback
    assert len(llm.calls) == 3


@pytest.mark.anyio
async def test_exhausted_retries_fall_back_to_rule_issues(thresholds):
    llm = FakeLlm("nope", "{}", "```json\n{\"summary\": \"\"}\n```")
    rule_issues = _rule_issues()

    result = await AiRefiner(llm=llm, thresholds=thresholds).refine(TRANSCRIPT, WORDS, rule_issues, "en")

    assert result.fallback
    assert result.fallback_reason == "malformed_response"
    assert result.refined_issues == tuple(rule_issues)


@pytest.mark.parametrize(
    "error, reason",
    [(LlmTimeoutError("slow"), "timeout"), (LlmRateLimitError("503"), "rate_limited")],
)
@pytest.mark.anyio
async def test_provider_errors_never_escape(thresholds, error, reason):
    rule_issues = _rule_issues()

    result = await AiRefiner(llm=FakeLlm(error), thresholds=thresholds).refine(
        TRANSCRIPT, WORDS, rule_issues, "en"
    )

    assert result.fallback
    assert result.fallback_reason == reason
    assert result.refined_issues == tuple(rule_issues)


@pytest.mark.anyio
async def test_second_identical_run_is_served_from_cache(thresholds, cache):
    llm = FakeLlm(_reply(confirmed=[{"candidate_id": 0, "confidence": 0.9}]))
    refiner = AiRefiner(llm=llm, cache=cache, thresholds=thresholds)
    rule_issues = _rule_issues()

    first = await refiner.refine(TRANSCRIPT, WORDS, rule_issues, "en")
    second = await refiner.refine(TRANSCRIPT, WORDS, rule_issues, "en")

    assert len(llm.calls) == 1
    assert not first.cache_hit and second.cache_hit
    assert first.refined_issues == second.refined_issues


@pytest.mark.anyio
async def test_unreadable_cache_entry_is_replaced(thresholds, cache):
    rule_issues = _rule_issues()
    key = refinement_cache_key(TRANSCRIPT, "en", rule_issues)
    await cache.set(key, {"confirmed": "garbage"}, 60)
    llm = FakeLlm(_reply())

    result = await AiRefiner(llm=llm, cache=cache, thresholds=thresholds).refine(
        TRANSCRIPT, WORDS, rule_issues, "en"
    )

    assert not result.cache_hit
    assert len(llm.calls) == 1
    assert (await cache.get(key))["summary"] == "Clear plan with a few fillers."


def test_cache_key_depends_on_every_input():
    issues = _rule_issues()
    base = refinement_cache_key(TRANSCRIPT, "en", issues)
    assert base == refinement_cache_key(TRANSCRIPT, "en", list(issues))
    assert base != refinement_cache_key(TRANSCRIPT + ".", "en", issues)
    assert base != refinement_cache_key(TRANSCRIPT, "es", issues)
    assert base != refinement_cache_key(TRANSCRIPT, "en", issues[:2])
    assert base != refinement_cache_key(TRANSCRIPT, "en", issues, prompt_version="other")


@pytest.mark.parametrize(
    "options, llm, word_count, reason",
    [
        (ProcessingOptions(skip_ai=True), FakeLlm(), 80, "disabled_by_option"),
        (ProcessingOptions(), FakeLlm(configured=False), 80, "api_key_missing"),
        (ProcessingOptions(), FakeLlm(), 49, "insufficient_content"),
        (ProcessingOptions(), FakeLlm(quota_exhausted=True), 80, "quota_exceeded"),
        (ProcessingOptions(), FakeLlm(), 50, None),
    ],
)
def test_should_refine_gates(thresholds, options, llm, word_count, reason):
    text = " ".join(["word"] * word_count)
    transcription = TranscriptionResult(transcript=text, words=make_words(text))

    skipped = AiRefiner(llm=llm, thresholds=thresholds).should_refine(transcription, options)

    assert (skipped.reason if skipped else None) == reason


def test_find_timing_handles_multi_word_fillers():
    words = make_words("and you know it works")
    assert find_timing("You know", words) == (words[1].start_ms, words[2].end_ms)
    assert find_timing("whatever", words) is None
    assert find_timing("whatever", words, suggested_start_ms=1200) == (1200, 1700)
