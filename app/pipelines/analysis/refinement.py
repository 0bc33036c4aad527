"""AI refinement (Stage 04 of the analysis pipeline).

The refiner asks Bedrock to confirm or reject each rule candidate and to
report fillers the lexicon missed. It is never fatal: any provider error,
rate limit, timeout or malformed response hands back the rule issues
unchanged through ``RefinementResult.fallback_from``.

Merge rules:

* confirmed candidates keep their rule timing and become ``source="ai"``;
* rejected candidates are dropped;
* candidates the model neither confirmed nor rejected survive as rule
  issues, except fillers, which need a confirmation;
* discovered fillers are timed from ``start_ms`` (a 500 ms span) or by
  finding the word in the transcript, otherwise dropped;
* anything below ``confidence_threshold`` is dropped.
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence

from pydantic import ValidationError

from app.application.interfaces import AiCacheInterface
from app.config.settings import AnalysisThresholds, settings
from app.services.ai_cache import refinement_cache_key
from app.services.llm_client import BedrockLlmClient, LlmInvocationError, get_llm_client
from app.services.response_contract import (
    DiscoveredFiller,
    RefinementResponse,
    ResponseContractError,
)
from app.telemetry import record_ai_fallback

from .errors import AiProviderError
from .prompts import build_refinement_prompt
from .types import (
    DetectedIssue,
    ProcessingOptions,
    RefinementResult,
    RefinementSkipped,
    TranscriptionResult,
    Word,
    normalize_token,
)

logger = logging.getLogger("app.services.analysis_pipeline")

_DISCOVERED_SPAN_MS = 500
_FILLER_KIND = "filler_word"

_FILLER_TIPS = {
    "um": 'Try pausing instead of using "um". Silence can be more powerful.',
    "uh": 'Take a breath and pause instead of filling space with "uh".',
    "like": 'Reduce casual "like" usage. Be more direct in your phrasing.',
    "you know": 'Avoid "you know" and state your point directly.',
    "so": 'Start sentences with your main point instead of "so".',
    "basically": 'Remove unnecessary "basically" and explain the idea directly.',
    "actually": 'Use "actually" only when you are genuinely correcting something.',
    "kind of": 'Be more definitive. Replace "kind of" with a specific description.',
    "sort of": 'Choose precise language instead of hedging with "sort of".',
}
_DEFAULT_FILLER_TIP = "Work on reducing this filler word for clearer communication."


def _truncate(value: str, max_length: int = 500) -> str:
    if len(value) <= max_length:
        return value
    return value[: max_length - 3] + "..."


class AiRefiner:
    """Confirm, reject and extend rule issues with an LLM."""

    def __init__(
        self,
        llm: BedrockLlmClient | None = None,
        cache: AiCacheInterface | None = None,
        thresholds: AnalysisThresholds | None = None,
    ) -> None:
        self._llm = llm or get_llm_client()
        self._cache = cache
        self._t = thresholds or settings.analysis

    def should_refine(
        self,
        transcription: TranscriptionResult,
        options: ProcessingOptions,
    ) -> Optional[RefinementSkipped]:
        """Return why refinement is skipped, or None when it should run."""

        if options.skip_ai:
            return RefinementSkipped("disabled_by_option")
        if not self._llm.is_configured:
            return RefinementSkipped("api_key_missing")
        if transcription.word_count < self._t.ai_min_words:
            return RefinementSkipped("insufficient_content")
        if self._llm.quota_exhausted:
            return RefinementSkipped("quota_exceeded")
        return None

    async def refine(
        self,
        transcript: str,
        words: Sequence[Word],
        rule_issues: Sequence[DetectedIssue],
        language: str = "en",
    ) -> RefinementResult:
        rule_issues = tuple(rule_issues)
        cache_key = refinement_cache_key(transcript, language, rule_issues)
        try:
            response, cache_hit = await self._load_or_request(cache_key, transcript, rule_issues, language)
            result = self._merge(response, words, rule_issues, cache_hit=cache_hit)
        except AiProviderError as exc:
            logger.warning("AI refinement fell back reason=%s: %s", exc.reason, exc)
            record_ai_fallback(exc.reason)
            return RefinementResult.fallback_from(rule_issues, exc.reason)
        except Exception as exc:  # pragma: no cover - unexpected merge failure
            logger.exception("AI refinement crashed; keeping rule issues")
            record_ai_fallback("internal_error")
            return RefinementResult.fallback_from(rule_issues, f"internal_error: {exc}")

        if self._cache is not None and not cache_hit:
            await self._cache.set(cache_key, response.to_cache(), self._t.cache_ttl_hours * 3600)

        logger.info(
            "AI refinement done cache_hit=%s confirmed=%s rejected=%s discovered=%s final=%s",
            cache_hit,
            result.confirmed_count,
            result.rejected_count,
            result.discovered_count,
            len(result.refined_issues),
        )
        return result

    async def _load_or_request(
        self,
        cache_key: str,
        transcript: str,
        rule_issues: tuple[DetectedIssue, ...],
        language: str,
    ) -> tuple[RefinementResponse, bool]:
        if self._cache is not None:
            cached = await self._cache.get(cache_key)
            if cached:
                try:
                    return RefinementResponse.model_validate(cached), True
                except ValidationError:
                    logger.warning("Discarding unreadable cached refinement key=%s", cache_key)
                    await self._cache.delete(cache_key)
        return await self._request(transcript, rule_issues, language), False

    async def _request(
        self,
        transcript: str,
        rule_issues: tuple[DetectedIssue, ...],
        language: str,
    ) -> RefinementResponse:
        bundle = build_refinement_prompt(transcript, rule_issues, language)
        last_error: Exception | None = None
        for attempt in range(self._t.max_json_retries + 1):
            try:
                raw_response = await self._llm.invoke(
                    system_prompt=bundle.system_prompt,
                    user_prompt=bundle.user_prompt,
                )
            except LlmInvocationError as exc:
                raise AiProviderError(str(exc), reason=exc.reason) from exc

            if not raw_response:
                last_error = ResponseContractError("LLM returned an empty response")
                logger.warning("Empty refinement response attempt=%s", attempt + 1)
                continue

            logger.info("Raw refinement response attempt=%s: %s", attempt + 1, _truncate(raw_response))
            try:
                return RefinementResponse.from_json(raw_response)
            except (ValidationError, ResponseContractError) as exc:
                last_error = exc
                logger.warning("Invalid refinement JSON attempt=%s: %s", attempt + 1, exc)

        raise AiProviderError(
            f"Model returned invalid JSON after {self._t.max_json_retries + 1} attempts: {last_error}",
            reason="malformed_response",
        )

    def _merge(
        self,
        response: RefinementResponse,
        words: Sequence[Word],
        rule_issues: tuple[DetectedIssue, ...],
        *,
        cache_hit: bool,
    ) -> RefinementResult:
        threshold = self._t.confidence_threshold
        default_confidence = self._t.default_ai_confidence
        valid_ids = range(len(rule_issues))

        rejected = {item.candidate_id for item in response.rejected if item.candidate_id in valid_ids}
        confirmed = {
            item.candidate_id: item
            for item in response.confirmed
            if item.candidate_id in valid_ids and item.candidate_id not in rejected
        }

        refined: list[DetectedIssue] = []
        confirmed_count = 0
        for index, issue in enumerate(rule_issues):
            if index in rejected:
                continue
            verdict = confirmed.get(index)
            if verdict is None:
                if issue.kind != _FILLER_KIND:
                    refined.append(issue)
                continue
            confidence = verdict.confidence if verdict.confidence is not None else default_confidence
            if confidence < threshold:
                continue
            refined.append(
                issue.as_ai(
                    confidence=confidence,
                    rationale=verdict.rationale or issue.rationale,
                )
            )
            confirmed_count += 1

        timed = [word for word in words if word.has_timing]
        discovered_count = 0
        for item in response.discovered:
            issue = self._discovered_issue(item, timed, default_confidence)
            if issue is None or issue.confidence < threshold:
                continue
            if _overlaps_filler(refined, issue):
                continue
            refined.append(issue)
            discovered_count += 1

        refined.sort(key=lambda value: value.start_ms)
        return RefinementResult(
            refined_issues=tuple(refined),
            insights=tuple(response.insights),
            micro_tips=tuple(response.micro_tips),
            summary=response.summary.strip(),
            cache_hit=cache_hit,
            confirmed_count=confirmed_count,
            rejected_count=len(rejected),
            discovered_count=discovered_count,
        )

    @staticmethod
    def _discovered_issue(
        item: DiscoveredFiller,
        timed: Sequence[Word],
        default_confidence: float,
    ) -> Optional[DetectedIssue]:
        timing = find_timing(item.word, timed, item.start_ms)
        if timing is None:
            logger.info("Dropping discovered filler %r without timing", item.word)
            return None
        start_ms, end_ms = timing
        word = item.word.strip()
        return DetectedIssue(
            kind=_FILLER_KIND,
            category="filler_words",
            start_ms=start_ms,
            end_ms=end_ms,
            text=item.text_snippet.strip() or word,
            source="ai",
            severity=item.severity,
            rationale=item.rationale,
            tip=_FILLER_TIPS.get(word.lower(), _DEFAULT_FILLER_TIP),
            confidence=item.confidence if item.confidence is not None else default_confidence,
            details={"discovered": True, "word": word},
        )


def find_timing(
    word: str,
    timed: Sequence[Word],
    suggested_start_ms: Optional[int] = None,
) -> Optional[tuple[int, int]]:
    """Locate a (possibly multi-word) filler in the timed word list."""

    if suggested_start_ms is not None and suggested_start_ms >= 0:
        return suggested_start_ms, suggested_start_ms + _DISCOVERED_SPAN_MS

    tokens = [normalize_token(part) for part in word.split()]
    tokens = [token for token in tokens if token]
    if not tokens:
        return None
    size = len(tokens)
    for start in range(len(timed) - size + 1):
        window = timed[start : start + size]
        if [candidate.normalized for candidate in window] == tokens:
            begin = window[0].start_ms
            return begin, max(window[-1].end_ms, begin + 1)
    return None


def _overlaps_filler(existing: Sequence[DetectedIssue], issue: DetectedIssue) -> bool:
    return any(
        other.kind == _FILLER_KIND
        and other.start_ms < issue.end_ms
        and issue.start_ms < other.end_ms
        for other in existing
    )


__all__ = ["AiRefiner", "find_timing"]
