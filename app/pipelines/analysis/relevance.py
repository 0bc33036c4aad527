"""Best-effort check that a recording answers its session prompt."""

from __future__ import annotations

import logging
from typing import Optional

from pydantic import ValidationError

from app.application.interfaces import AiCacheInterface
from app.config.settings import AnalysisThresholds, BedrockConfig, settings
from app.services.ai_cache import relevance_cache_key
from app.services.llm_client import BedrockLlmClient, LlmInvocationError, get_llm_client
from app.services.response_contract import RelevanceResponse, ResponseContractError
from app.telemetry import record_skip

from .prompts import build_relevance_prompt
from .types import RelevanceOutcome

logger = logging.getLogger("app.services.analysis_pipeline")

_UNCHECKED = RelevanceOutcome(on_topic=True, relevance_score=1.0, checked=False)
_UNAVAILABLE = RelevanceOutcome(
    on_topic=True,
    relevance_score=1.0,
    feedback="Unable to check relevance - proceeding with analysis",
    checked=False,
)


class RelevanceChecker:
    """Score prompt adherence with a small model; any failure counts as on topic."""

    def __init__(
        self,
        llm: BedrockLlmClient | None = None,
        cache: AiCacheInterface | None = None,
        thresholds: AnalysisThresholds | None = None,
        config: BedrockConfig | None = None,
    ) -> None:
        self._llm = llm or get_llm_client()
        self._cache = cache
        self._t = thresholds or settings.analysis
        self._config = config or settings.bedrock

    async def check(
        self,
        prompt_text: Optional[str],
        transcript: str,
        language: str = "en",
    ) -> RelevanceOutcome:
        if not prompt_text or not prompt_text.strip() or not transcript.strip():
            record_skip("relevance", "no_prompt")
            return _UNCHECKED
        if not self._llm.is_configured or self._llm.quota_exhausted:
            record_skip("relevance", "provider_unavailable")
            return _UNCHECKED

        try:
            response = await self._load_or_request(prompt_text, transcript, language)
        except (LlmInvocationError, ResponseContractError, ValidationError) as exc:
            logger.warning("Relevance check unavailable: %s", exc)
            return _UNAVAILABLE
        except Exception:
            logger.exception("Relevance check crashed; treating the answer as on topic")
            return _UNAVAILABLE

        outcome = self._outcome(response)
        logger.info(
            "Relevance score=%.2f on_topic=%s", outcome.relevance_score, outcome.on_topic
        )
        return outcome

    async def _load_or_request(
        self,
        prompt_text: str,
        transcript: str,
        language: str,
    ) -> RelevanceResponse:
        cache_key = relevance_cache_key(prompt_text, transcript, language)
        if self._cache is not None:
            cached = await self._cache.get(cache_key)
            if cached:
                try:
                    return RelevanceResponse.model_validate(cached)
                except ValidationError:
                    logger.warning("Discarding unreadable cached relevance key=%s", cache_key)
                    await self._cache.delete(cache_key)

        bundle = build_relevance_prompt(prompt_text, transcript, language)
        raw_response = await self._llm.invoke(
            system_prompt=bundle.system_prompt,
            user_prompt=bundle.user_prompt,
            model_id=self._config.relevance_model_id or None,
            max_tokens=200,
        )
        if not raw_response:
            raise ResponseContractError("Relevance model returned an empty response")
        response = RelevanceResponse.from_json(raw_response)

        if self._cache is not None:
            await self._cache.set(
                cache_key,
                response.model_dump(mode="json"),
                self._t.cache_ttl_hours * 3600,
            )
        return response

    def _outcome(self, response: RelevanceResponse) -> RelevanceOutcome:
        return RelevanceOutcome(
            on_topic=response.relevance_score >= self._t.relevance_threshold,
            relevance_score=round(response.relevance_score, 4),
            feedback=response.feedback,
        )


def apply_relevance_penalty(
    overall_score: float,
    outcome: Optional[RelevanceOutcome],
    thresholds: AnalysisThresholds | None = None,
) -> float:
    """Scale the overall score down for an off-topic answer."""

    t = thresholds or settings.analysis
    if outcome is None or not outcome.checked or outcome.on_topic:
        return overall_score
    return max(0.0, min(1.0, overall_score * t.relevance_penalty))


__all__ = ["RelevanceChecker", "apply_relevance_penalty"]
