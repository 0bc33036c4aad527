"""Pydantic models for validating LLM JSON responses.

Both AI stages (refinement and relevance) run their raw model output
through these schemas so downstream code receives normalized, type-safe
objects. ``from_json`` tolerates Markdown fences and chatter around the
JSON object.
"""

from __future__ import annotations

import json
from typing import Any, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


class ResponseContractError(RuntimeError):
    """Raised when the LLM response contract cannot be validated."""


class _JsonContract(BaseModel):
    model_config = {"populate_by_name": True, "extra": "ignore"}

    @classmethod
    def from_json(cls, payload: str):
        cleaned = _clean_json_payload(payload)
        try:
            data = json.loads(cleaned)
        except json.JSONDecodeError as exc:
            raise ResponseContractError(f"Model output is not valid JSON: {exc}") from exc
        return cls.model_validate(data)


def _clamp_confidence(value: Optional[float]) -> Optional[float]:
    if value is None:
        return None
    return max(0.0, min(1.0, float(value)))


class ConfirmedCandidate(BaseModel):
    candidate_id: int = Field(alias="candidateId")
    confidence: Optional[float] = None
    rationale: Optional[str] = None

    model_config = {"populate_by_name": True}

    @field_validator("confidence")
    @classmethod
    def _normalize_confidence(cls, value: Optional[float]) -> Optional[float]:
        return _clamp_confidence(value)


class RejectedCandidate(BaseModel):
    candidate_id: int = Field(alias="candidateId")
    reason: Optional[str] = None

    model_config = {"populate_by_name": True}


class DiscoveredFiller(BaseModel):
    word: str
    text_snippet: str = Field(default="", alias="textSnippet")
    start_ms: Optional[int] = Field(default=None, alias="startMs")
    confidence: Optional[float] = None
    rationale: Optional[str] = None
    severity: str = "medium"

    model_config = {"populate_by_name": True}

    @field_validator("confidence")
    @classmethod
    def _normalize_confidence(cls, value: Optional[float]) -> Optional[float]:
        return _clamp_confidence(value)

    @field_validator("severity")
    @classmethod
    def _known_severity(cls, value: str) -> str:
        value = (value or "medium").lower()
        return value if value in ("low", "medium", "high") else "medium"

    @field_validator("start_ms")
    @classmethod
    def _non_negative_start(cls, value: Optional[int]) -> Optional[int]:
        if value is None or value < 0:
            return None
        return value


class RefinementResponse(_JsonContract):
    summary: str
    confirmed: List[ConfirmedCandidate] = Field(default_factory=list)
    rejected: List[RejectedCandidate] = Field(default_factory=list)
    discovered: List[DiscoveredFiller] = Field(default_factory=list)
    insights: List[str] = Field(default_factory=list)
    micro_tips: List[str] = Field(default_factory=list, alias="microTips")

    @model_validator(mode="after")
    def _drop_blank_text(self) -> "RefinementResponse":
        self.insights = [item.strip() for item in self.insights if item and item.strip()]
        self.micro_tips = [item.strip() for item in self.micro_tips if item and item.strip()]
        if not self.summary.strip():
            raise ValueError("summary must not be empty")
        return self

    def to_cache(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class RelevanceResponse(_JsonContract):
    relevance_score: float = Field(alias="relevanceScore")
    feedback: Optional[str] = None

    @model_validator(mode="after")
    def _clamp(self) -> "RelevanceResponse":
        self.relevance_score = max(0.0, min(1.0, float(self.relevance_score)))
        return self


def _clean_json_payload(payload: str) -> str:
    """Strip Markdown code blocks and find the first/last brace to extract JSON."""
    if not payload:
        return ""

    cleaned = payload.strip()
    if cleaned.startswith("```json"):
        cleaned = cleaned[7:]
    elif cleaned.startswith("```"):
        cleaned = cleaned[3:]

    if cleaned.endswith("```"):
        cleaned = cleaned[:-3]

    cleaned = cleaned.strip()

    start = cleaned.find("{")
    end = cleaned.rfind("}")

    if start != -1 and end != -1 and end > start:
        cleaned = cleaned[start : end + 1]

    return cleaned


__all__ = [
    "ConfirmedCandidate",
    "DiscoveredFiller",
    "RefinementResponse",
    "RejectedCandidate",
    "RelevanceResponse",
    "ResponseContractError",
]
