"""Prompt construction for the AI stages.

The refinement prompt shows the model the transcript plus a numbered list
of rule candidates and asks for a strict JSON verdict on each. The
relevance prompt asks for a single score of how well the answer follows
the session prompt.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Sequence

from .types import DetectedIssue

_MAX_TRANSCRIPT_CHARS = 12_000

_LANGUAGE_NAMES = {
    "en": "English",
    "es": "Spanish",
    "pt": "Portuguese",
    "fr": "French",
    "de": "German",
    "it": "Italian",
}

REFINEMENT_SCHEMA = {
    "summary": "string, one or two sentences about the speaker",
    "confirmed": [{"candidate_id": "int", "confidence": "0..1", "rationale": "string"}],
    "rejected": [{"candidate_id": "int", "reason": "string"}],
    "discovered": [
        {
            "word": "string",
            "text_snippet": "string",
            "start_ms": "int or null",
            "confidence": "0..1",
            "rationale": "string",
            "severity": "low|medium|high",
        }
    ],
    "insights": ["string"],
    "micro_tips": ["string"],
}

REFINEMENT_SYSTEM_PROMPT = (
    "You are a speech coach reviewing automatic detections in a practice recording. "
    "Rule-based candidates may be false positives: 'like' used as a verb or 'so' as a "
    "conjunction is not a filler. Confirm real problems, reject false positives and "
    "report filler words the rules missed. Respond with a single JSON object only, "
    "no Markdown, following exactly this schema:\n"
    f"{json.dumps(REFINEMENT_SCHEMA, indent=2)}"
)

RELEVANCE_SYSTEM_PROMPT = (
    "You judge whether a spoken answer addresses the practice prompt it was given. "
    "Be generous: partial or creative answers are on topic. Respond with JSON only: "
    '{"relevance_score": <0..1>, "feedback": "<one sentence>"}'
)


@dataclass(frozen=True)
class PromptBundle:
    system_prompt: str
    user_prompt: str


def language_name(language: str) -> str:
    return _LANGUAGE_NAMES.get(language.split("-", 1)[0].lower(), "English")


def _truncate(value: str, max_length: int) -> str:
    if len(value) <= max_length:
        return value
    return value[: max_length - 3] + "..."


def candidate_payload(issues: Sequence[DetectedIssue]) -> list[dict]:
    """Numbered view of rule issues; ``id`` is the index the model refers back to."""

    return [
        {
            "id": index,
            "kind": issue.kind,
            "text": issue.text,
            "start_ms": issue.start_ms,
            "end_ms": issue.end_ms,
            "context": issue.details.get("context", ""),
        }
        for index, issue in enumerate(issues)
    ]


def build_refinement_prompt(
    transcript: str,
    issues: Sequence[DetectedIssue],
    language: str,
) -> PromptBundle:
    user_prompt = "\n".join(
        [
            f"Language: {language_name(language)}",
            "",
            "Transcript:",
            _truncate(transcript, _MAX_TRANSCRIPT_CHARS),
            "",
            "Candidates:",
            json.dumps(candidate_payload(issues), ensure_ascii=False, indent=2),
            "",
            "Write summary, insights and micro_tips in the transcript language.",
        ]
    )
    return PromptBundle(system_prompt=REFINEMENT_SYSTEM_PROMPT, user_prompt=user_prompt)


def build_relevance_prompt(prompt_text: str, transcript: str, language: str) -> PromptBundle:
    user_prompt = "\n".join(
        [
            f"The prompt and response are in {language_name(language)}.",
            f"Prompt: {prompt_text}",
            f"Response: {_truncate(transcript, _MAX_TRANSCRIPT_CHARS)}",
        ]
    )
    return PromptBundle(system_prompt=RELEVANCE_SYSTEM_PROMPT, user_prompt=user_prompt)


__all__ = [
    "PromptBundle",
    "REFINEMENT_SCHEMA",
    "build_refinement_prompt",
    "build_relevance_prompt",
    "candidate_payload",
    "language_name",
]
