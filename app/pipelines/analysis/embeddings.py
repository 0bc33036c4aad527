"""Embedding generation (Stage 06 of the analysis pipeline).

Embeds a short summary of the transcript plus the text of up to three key
issues so later sessions can be compared with this one. Optional: every
failure turns into ``EmbeddingSkipped``.
"""

from __future__ import annotations

import logging
from typing import Sequence, Union

from app.services.embeddings_client import BedrockEmbeddingClient, EmbeddingError, get_embedding_client

from .types import DetectedIssue, EmbeddingSet, EmbeddingSkipped, EmbeddingVector, ProcessingOptions

logger = logging.getLogger("app.services.analysis_pipeline")

_SUMMARY_CHARS = 1000
_MAX_ISSUE_HIGHLIGHTS = 3
_SEVERITY_RANK = {"high": 0, "medium": 1, "low": 2}


def highlights(transcript: str, issues: Sequence[DetectedIssue]) -> list[tuple[str, str]]:
    """``(label, text)`` pairs to embed, transcript summary first."""

    pairs = [("transcript_summary", transcript.strip()[:_SUMMARY_CHARS])]
    ranked = sorted(
        (issue for issue in issues if issue.text.strip()),
        key=lambda issue: (_SEVERITY_RANK.get(issue.severity, 3), issue.start_ms),
    )
    for index, issue in enumerate(ranked[:_MAX_ISSUE_HIGHLIGHTS]):
        pairs.append((f"issue_{index}_{issue.kind}", issue.text.strip()))
    return pairs


class EmbeddingsGenerator:
    def __init__(self, client: BedrockEmbeddingClient | None = None) -> None:
        self._client = client or get_embedding_client()

    async def generate(
        self,
        transcript: str,
        issues: Sequence[DetectedIssue],
        options: ProcessingOptions | None = None,
    ) -> Union[EmbeddingSet, EmbeddingSkipped]:
        if options is not None and options.skip_embeddings:
            return EmbeddingSkipped("disabled_by_option")
        if not self._client.is_configured:
            return EmbeddingSkipped("provider_unconfigured")
        if not transcript or not transcript.strip():
            return EmbeddingSkipped("empty_transcript")

        vectors = []
        try:
            for label, content in highlights(transcript, issues):
                vector = await self._client.embed(content)
                vectors.append(
                    EmbeddingVector(
                        label=label,
                        content=content,
                        vector=tuple(vector),
                        model_id=self._client.model_id,
                    )
                )
        except EmbeddingError as exc:
            logger.warning("Embedding generation skipped: %s", exc)
            return EmbeddingSkipped(f"error: {exc}")
        except Exception as exc:  # pragma: no cover - integration failure
            logger.exception("Embedding generation crashed")
            return EmbeddingSkipped(f"error: {exc}")

        logger.info("Generated %s embedding(s)", len(vectors))
        return EmbeddingSet(vectors=tuple(vectors))


__all__ = ["EmbeddingsGenerator", "highlights"]
