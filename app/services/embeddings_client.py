"""Bedrock Titan embeddings used for session personalisation."""

from __future__ import annotations

import asyncio
import json
import logging

from botocore.exceptions import BotoCoreError, ClientError
from fastapi.concurrency import run_in_threadpool

from app.config.settings import BedrockConfig, settings
from app.services.aws import create_boto3_client

logger = logging.getLogger(__name__)

_MAX_INPUT_CHARS = 8000


class EmbeddingError(RuntimeError):
    """Raised when an embedding request fails or returns no vector."""


class BedrockEmbeddingClient:
    def __init__(self, config: BedrockConfig | None = None) -> None:
        self._config = config or settings.bedrock
        self._client = None
        if not self._config.enabled or not self._config.embedding_model_id:
            return
        try:
            self._client = create_boto3_client(
                "bedrock-runtime",
                region_name=self._config.region,
                read_timeout=self._config.timeout_seconds,
            )
        except (BotoCoreError, ValueError) as exc:  # pragma: no cover - configuration issue
            logger.warning("Could not initialise Bedrock embeddings client: %s", exc)

    @property
    def is_configured(self) -> bool:
        return self._client is not None

    @property
    def model_id(self) -> str:
        return self._config.embedding_model_id

    async def embed(self, text: str) -> list[float]:
        if not self._client:
            raise EmbeddingError("Embeddings provider is not configured")

        body = json.dumps({"inputText": text[:_MAX_INPUT_CHARS]})

        def _call() -> list[float]:
            response = self._client.invoke_model(
                modelId=self._config.embedding_model_id,
                body=body,
                contentType="application/json",
                accept="application/json",
            )
            payload = json.loads(response["body"].read())
            return list(payload.get("embedding") or [])

        try:
            vector = await asyncio.wait_for(
                run_in_threadpool(_call), timeout=self._config.timeout_seconds
            )
        except asyncio.TimeoutError as exc:
            raise EmbeddingError("Embedding request timed out") from exc
        except (ClientError, BotoCoreError) as exc:  # pragma: no cover - external dependency
            raise EmbeddingError(str(exc)) from exc

        if not vector:
            raise EmbeddingError("Embedding response contained no vector")
        return vector


def get_embedding_client() -> BedrockEmbeddingClient:
    return _DEFAULT_CLIENT


_DEFAULT_CLIENT = BedrockEmbeddingClient()


__all__ = ["BedrockEmbeddingClient", "EmbeddingError", "get_embedding_client"]
