"""Thin Bedrock client wrapper for LLM invocations used by the AI stages."""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import threading
from datetime import date
from typing import Optional

from botocore.exceptions import BotoCoreError, ClientError
from fastapi.concurrency import run_in_threadpool

from app.config.settings import BedrockConfig, settings
from app.services.aws import AUTH_CODES, QUOTA_CODES, THROTTLING_CODES, create_boto3_client, error_code

logger = logging.getLogger(__name__)


class LlmInvocationError(RuntimeError):
    """Raised when the Bedrock invocation fails."""

    reason = "provider_error"


class LlmRateLimitError(LlmInvocationError):
    reason = "rate_limited"


class LlmAuthenticationError(LlmInvocationError):
    reason = "auth_failed"


class LlmQuotaExceededError(LlmInvocationError):
    reason = "quota_exceeded"


class LlmTimeoutError(LlmInvocationError):
    reason = "timeout"


def _decode_bedrock_api_key(secret_value: Optional[str]) -> tuple[str, str] | None:
    """Decode the BEDROCK_API_KEY secret into access/secret key components."""

    if not secret_value:
        return None

    try:
        decoded_bytes = base64.b64decode(secret_value.strip(), validate=True)
    except (binascii.Error, ValueError):
        decoded_bytes = secret_value.encode("utf-8", "ignore")

    filtered = "".join(chr(b) for b in decoded_bytes if 31 < b < 127)
    if ":" not in filtered:
        return None
    access_key, secret_key = filtered.split(":", 1)
    return access_key, secret_key


class DailyCallBudget:
    """Per-process count of paid calls, reset every UTC day."""

    def __init__(self, limit: int) -> None:
        self._limit = limit
        self._day = date.today()
        self._used = 0
        self._lock = threading.Lock()

    def _roll(self) -> None:
        today = date.today()
        if today != self._day:
            self._day = today
            self._used = 0

    def exhausted(self) -> bool:
        with self._lock:
            self._roll()
            return self._limit > 0 and self._used >= self._limit

    def consume(self) -> None:
        with self._lock:
            self._roll()
            if self._limit > 0 and self._used >= self._limit:
                raise LlmQuotaExceededError("Daily Bedrock call budget exhausted")
            self._used += 1


def classify_client_error(exc: BaseException) -> LlmInvocationError:
    code = error_code(exc)
    if code in THROTTLING_CODES:
        return LlmRateLimitError(str(exc))
    if code in AUTH_CODES:
        return LlmAuthenticationError(str(exc))
    if code in QUOTA_CODES:
        return LlmQuotaExceededError(str(exc))
    return LlmInvocationError(str(exc))


class BedrockLlmClient:
    """Invoke Amazon Bedrock models with standard configuration."""

    def __init__(self, config: BedrockConfig | None = None) -> None:
        self._config = config or settings.bedrock
        self._model_id = self._config.model_id
        self._budget = DailyCallBudget(self._config.daily_call_budget)

        api_key_tuple = None
        if self._config.api_key:
            api_key_tuple = _decode_bedrock_api_key(
                self._config.api_key.get_secret_value()
            )

        self._client = None
        if not self._config.enabled:
            return
        try:
            self._client = create_boto3_client(
                "bedrock-runtime",
                region_name=self._config.region,
                aws_access_key_id=api_key_tuple[0] if api_key_tuple else None,
                aws_secret_access_key=api_key_tuple[1] if api_key_tuple else None,
                read_timeout=self._config.timeout_seconds,
            )
        except (BotoCoreError, ValueError) as exc:  # pragma: no cover - configuration issue
            logger.warning("Could not initialise Bedrock client: %s", exc)
            self._client = None

    @property
    def is_configured(self) -> bool:
        return self._client is not None and bool(self._model_id)

    @property
    def quota_exhausted(self) -> bool:
        return self._budget.exhausted()

    async def invoke(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        max_tokens: int | None = None,
        temperature: float | None = None,
        top_p: float | None = None,
        model_id: str | None = None,
        timeout: float | None = None,
    ) -> str | None:
        """Run a Bedrock `converse` call and return the aggregate text output."""

        target_model_id = model_id or self._model_id
        if not self._client or not target_model_id:
            return None

        self._budget.consume()

        inference_cfg = {
            "maxTokens": max_tokens or self._config.max_tokens,
            "temperature": (
                temperature
                if temperature is not None
                else self._config.temperature
            ),
            "topP": top_p if top_p is not None else self._config.top_p,
        }

        def _call() -> str:
            response = self._client.converse(
                modelId=target_model_id,
                system=[{"text": system_prompt}],
                messages=[{"role": "user", "content": [{"text": user_prompt}]}],
                inferenceConfig=inference_cfg,
            )
            content_blocks = (
                response.get("output", {})
                .get("message", {})
                .get("content", [])
            )
            texts = [block.get("text", "") for block in content_blocks if block.get("text")]
            return "\n".join(texts).strip()

        try:
            result = await asyncio.wait_for(
                run_in_threadpool(_call),
                timeout=timeout or self._config.timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise LlmTimeoutError(f"Bedrock call exceeded {timeout or self._config.timeout_seconds}s") from exc
        except ClientError as exc:  # pragma: no cover - external dependency
            raise classify_client_error(exc) from exc
        except BotoCoreError as exc:  # pragma: no cover - external dependency
            raise LlmInvocationError(str(exc)) from exc

        return result or None


def get_llm_client() -> BedrockLlmClient:
    """Return the process-wide Bedrock client."""
    return _DEFAULT_CLIENT


_DEFAULT_CLIENT = BedrockLlmClient()


__all__ = [
    "BedrockLlmClient",
    "DailyCallBudget",
    "LlmAuthenticationError",
    "LlmInvocationError",
    "LlmQuotaExceededError",
    "LlmRateLimitError",
    "LlmTimeoutError",
    "classify_client_error",
    "get_llm_client",
]
