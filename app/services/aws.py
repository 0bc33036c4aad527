"""Shared AWS helpers for service clients."""

from __future__ import annotations

from typing import Any

import boto3
from botocore.config import Config

from app.config.settings import settings

# Throttling and access codes shared by Bedrock, S3 and Transcribe.
THROTTLING_CODES = frozenset(
    {
        "ThrottlingException",
        "TooManyRequestsException",
        "LimitExceededException",
        "ProvisionedThroughputExceededException",
        "SlowDown",
    }
)
AUTH_CODES = frozenset(
    {
        "AccessDeniedException",
        "UnrecognizedClientException",
        "ExpiredTokenException",
        "InvalidSignatureException",
        "AccessDenied",
    }
)
QUOTA_CODES = frozenset({"ServiceQuotaExceededException"})


def create_boto3_client(
    service_name: str,
    *,
    region_name: str | None = None,
    aws_access_key_id: str | None = None,
    aws_secret_access_key: str | None = None,
    read_timeout: float | None = None,
    max_attempts: int = 2,
) -> boto3.client:
    """Instantiate a boto3 client using configured credentials if available."""

    region = region_name or settings.s3.region
    client_kwargs: dict[str, Any] = {
        "region_name": region,
        "config": Config(
            read_timeout=read_timeout or 60,
            connect_timeout=10,
            retries={"max_attempts": max_attempts, "mode": "standard"},
        ),
    }
    if aws_access_key_id and aws_secret_access_key:
        client_kwargs["aws_access_key_id"] = aws_access_key_id
        client_kwargs["aws_secret_access_key"] = aws_secret_access_key
    elif settings.s3.access_key and settings.s3.secret_key:
        client_kwargs["aws_access_key_id"] = settings.s3.access_key
        client_kwargs["aws_secret_access_key"] = settings.s3.secret_key
    return boto3.client(service_name, **client_kwargs)


def error_code(exc: BaseException) -> str | None:
    """Return the AWS error code carried by a botocore ClientError, if any."""

    response = getattr(exc, "response", None)
    if isinstance(response, dict):
        return response.get("Error", {}).get("Code")
    return None


__all__ = [
    "AUTH_CODES",
    "QUOTA_CODES",
    "THROTTLING_CODES",
    "create_boto3_client",
    "error_code",
]
