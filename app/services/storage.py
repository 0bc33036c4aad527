"""S3 storage helpers for uploaded session recordings."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import BinaryIO, Sequence

from botocore.exceptions import BotoCoreError, ClientError
from fastapi.concurrency import run_in_threadpool

from app.application.interfaces import BlobRef, MediaStoreInterface
from app.config.settings import settings
from app.domain.models import SessionSnapshot
from app.services.aws import create_boto3_client

logger = logging.getLogger(__name__)


class StorageError(RuntimeError):
    """Raised when reading or deleting recordings in S3 fails."""


class MissingMediaError(StorageError):
    """The session has no attached recording."""


@dataclass(frozen=True)
class S3BlobRef(BlobRef):
    bucket: str = ""
    client: object = None

    def open(self) -> BinaryIO:
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=self.key)
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"Failed to read recording {self.key}: {exc}") from exc
        return response["Body"]


class S3MediaStore(MediaStoreInterface):
    """Media store backed by the configured recordings bucket."""

    def __init__(self, bucket: str | None = None, client=None) -> None:
        self._bucket = bucket or settings.s3.bucket_name
        self._client = client or create_boto3_client("s3", region_name=settings.s3.region)

    async def fetch_first_attached_blob(self, session: SessionSnapshot) -> BlobRef:
        if not session.media_keys:
            raise MissingMediaError(f"No recording attached to {session.ref.label}")
        key = session.media_keys[0]
        try:
            head = await run_in_threadpool(self._client.head_object, Bucket=self._bucket, Key=key)
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"Recording {key} is not readable: {exc}") from exc
        return S3BlobRef(
            key=key,
            filename=key.rsplit("/", 1)[-1],
            content_type=head.get("ContentType"),
            bucket=self._bucket,
            client=self._client,
        )

    async def delete_blobs(self, keys: Sequence[str]) -> None:
        if not keys:
            return
        try:
            await run_in_threadpool(
                self._client.delete_objects,
                Bucket=self._bucket,
                Delete={"Objects": [{"Key": key} for key in keys], "Quiet": True},
            )
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"Failed to delete recordings: {exc}") from exc
        logger.info("Deleted %s recording(s) from %s", len(keys), self._bucket)


__all__ = ["MissingMediaError", "S3BlobRef", "S3MediaStore", "StorageError"]
