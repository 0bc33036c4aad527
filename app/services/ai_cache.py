"""Response cache for paid AI calls.

The refiner receives an ``AiCacheInterface`` instead of reaching for a
global, so tests run against ``InMemoryAiCache`` while the API and worker
share ``SqlAiCache`` rows. Keys come from pure functions of their inputs.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
import time
from datetime import timedelta
from typing import Any, Mapping, Optional, Sequence

from sqlalchemy import delete, select

from app.application.interfaces import AiCacheInterface
from app.database import session_scope
from app.models import AiCacheEntry
from app.models.base import utcnow
from app.pipelines.analysis.types import DetectedIssue

logger = logging.getLogger(__name__)

PROMPT_VERSION = "refine-v3"
_MAX_KEY_LENGTH = 255


def normalize_key(key: str) -> str:
    """Keep keys inside the column limit while staying unique."""

    if len(key) > _MAX_KEY_LENGTH:
        return f"{key[:200]}:{hashlib.md5(key.encode('utf-8')).hexdigest()}"
    return key


def refinement_cache_key(
    transcript: str,
    language: str,
    issues: Sequence[DetectedIssue],
    *,
    prompt_version: str = PROMPT_VERSION,
) -> str:
    signature = [
        (issue.kind, issue.start_ms, issue.end_ms, issue.text) for issue in issues
    ]
    digest = hashlib.sha256()
    digest.update(transcript.encode("utf-8"))
    digest.update(b"\x00")
    digest.update(language.encode("utf-8"))
    digest.update(b"\x00")
    digest.update(json.dumps(signature, ensure_ascii=False).encode("utf-8"))
    digest.update(b"\x00")
    digest.update(prompt_version.encode("utf-8"))
    return f"refinement:{digest.hexdigest()}"


def relevance_cache_key(prompt_text: str, transcript: str, language: str) -> str:
    digest = hashlib.sha256(
        "\x00".join((prompt_text, transcript, language)).encode("utf-8")
    ).hexdigest()
    return f"relevance:{digest}"


class InMemoryAiCache(AiCacheInterface):
    """Process-local cache, used by tests and when no database is configured."""

    def __init__(self, clock=time.monotonic) -> None:
        self._clock = clock
        self._entries: dict[str, tuple[float, dict[str, Any]]] = {}
        self._lock = threading.Lock()

    async def get(self, key: str) -> Optional[Mapping[str, Any]]:
        key = normalize_key(key)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
            return dict(value)

    async def set(self, key: str, value: Mapping[str, Any], ttl_seconds: float) -> None:
        with self._lock:
            self._entries[normalize_key(key)] = (self._clock() + ttl_seconds, dict(value))

    async def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(normalize_key(key), None)

    async def clear_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [key for key, (expires_at, _) in self._entries.items() if now >= expires_at]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)


class SqlAiCache(AiCacheInterface):
    """Cache rows in ``ai_cache_entries`` so every worker shares hits.

    Cache failures are logged and treated as misses; a broken cache must
    never fail an analysis.
    """

    def __init__(self, scope=session_scope) -> None:
        self._scope = scope

    async def get(self, key: str) -> Optional[Mapping[str, Any]]:
        key = normalize_key(key)
        try:
            async with self._scope() as session:
                entry = await session.get(AiCacheEntry, key)
                if entry is None:
                    return None
                if entry.expires_at <= utcnow():
                    await session.delete(entry)
                    await session.commit()
                    return None
                return dict(entry.value or {})
        except Exception as exc:  # pragma: no cover - database failure
            logger.warning("AI cache read failed key=%s: %s", key, exc)
            return None

    async def set(self, key: str, value: Mapping[str, Any], ttl_seconds: float) -> None:
        key = normalize_key(key)
        expires_at = utcnow() + timedelta(seconds=ttl_seconds)
        try:
            async with self._scope() as session:
                entry = await session.get(AiCacheEntry, key)
                if entry is None:
                    session.add(AiCacheEntry(key=key, value=dict(value), expires_at=expires_at))
                else:
                    entry.value = dict(value)
                    entry.expires_at = expires_at
                await session.commit()
        except Exception as exc:  # pragma: no cover - database failure
            logger.warning("AI cache write failed key=%s: %s", key, exc)

    async def delete(self, key: str) -> None:
        async with self._scope() as session:
            await session.execute(delete(AiCacheEntry).where(AiCacheEntry.key == normalize_key(key)))
            await session.commit()

    async def clear_expired(self) -> int:
        async with self._scope() as session:
            result = await session.execute(
                select(AiCacheEntry.key).where(AiCacheEntry.expires_at <= utcnow())
            )
            keys = list(result.scalars())
            if keys:
                await session.execute(delete(AiCacheEntry).where(AiCacheEntry.key.in_(keys)))
                await session.commit()
        logger.info("AI cache cleared %s expired entries", len(keys))
        return len(keys)


__all__ = [
    "InMemoryAiCache",
    "PROMPT_VERSION",
    "SqlAiCache",
    "normalize_key",
    "refinement_cache_key",
    "relevance_cache_key",
]
