"""Periodic cleanup of runs that died mid-flight and of expired trials."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional

from app.application.interfaces import AiCacheInterface, SessionStoreInterface
from app.config.settings import AnalysisThresholds, settings
from app.models.base import utcnow
from app.models.processing import ProcessingState
from app.pipelines.analysis.errors import STUCK_SESSION_MESSAGE, RecordNotFound
from app.telemetry import record_run

logger = logging.getLogger("app.services.analysis_pipeline")


async def reap_stuck_sessions(
    store: SessionStoreInterface,
    older_than: Optional[datetime] = None,
    *,
    thresholds: AnalysisThresholds | None = None,
) -> int:
    """Mark runs untouched since ``older_than`` as failed; returns how many."""

    thresholds = thresholds or settings.analysis
    cutoff = older_than or utcnow() - timedelta(minutes=thresholds.stuck_after_minutes)
    reaped = 0
    for ref in await store.find_stuck(cutoff):
        try:
            await store.update(
                ref,
                processing_state=ProcessingState.FAILED.value,
                completed=False,
                incomplete_reason=STUCK_SESSION_MESSAGE,
                error_details={
                    "error_class": "StuckSession",
                    "kind": "unexpected",
                    "reason": "timeout",
                    "user_message": STUCK_SESSION_MESSAGE,
                    "pipeline_stage": "unknown",
                },
                lease_token=None,
                lease_expires_at=None,
            )
        except RecordNotFound:
            continue
        reaped += 1
        record_run("two_phase" if ref.trial else "single_pass", "reaped")
        logger.warning("Reaped stuck run session=%s cutoff=%s", ref.label, cutoff.isoformat())
    return reaped


async def expire_trial_sessions(store: SessionStoreInterface, now: Optional[datetime] = None) -> int:
    deleted = await store.delete_expired_trials(now or utcnow())
    if deleted:
        logger.info("Deleted %s expired trial session(s)", deleted)
    return deleted


async def purge_ai_cache(cache: AiCacheInterface) -> int:
    removed = await cache.clear_expired()
    if removed:
        logger.info("Removed %s expired AI cache entries", removed)
    return removed


async def sweep(store: SessionStoreInterface, cache: AiCacheInterface | None = None) -> dict[str, int]:
    """Run every cleanup once and report what each removed."""

    counts = {
        "reaped": await reap_stuck_sessions(store),
        "expired_trials": await expire_trial_sessions(store),
    }
    if cache is not None:
        counts["expired_cache_entries"] = await purge_ai_cache(cache)
    return counts


async def run_watchdog(
    store: SessionStoreInterface,
    cache: AiCacheInterface | None = None,
    interval_seconds: float = 300.0,
) -> None:
    """Loop forever; cancelled by the application lifespan on shutdown."""

    while True:
        try:
            await sweep(store, cache)
        except Exception:  # pragma: no cover - database failure
            logger.exception("Watchdog sweep failed")
        await asyncio.sleep(interval_seconds)


__all__ = ["expire_trial_sessions", "purge_ai_cache", "reap_stuck_sessions", "run_watchdog", "sweep"]
