"""Process-wide wiring of the store, orchestrator and job runner."""

from __future__ import annotations

from typing import Optional

from app.infrastructure.external.mq_adapter import RabbitMQJobQueue
from app.infrastructure.persistence.repositories_sqlalchemy import SQLAlchemySessionStore
from app.jobs.runner import JobRunner
from app.pipelines.analysis.orchestrator import AnalysisOrchestrator
from app.services.ai_cache import SqlAiCache
from app.services.storage import S3MediaStore

from .settings import settings

_STORE: Optional[SQLAlchemySessionStore] = None
_RUNNER: Optional[JobRunner] = None
_CACHE: Optional[SqlAiCache] = None


def get_session_store() -> SQLAlchemySessionStore:
    global _STORE
    if _STORE is None:
        _STORE = SQLAlchemySessionStore()
    return _STORE


def get_ai_cache() -> SqlAiCache:
    global _CACHE
    if _CACHE is None:
        _CACHE = SqlAiCache()
    return _CACHE


def build_orchestrator(store: SQLAlchemySessionStore | None = None) -> AnalysisOrchestrator:
    """Orchestrator backed by S3, the SQL store and the SQL AI cache"""

    return AnalysisOrchestrator(
        store or get_session_store(),
        S3MediaStore(),
        cache=get_ai_cache(),
    )


def get_job_runner() -> JobRunner:
    global _RUNNER
    if _RUNNER is None:
        store = get_session_store()
        orchestrator = build_orchestrator(store)
        queue = RabbitMQJobQueue() if settings.queue.backend == "rabbitmq" else None
        _RUNNER = JobRunner(orchestrator.run, store, queue=queue)
    return _RUNNER


__all__ = ["build_orchestrator", "get_ai_cache", "get_job_runner", "get_session_store"]
