"""Background execution of analysis jobs.

``JobRunner.enqueue_processing`` is what the HTTP layer calls. With the
``inline`` backend the job runs as an asyncio task in this process, bounded
by ``worker_concurrency``; with ``rabbitmq`` it is published and a separate
``worker.py`` process calls ``execute`` for each message.

Retries follow the policy of the queue settings: a failed attempt is retried
after ``attempt**4 + 2`` seconds (capped) until the per-mode attempt budget
runs out. Jobs whose session vanished, is leased by another run, or is in a
state the run cannot leave are discarded without retry.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Optional
from uuid import UUID

from app.application.interfaces import JobQueueInterface, SessionStoreInterface
from app.config.settings import QueueConfig, settings
from app.domain.models import SessionRef
from app.models.base import utcnow
from app.pipelines.analysis.errors import InvalidStateTransition, LeaseUnavailable, RecordNotFound
from app.pipelines.analysis.progress import StatusReport, describe_progress
from app.pipelines.analysis.types import ProcessingOptions

logger = logging.getLogger("app.services.analysis_pipeline")

DISCARDED_ERRORS = (RecordNotFound, LeaseUnavailable, InvalidStateTransition)


class JobStatus:
    QUEUED = "queued"
    RUNNING = "running"
    RETRYING = "retrying"
    COMPLETED = "completed"
    FAILED = "failed"
    DISCARDED = "discarded"


@dataclass(frozen=True)
class Job:
    """One request to process a session, as carried by the queue."""

    ref: SessionRef
    options: ProcessingOptions = field(default_factory=ProcessingOptions)
    job_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def to_message(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "session_id": str(self.ref.id),
            "trial": self.ref.trial,
            "options": self.options.to_dict(),
        }

    @classmethod
    def from_message(cls, message: Mapping[str, Any]) -> "Job":
        return cls(
            ref=SessionRef(id=UUID(str(message["session_id"])), trial=bool(message.get("trial", False))),
            options=ProcessingOptions.from_mapping(message.get("options")),
            job_id=message.get("job_id") or uuid.uuid4().hex,
        )


@dataclass
class JobHandle:
    """Caller-facing view of a queued job."""

    job_id: str
    ref: SessionRef
    status: str = JobStatus.QUEUED
    attempts: int = 0
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "session_id": str(self.ref.id),
            "trial": self.ref.trial,
            "status": self.status,
            "attempts": self.attempts,
            "error": self.error,
        }


def backoff_seconds(attempt: int, cap: float) -> float:
    """Delay before retrying after the given failed attempt."""

    return float(min(attempt**4 + 2, cap))


Processor = Callable[..., Awaitable[Any]]


class JobRunner:
    """Runs (or publishes) processing jobs and answers status queries."""

    def __init__(
        self,
        processor: Processor,
        store: SessionStoreInterface,
        *,
        queue: JobQueueInterface | None = None,
        config: QueueConfig | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._process = processor
        self._store = store
        self._queue = queue
        self._config = config or settings.queue
        self._sleep = sleep
        self._handles: dict[str, JobHandle] = {}
        self._tasks: set[asyncio.Task] = set()
        self._semaphore: asyncio.Semaphore | None = None

    @property
    def handles(self) -> Mapping[str, JobHandle]:
        return self._handles

    def max_attempts(self, ref: SessionRef) -> int:
        if ref.trial:
            return self._config.trial_max_attempts
        return self._config.session_max_attempts

    async def enqueue_processing(
        self,
        session_id: UUID | str,
        options: ProcessingOptions | Mapping[str, Any] | None = None,
        *,
        trial: bool = False,
    ) -> JobHandle:
        if not isinstance(options, ProcessingOptions):
            options = ProcessingOptions.from_mapping(options)
        job = Job(ref=SessionRef(id=UUID(str(session_id)), trial=trial), options=options)
        handle = JobHandle(job_id=job.job_id, ref=job.ref)
        self._handles[job.job_id] = handle

        if self._config.backend == "rabbitmq" and self._queue is not None:
            if not await self._queue.publish(job.to_message()):
                handle.status = JobStatus.FAILED
                handle.error = "queue_unavailable"
            logger.info("Job %s published session=%s", job.job_id, job.ref.label)
            return handle

        task = asyncio.create_task(self._run_bounded(job, handle))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.info("Job %s scheduled inline session=%s", job.job_id, job.ref.label)
        return handle

    async def _run_bounded(self, job: Job, handle: JobHandle) -> None:
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self._config.worker_concurrency)
        async with self._semaphore:
            await self.execute(job, handle)

    async def execute(self, job: Job, handle: JobHandle | None = None) -> JobHandle:
        """Run a job to a terminal status, retrying failed attempts."""

        handle = handle or self._handles.setdefault(job.job_id, JobHandle(job_id=job.job_id, ref=job.ref))
        limit = self.max_attempts(job.ref)

        for attempt in range(1, limit + 1):
            handle.attempts = attempt
            handle.status = JobStatus.RUNNING
            try:
                await self._process(job.ref, job.options, attempt=attempt)
            except DISCARDED_ERRORS as exc:
                handle.status = JobStatus.DISCARDED
                handle.error = f"{type(exc).__name__}: {exc}"
                logger.info("Job %s discarded session=%s: %s", job.job_id, job.ref.label, exc)
                return handle
            except Exception as exc:
                handle.error = f"{type(exc).__name__}: {exc}"
                if attempt >= limit:
                    handle.status = JobStatus.FAILED
                    logger.error(
                        "Job %s failed after %s attempt(s) session=%s: %s",
                        job.job_id,
                        attempt,
                        job.ref.label,
                        exc,
                    )
                    return handle
                delay = backoff_seconds(attempt, self._config.max_backoff_seconds)
                handle.status = JobStatus.RETRYING
                logger.warning(
                    "Job %s attempt %s/%s failed session=%s, retrying in %ss: %s",
                    job.job_id,
                    attempt,
                    limit,
                    job.ref.label,
                    delay,
                    exc,
                )
                await self._sleep(delay)
            else:
                handle.status = JobStatus.COMPLETED
                handle.error = None
                return handle
        return handle

    async def get_status(self, session_id: UUID | str, *, trial: bool = False) -> StatusReport:
        """Current processing state and progress of a session; raises ``RecordNotFound``."""

        snapshot = await self._store.load(SessionRef(id=UUID(str(session_id)), trial=trial))
        return status_report(snapshot)

    async def drain(self) -> None:
        """Wait for every inline job scheduled so far."""

        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


def status_report(snapshot) -> StatusReport:
    return StatusReport(
        processing_state=snapshot.processing_state,
        completed=snapshot.completed,
        percent=snapshot.progress_percent,
        stage=describe_progress(snapshot.progress_percent),
        incomplete_reason=snapshot.incomplete_reason,
        expired=snapshot.trial and snapshot.is_expired(utcnow()),
    )


__all__ = [
    "DISCARDED_ERRORS",
    "Job",
    "JobHandle",
    "JobRunner",
    "JobStatus",
    "backoff_seconds",
    "status_report",
]
