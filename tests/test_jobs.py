"""Job runner retry policy, queue publishing and the watchdog sweeps."""

from __future__ import annotations

import uuid
from datetime import timedelta

import pytest

from app.config.settings import QueueConfig
from app.jobs.runner import Job, JobRunner, JobStatus, backoff_seconds
from app.jobs.watchdog import expire_trial_sessions, reap_stuck_sessions, sweep
from app.models.base import utcnow
from app.pipelines.analysis.errors import (
    STUCK_SESSION_MESSAGE,
    LeaseUnavailable,
    RecordNotFound,
    TranscriptionError,
)
from app.pipelines.analysis.types import ProcessingOptions
from app.services.ai_cache import InMemoryAiCache


class ScriptedProcessor:
    """Raises the scripted outcomes in order, then succeeds."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    async def __call__(self, ref, options, *, attempt):
        self.calls.append((ref, options, attempt))
        outcome = self.outcomes.pop(0) if self.outcomes else None
        if isinstance(outcome, BaseException):
            raise outcome
        return {"ok": True}


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


class FakeQueue:
    def __init__(self, accept=True):
        self.accept = accept
        self.messages = []

    async def publish(self, message):
        self.messages.append(message)
        return self.accept

    def consume(self, handler):
        raise NotImplementedError


def _runner(processor, store, **kwargs):
    sleep = kwargs.pop("sleep", RecordingSleep())
    config = QueueConfig(**kwargs.pop("config", {}))
    return JobRunner(processor, store, config=config, sleep=sleep, **kwargs)


@pytest.mark.parametrize("attempt, cap, expected", [(1, 300, 3), (2, 300, 18), (3, 300, 83), (5, 300, 300)])
def test_backoff_grows_and_is_capped(attempt, cap, expected):
    assert backoff_seconds(attempt, cap) == expected


def test_job_message_round_trip():
    job = Job.from_message({"session_id": str(uuid.uuid4()), "trial": True, "options": {"skip_ai": True}})

    again = Job.from_message(job.to_message())

    assert again == job
    assert again.options.skip_ai is True


@pytest.mark.anyio
async def test_failed_attempts_are_retried_with_backoff(store):
    ref = store.add()
    processor = ScriptedProcessor(TranscriptionError("slow", reason="timeout"))
    sleep = RecordingSleep()

    handle = await _runner(processor, store, sleep=sleep).execute(Job(ref=ref))

    assert handle.status == JobStatus.COMPLETED
    assert handle.attempts == 2
    assert [call[2] for call in processor.calls] == [1, 2]
    assert sleep.delays == [3.0]


@pytest.mark.anyio
async def test_sessions_give_up_after_three_attempts(store):
    ref = store.add()
    processor = ScriptedProcessor(*(RuntimeError("boom") for _ in range(5)))
    sleep = RecordingSleep()

    handle = await _runner(processor, store, sleep=sleep).execute(Job(ref=ref))

    assert handle.status == JobStatus.FAILED
    assert handle.attempts == 3
    assert handle.error == "RuntimeError: boom"
    assert sleep.delays == [3.0, 18.0]


@pytest.mark.anyio
async def test_trials_get_two_attempts(store):
    ref = store.add(trial=True)
    processor = ScriptedProcessor(RuntimeError("boom"), RuntimeError("boom"), RuntimeError("boom"))

    handle = await _runner(processor, store).execute(Job(ref=ref))

    assert handle.status == JobStatus.FAILED
    assert len(processor.calls) == 2


@pytest.mark.anyio
@pytest.mark.parametrize("error", [RecordNotFound("gone"), LeaseUnavailable("busy")])
async def test_unrecoverable_jobs_are_discarded_without_retry(store, error):
    ref = store.add()
    processor = ScriptedProcessor(error)
    sleep = RecordingSleep()

    handle = await _runner(processor, store, sleep=sleep).execute(Job(ref=ref))

    assert handle.status == JobStatus.DISCARDED
    assert len(processor.calls) == 1
    assert sleep.delays == []


@pytest.mark.anyio
async def test_inline_jobs_run_in_the_background(store):
    ref = store.add()
    processor = ScriptedProcessor()
    runner = _runner(processor, store)

    handle = await runner.enqueue_processing(ref.id, {"skip_embeddings": True})
    await runner.drain()

    assert handle.status == JobStatus.COMPLETED
    assert runner.handles[handle.job_id] is handle
    [(called_ref, options, attempt)] = processor.calls
    assert called_ref == ref
    assert options == ProcessingOptions(skip_embeddings=True)


@pytest.mark.anyio
async def test_rabbitmq_backend_publishes_instead_of_running(store):
    ref = store.add(trial=True)
    processor = ScriptedProcessor()
    queue = FakeQueue()
    runner = _runner(processor, store, queue=queue, config={"backend": "rabbitmq"})

    handle = await runner.enqueue_processing(str(ref.id), trial=True)

    assert handle.status == JobStatus.QUEUED
    assert processor.calls == []
    [message] = queue.messages
    assert message["session_id"] == str(ref.id)
    assert message["trial"] is True
    assert message["job_id"] == handle.job_id


@pytest.mark.anyio
async def test_unreachable_broker_marks_the_job_failed(store):
    ref = store.add()
    runner = _runner(ScriptedProcessor(), store, queue=FakeQueue(accept=False), config={"backend": "rabbitmq"})

    handle = await runner.enqueue_processing(ref.id)

    assert handle.status == JobStatus.FAILED
    assert handle.error == "queue_unavailable"


@pytest.mark.anyio
async def test_status_reports_stage_name_and_expiry(store):
    ref = store.add(processing_state="processing", progress_percent=35)
    trial = store.add(trial=True, expires_at=utcnow() - timedelta(minutes=5))
    runner = _runner(ScriptedProcessor(), store)

    report = await runner.get_status(ref.id)
    expired = await runner.get_status(trial.id, trial=True)

    assert report.to_dict()["progress_info"] == {"percent": 35, "stage": "Transcription"}
    assert report.expired is False
    assert expired.expired is True


@pytest.mark.anyio
async def test_status_of_unknown_session_raises(store):
    with pytest.raises(RecordNotFound):
        await _runner(ScriptedProcessor(), store).get_status(uuid.uuid4())


@pytest.mark.anyio
async def test_watchdog_fails_runs_that_stopped_updating(store):
    stale = utcnow() - timedelta(hours=1)
    stuck = store.add(processing_state="processing", updated_at=stale, lease_token="dead-worker")
    stuck_trial = store.add(trial=True, processing_state="ai_analyzing", updated_at=stale)
    fresh = store.add(processing_state="processing")
    idle = store.add(processing_state="pending", updated_at=stale)

    reaped = await reap_stuck_sessions(store)

    assert reaped == 2
    for ref in (stuck, stuck_trial):
        row = store.row(ref)
        assert row["processing_state"] == "failed"
        assert row["incomplete_reason"] == STUCK_SESSION_MESSAGE
        assert row["error_details"]["reason"] == "timeout"
        assert row["lease_token"] is None
    assert store.row(fresh)["processing_state"] == "processing"
    assert store.row(idle)["processing_state"] == "pending"


@pytest.mark.anyio
async def test_watchdog_deletes_expired_trials(store):
    now = utcnow()
    expired = store.add(trial=True, expires_at=now - timedelta(seconds=1))
    active = store.add(trial=True, expires_at=now + timedelta(hours=1))

    assert await expire_trial_sessions(store, now) == 1
    assert expired.id not in store.rows
    assert active.id in store.rows


@pytest.mark.anyio
async def test_sweep_also_drops_expired_ai_cache_entries(store):
    now = [1000.0]
    cache = InMemoryAiCache(clock=lambda: now[0])
    await cache.set("refinement:old", {"summary": "stale"}, ttl_seconds=60)
    await cache.set("relevance:new", {"relevance_score": 0.9}, ttl_seconds=3600)
    store.add(trial=True, expires_at=utcnow() - timedelta(seconds=1))
    now[0] += 120

    counts = await sweep(store, cache)

    assert counts == {"reaped": 0, "expired_trials": 1, "expired_cache_entries": 1}
    assert len(cache) == 1
    assert await cache.get("relevance:new") == {"relevance_score": 0.9}


@pytest.mark.anyio
async def test_sweep_without_cache_only_touches_sessions(store):
    assert await sweep(store) == {"reaped": 0, "expired_trials": 0}
