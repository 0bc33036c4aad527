"""Session processing endpoints: queue a run, poll its status, read the analysis."""

import logging
from uuid import UUID

from fastapi import APIRouter, HTTPException, status

from app.controllers.dependencies import RunnerDep, StoreDep
from app.domain.models import SessionRef
from app.models.base import utcnow
from app.pipelines.analysis.errors import RecordNotFound
from app.pipelines.analysis.types import ProcessingOptions
from app.views.sessions import (
    AnalysisResponse,
    IssueRecord,
    JobResponse,
    ProcessRequest,
    StatusResponse,
)

router = APIRouter(prefix="/sessions", tags=["sessions"])
trial_router = APIRouter(prefix="/trial-sessions", tags=["trial-sessions"])

logger = logging.getLogger(__name__)


def _not_found(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=detail)


def _options(payload: ProcessRequest | None) -> ProcessingOptions:
    return ProcessingOptions.from_mapping(payload.model_dump() if payload else None)


@router.post("/{session_id}/process", status_code=status.HTTP_202_ACCEPTED)
async def process_session(
    session_id: UUID,
    store: StoreDep,
    runner: RunnerDep,
    payload: ProcessRequest | None = None,
) -> JobResponse:
    """Queue an analysis run for a session."""

    try:
        await store.load(SessionRef(id=session_id))
    except RecordNotFound:
        raise _not_found("Session not found") from None

    handle = await runner.enqueue_processing(session_id, _options(payload))
    logger.info("Queued processing job=%s session=%s", handle.job_id, session_id)
    return JobResponse(**handle.to_dict())


@router.get("/{session_id}/status")
async def session_status(session_id: UUID, runner: RunnerDep) -> StatusResponse:
    """Processing state and coarse progress for polling clients."""

    try:
        report = await runner.get_status(session_id)
    except RecordNotFound:
        raise _not_found("Session not found") from None
    return StatusResponse(**report.to_dict())


@router.get("/{session_id}/analysis")
async def session_analysis(session_id: UUID, store: StoreDep) -> AnalysisResponse:
    """Stored analysis result and persisted issues of a session."""

    ref = SessionRef(id=session_id)
    try:
        snapshot = await store.load(ref)
        issues = await store.list_issues(ref)
    except RecordNotFound:
        raise _not_found("Session not found") from None

    return AnalysisResponse(
        session_id=str(session_id),
        processing_state=snapshot.processing_state,
        completed=snapshot.completed,
        incomplete_reason=snapshot.incomplete_reason,
        analysis_result=snapshot.analysis_result,
        issues=[IssueRecord(**issue.to_dict()) for issue in issues],
    )


@trial_router.post("/{token}/process", status_code=status.HTTP_202_ACCEPTED)
async def process_trial_session(
    token: str,
    store: StoreDep,
    runner: RunnerDep,
    payload: ProcessRequest | None = None,
) -> JobResponse:
    """Queue the two-phase analysis of a trial session."""

    try:
        snapshot = await store.find_trial_by_token(token)
    except RecordNotFound:
        raise _not_found("Trial session not found") from None

    if snapshot.is_expired(utcnow()):
        raise HTTPException(status_code=status.HTTP_410_GONE, detail="Trial session has expired")

    handle = await runner.enqueue_processing(snapshot.id, _options(payload), trial=True)
    return JobResponse(**handle.to_dict())


@trial_router.get("/{token}/status")
async def trial_session_status(token: str, store: StoreDep, runner: RunnerDep) -> StatusResponse:
    """Processing state of a trial session, including the preview phase."""

    try:
        snapshot = await store.find_trial_by_token(token)
        report = await runner.get_status(snapshot.id, trial=True)
    except RecordNotFound:
        raise _not_found("Trial session not found") from None
    return StatusResponse(**report.to_dict())


__all__ = ["router", "trial_router"]
