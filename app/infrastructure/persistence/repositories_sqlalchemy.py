from datetime import datetime, timedelta
from typing import Any, Sequence, Type, Union

from sqlalchemy import delete, or_, select, update

from app.application.interfaces import SessionStoreInterface
from app.database import session_scope
from app.domain.models import SessionRef, SessionSnapshot
from app.models.base import utcnow
from app.models.issue import Issue
from app.models.processing import ProcessingState
from app.models.session_embedding import SessionEmbedding
from app.models.speech_session import SpeechSession
from app.models.trial_session import TrialSession
from app.pipelines.analysis.errors import RecordNotFound
from app.pipelines.analysis.types import DetectedIssue, EmbeddingVector

SessionModel = Union[SpeechSession, TrialSession]

_ACTIVE_STATES = (
    ProcessingState.PROCESSING.value,
    ProcessingState.PREVIEW_READY.value,
    ProcessingState.AI_ANALYZING.value,
)


def _model_for(ref: SessionRef) -> Type[SessionModel]:
    return TrialSession if ref.trial else SpeechSession


def _snapshot(row: SessionModel, trial: bool) -> SessionSnapshot:
    return SessionSnapshot(
        id=row.id,
        trial=trial,
        title=row.title,
        prompt_text=row.prompt_text,
        language=row.language or "en",
        media_kind=row.media_kind or "audio",
        media_keys=list(row.media_keys or []),
        processing_state=row.processing_state,
        progress_percent=row.progress_percent or 0,
        completed=bool(row.completed),
        incomplete_reason=row.incomplete_reason,
        duration_ms=row.duration_ms,
        processed_at=row.processed_at,
        analysis_result=row.analysis_result,
        target_seconds=getattr(row, "target_seconds", None),
        minimum_duration_enforced=bool(getattr(row, "minimum_duration_enforced", False)),
        expires_at=getattr(row, "expires_at", None),
    )


def _issue_row(session_id, issue: DetectedIssue) -> Issue:
    return Issue(
        session_id=session_id,
        kind=issue.kind,
        category=issue.category,
        start_ms=issue.start_ms,
        end_ms=issue.end_ms,
        text=issue.text,
        source=issue.source,
        severity=issue.severity,
        rationale=issue.rationale,
        tip=issue.tip,
        confidence=issue.confidence,
        details=dict(issue.details),
    )


def _issue_from_row(row: Issue) -> DetectedIssue:
    return DetectedIssue(
        kind=row.kind,
        category=row.category,
        start_ms=row.start_ms,
        end_ms=row.end_ms,
        text=row.text or "",
        source=row.source,
        severity=row.severity,
        rationale=row.rationale,
        tip=row.tip,
        confidence=row.confidence,
        details=dict(row.details or {}),
    )


class SQLAlchemySessionStore(SessionStoreInterface):
    """Sessions and trial sessions share one store; ``SessionRef.trial`` picks the table."""

    def __init__(self, scope=session_scope):
        self._scope = scope

    async def _get_row(self, session, ref: SessionRef) -> SessionModel:
        model = _model_for(ref)
        result = await session.execute(select(model).where(model.id == ref.id))
        row = result.scalar_one_or_none()
        if row is None:
            raise RecordNotFound(f"{ref.label} not found")
        return row

    async def load(self, ref: SessionRef) -> SessionSnapshot:
        async with self._scope() as session:
            row = await self._get_row(session, ref)
            return _snapshot(row, ref.trial)

    async def find_trial_by_token(self, token: str) -> SessionSnapshot:
        async with self._scope() as session:
            result = await session.execute(select(TrialSession).where(TrialSession.token == token))
            row = result.scalar_one_or_none()
            if row is None:
                raise RecordNotFound("trial session not found")
            return _snapshot(row, True)

    async def update(self, ref: SessionRef, **fields: Any) -> None:
        model = _model_for(ref)
        fields.setdefault("updated_at", utcnow())
        async with self._scope() as session:
            result = await session.execute(
                update(model).where(model.id == ref.id).values(**fields)
            )
            await session.commit()
        if result.rowcount == 0:
            raise RecordNotFound(f"{ref.label} not found")

    async def replace_issues(self, ref: SessionRef, issues: Sequence[DetectedIssue]) -> int:
        # Trial issues live in analysis_result only.
        if ref.trial:
            return 0
        async with self._scope() as session:
            try:
                await session.execute(delete(Issue).where(Issue.session_id == ref.id))
                session.add_all([_issue_row(ref.id, issue) for issue in issues])
                await session.commit()
            except Exception:
                await session.rollback()
                raise
        return len(issues)

    async def list_issues(self, ref: SessionRef) -> list[DetectedIssue]:
        if ref.trial:
            snapshot = await self.load(ref)
            payload = (snapshot.analysis_result or {}).get("issues") or []
            return [DetectedIssue.from_dict(item) for item in payload]
        async with self._scope() as session:
            result = await session.execute(
                select(Issue).where(Issue.session_id == ref.id).order_by(Issue.start_ms, Issue.end_ms)
            )
            return [_issue_from_row(row) for row in result.scalars().all()]

    async def acquire_lease(self, ref: SessionRef, token: str, ttl_seconds: int) -> bool:
        """Take the lease with a single conditional UPDATE; False when another run holds it."""

        model = _model_for(ref)
        now = utcnow()
        async with self._scope() as session:
            result = await session.execute(
                update(model)
                .where(model.id == ref.id)
                .where(
                    or_(
                        model.lease_token.is_(None),
                        model.lease_expires_at.is_(None),
                        model.lease_expires_at < now,
                    )
                )
                .values(
                    lease_token=token,
                    lease_expires_at=now + timedelta(seconds=ttl_seconds),
                )
            )
            await session.commit()
        return result.rowcount == 1

    async def release_lease(self, ref: SessionRef, token: str) -> None:
        model = _model_for(ref)
        async with self._scope() as session:
            await session.execute(
                update(model)
                .where(model.id == ref.id)
                .where(model.lease_token == token)
                .values(lease_token=None, lease_expires_at=None)
            )
            await session.commit()

    async def store_embeddings(self, ref: SessionRef, vectors: Sequence[EmbeddingVector]) -> None:
        async with self._scope() as session:
            await session.execute(
                delete(SessionEmbedding).where(SessionEmbedding.session_id == ref.id)
            )
            session.add_all(
                [
                    SessionEmbedding(
                        session_id=ref.id,
                        label=vector.label,
                        content=vector.content,
                        vector=list(vector.vector),
                        model_id=vector.model_id,
                    )
                    for vector in vectors
                ]
            )
            await session.commit()

    async def find_stuck(self, older_than: datetime) -> list[SessionRef]:
        refs: list[SessionRef] = []
        async with self._scope() as session:
            for model, trial in ((SpeechSession, False), (TrialSession, True)):
                result = await session.execute(
                    select(model.id)
                    .where(model.processing_state.in_(_ACTIVE_STATES))
                    .where(model.updated_at < older_than)
                )
                refs.extend(SessionRef(id=row_id, trial=trial) for row_id in result.scalars().all())
        return refs

    async def delete_expired_trials(self, now: datetime) -> int:
        async with self._scope() as session:
            result = await session.execute(
                delete(TrialSession).where(TrialSession.expires_at <= now)
            )
            await session.commit()
        return result.rowcount or 0


__all__ = ["SQLAlchemySessionStore"]
