"""Pipeline orchestrator and job state machine.

One orchestrator runs both processing modes with the same stage
implementations:

* ``SINGLE_PASS`` (sessions): extract, transcribe, relevance, rules,
  refine, metrics, embeddings, then a single ``completed`` write.
* ``TWO_PHASE`` (trial sessions): phase 1 stops after rules and persists
  ``preview_ready`` metrics; phase 2 runs refinement and recomputes metrics
  before ``completed``.

Only one run may work on a session at a time; the store hands out a lease
per run. Fatal errors are written once as ``failed`` with a user-facing
message, reported, and re-raised so the job runner can decide on a retry.
"""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional, Sequence

from app.application.interfaces import (
    AiCacheInterface,
    ErrorReporterInterface,
    MediaStoreInterface,
    SessionStoreInterface,
)
from app.config.settings import AnalysisThresholds, settings
from app.domain.models import SessionRef, SessionSnapshot
from app.models.base import utcnow
from app.models.processing import ProcessingState
from app.services.error_reporter import get_error_reporter
from app.services.storage import MissingMediaError, StorageError
from app.telemetry import observe_stage, record_run, record_skip

from . import progress
from .coaching import key_segments, micro_tips
from .embeddings import EmbeddingsGenerator
from .errors import (
    AnalysisError,
    LeaseUnavailable,
    MediaExtractionError,
    PipelineErrorKind,
    classify,
    pipeline_stage_for,
    user_message_for,
)
from .extraction import MediaExtractor, get_media_extractor
from .metrics import MetricsEngine, MetricsReport, assert_unit_scores, pause_metrics
from .refinement import AiRefiner
from .relevance import RelevanceChecker, apply_relevance_penalty
from .rulepacks import filler_lexicon
from .rules import RuleDetector
from .states import ensure_transition
from .transcription import TranscriptionAdapter
from .types import (
    DetectedIssue,
    EmbeddingSet,
    EmbeddingSkipped,
    PipelineRunContext,
    ProcessingMode,
    ProcessingOptions,
    RefinementResult,
    RefinementSkipped,
    TranscriptionResult,
)

logger = logging.getLogger("app.services.analysis_pipeline")

_P = ProcessingState


@dataclass
class _Run:
    """Mutable bookkeeping of one run next to its stage context."""

    ctx: PipelineRunContext
    lease_token: str
    state: ProcessingState
    progress_percent: int = 0
    entered_processing: bool = False

    @property
    def ref(self) -> SessionRef:
        return self.ctx.session.ref

    @property
    def label(self) -> str:
        return self.ref.label


class AnalysisOrchestrator:
    """Drive a session or trial session through every analysis stage."""

    def __init__(
        self,
        store: SessionStoreInterface,
        media_store: MediaStoreInterface,
        *,
        extractor: MediaExtractor | None = None,
        transcriber: TranscriptionAdapter | None = None,
        detector: RuleDetector | None = None,
        refiner: AiRefiner | None = None,
        metrics: MetricsEngine | None = None,
        embeddings: EmbeddingsGenerator | None = None,
        relevance: RelevanceChecker | None = None,
        cache: AiCacheInterface | None = None,
        reporter: ErrorReporterInterface | None = None,
        thresholds: AnalysisThresholds | None = None,
        lease_ttl_seconds: int | None = None,
        purge_media: bool | None = None,
    ) -> None:
        self._t = thresholds or settings.analysis
        self._store = store
        self._media_store = media_store
        self._extractor = extractor or get_media_extractor()
        self._transcriber = transcriber or TranscriptionAdapter(thresholds=self._t)
        self._detector = detector or RuleDetector(self._t)
        self._refiner = refiner or AiRefiner(cache=cache, thresholds=self._t)
        self._metrics = metrics or MetricsEngine(self._t)
        self._embeddings = embeddings or EmbeddingsGenerator()
        self._relevance = relevance or RelevanceChecker(cache=cache, thresholds=self._t)
        self._reporter = reporter or get_error_reporter()
        self._lease_ttl = lease_ttl_seconds or settings.queue.lease_ttl_seconds
        self._purge_media = (
            settings.s3.purge_media_after_processing if purge_media is None else purge_media
        )

    async def run(
        self,
        ref: SessionRef,
        options: ProcessingOptions | None = None,
        *,
        attempt: int = 1,
    ) -> Optional[dict[str, Any]]:
        """Process one session; returns the persisted analysis result.

        Raises ``RecordNotFound`` for a missing session, ``LeaseUnavailable``
        when another run holds it, and re-raises any fatal stage error after
        the failure has been written.
        """

        options = options or ProcessingOptions()
        snapshot = await self._store.load(ref)

        if ref.trial and snapshot.is_expired(utcnow()):
            logger.info("Skipping expired trial session=%s", ref.label)
            record_skip("run", "trial_expired")
            return None
        if snapshot.processing_state == _P.COMPLETED.value and not options.reprocess:
            logger.info("Session already completed session=%s", ref.label)
            return snapshot.analysis_result

        lease_token = uuid.uuid4().hex
        if not await self._store.acquire_lease(ref, lease_token, self._lease_ttl):
            raise LeaseUnavailable(f"{ref.label} is being processed by another run")

        mode = ProcessingMode.TWO_PHASE if ref.trial else ProcessingMode.SINGLE_PASS
        run = _Run(
            ctx=PipelineRunContext(session=snapshot, mode=mode, options=options, attempt=attempt),
            lease_token=lease_token,
            state=_P(snapshot.processing_state),
            progress_percent=0 if options.reprocess else snapshot.progress_percent,
        )
        logger.info(
            "Starting analysis session=%s mode=%s attempt=%s options=%s",
            run.label,
            mode.value,
            attempt,
            options.to_dict(),
        )

        try:
            await self._enter_processing(run)
            if mode is ProcessingMode.TWO_PHASE:
                result = await self._run_two_phase(run)
            else:
                result = await self._run_single_pass(run)
        except Exception as exc:
            if run.entered_processing:
                await self._fail(run, exc)
            raise
        finally:
            await self._store.release_lease(ref, lease_token)

        record_run(mode.value, "completed")
        await self._purge(run)
        return result

    # ------------------------------------------------------------------ modes

    async def _run_single_pass(self, run: _Run) -> dict[str, Any]:
        transcription = await self._extract_and_transcribe(run)
        await self._check_relevance(run, transcription)
        rule_issues = await self._detect_rules(run, transcription)

        refinement = await self._refine(run, transcription, rule_issues)
        final_issues = (
            refinement.refined_issues if isinstance(refinement, RefinementResult) else rule_issues
        )
        run.ctx.final_issues = tuple(final_issues)

        report = await self._compute_metrics(run, transcription, final_issues)
        embeddings = await self._generate_embeddings(run, transcription, final_issues)

        result = self._build_result(run, transcription, report, final_issues, refinement, embeddings)
        async with self._stage(run, "persistence"):
            await self._store.replace_issues(run.ref, final_issues)
        await self._complete(run, result)
        return result

    async def _run_two_phase(self, run: _Run) -> dict[str, Any]:
        transcription = await self._extract_and_transcribe(run)
        await self._check_relevance(run, transcription)
        rule_issues = await self._detect_rules(run, transcription)
        run.ctx.final_issues = tuple(rule_issues)

        # Phase 1: preview on rule issues only.
        async with self._stage(run, "preview_metrics"):
            preview_report = self._metrics.compute(
                transcription.transcript,
                transcription.words,
                rule_issues,
                self._duration_seconds(run, transcription),
                run.ctx.language,
            )
        preview_report = self._penalised(run, preview_report)
        preview = self._build_result(
            run, transcription, preview_report, rule_issues, None, EmbeddingSkipped("trial_session")
        )
        preview["phase"] = "preview"
        self._guard_scores(preview)
        await self._transition(
            run,
            _P.PREVIEW_READY,
            analysis_result=preview,
            duration_ms=self._duration_ms(run, transcription),
        )
        logger.info("Preview ready session=%s issues=%s", run.label, len(rule_issues))

        # Phase 2: AI refinement on top of the preview.
        skipped = self._refiner.should_refine(transcription, run.ctx.options)
        if skipped is not None:
            record_skip("refinement", skipped.reason)
            result = self._build_result(
                run, transcription, preview_report, rule_issues, skipped, EmbeddingSkipped("trial_session")
            )
            result["phase"] = "ai_skipped"
            await self._complete(run, result)
            return result

        await self._transition(run, _P.AI_ANALYZING)
        refinement = await self._refine(run, transcription, rule_issues)
        if isinstance(refinement, RefinementResult) and not refinement.fallback:
            final_issues = refinement.refined_issues
            report = await self._compute_metrics(run, transcription, final_issues)
            phase = "ai_enhanced"
        else:
            final_issues = tuple(rule_issues)
            report = preview_report
            phase = "ai_failed"
        run.ctx.final_issues = tuple(final_issues)

        result = self._build_result(
            run, transcription, report, final_issues, refinement, EmbeddingSkipped("trial_session")
        )
        result["phase"] = phase
        await self._complete(run, result)
        return result

    # ----------------------------------------------------------------- stages

    async def _extract_and_transcribe(self, run: _Run) -> TranscriptionResult:
        session = run.ctx.session
        await self._set_progress(run, progress.EXTRACTION, "media_extraction")
        async with AsyncExitStack() as temp_files:
            async with self._stage(run, "media_extraction"):
                try:
                    blob = await self._media_store.fetch_first_attached_blob(session)
                except MissingMediaError as exc:
                    raise MediaExtractionError(str(exc), reason="empty_file") from exc
                except StorageError as exc:
                    raise MediaExtractionError(str(exc)) from exc
                media = await temp_files.enter_async_context(self._extractor.extract(blob))
            run.ctx.media = media

            await self._set_progress(run, progress.TRANSCRIPTION, "transcription")
            async with self._stage(run, "transcription"):
                model_hint = settings.transcribe.trial_language_model if run.ref.trial else None
                transcription = await self._transcriber.transcribe(
                    media.audio_path,
                    run.ctx.language,
                    model_hint,
                    trial=run.ref.trial,
                    audio_duration_seconds=media.duration_seconds,
                )

        run.ctx.transcription = transcription
        await self._store.update(
            run.ref,
            duration_ms=self._duration_ms(run, transcription),
            analysis_result={"interim": self._interim_metrics(run, transcription)},
        )
        return transcription

    async def _check_relevance(self, run: _Run, transcription: TranscriptionResult) -> None:
        session = run.ctx.session
        prompt_text = session.prompt_text or session.title
        if not prompt_text or run.ctx.options.skip_ai:
            return
        await self._set_progress(run, progress.RELEVANCE, "relevance")
        async with self._stage(run, "relevance"):
            run.ctx.relevance = await self._relevance.check(
                prompt_text, transcription.transcript, run.ctx.language
            )

    async def _detect_rules(self, run: _Run, transcription: TranscriptionResult) -> list[DetectedIssue]:
        await self._set_progress(run, progress.RULE_ANALYSIS, "rule_analysis")
        async with self._stage(run, "rule_analysis"):
            issues = self._detector.detect(
                transcription.transcript,
                transcription.words,
                run.ctx.language,
                self._duration_seconds(run, transcription),
            )
        run.ctx.rule_issues = tuple(issues)
        return issues

    async def _refine(
        self,
        run: _Run,
        transcription: TranscriptionResult,
        rule_issues: Sequence[DetectedIssue],
    ) -> RefinementResult | RefinementSkipped:
        skipped = self._refiner.should_refine(transcription, run.ctx.options)
        if skipped is not None:
            logger.info("AI refinement skipped session=%s reason=%s", run.label, skipped.reason)
            record_skip("refinement", skipped.reason)
            run.ctx.record("ai_refinement", "skipped", time.monotonic(), skipped.reason)
            return skipped

        await self._set_progress(run, progress.AI_REFINEMENT, "ai_refinement")
        async with self._stage(run, "ai_refinement") as stage:
            result = await self._refiner.refine(
                transcription.transcript,
                transcription.words,
                rule_issues,
                run.ctx.language,
            )
            if result.fallback:
                stage["status"] = "fallback"
                stage["detail"] = result.fallback_reason
        return result

    async def _compute_metrics(
        self,
        run: _Run,
        transcription: TranscriptionResult,
        issues: Sequence[DetectedIssue],
    ) -> MetricsReport:
        await self._set_progress(run, progress.METRICS, "metrics")
        async with self._stage(run, "metrics") as stage:
            report = self._metrics.compute(
                transcription.transcript,
                transcription.words,
                issues,
                self._duration_seconds(run, transcription),
                run.ctx.language,
            )
            if report.fallback:
                stage["status"] = "fallback"
                stage["detail"] = report.error
        return self._penalised(run, report)

    async def _generate_embeddings(
        self,
        run: _Run,
        transcription: TranscriptionResult,
        issues: Sequence[DetectedIssue],
    ) -> EmbeddingSet | EmbeddingSkipped:
        async with self._stage(run, "embeddings") as stage:
            outcome = await self._embeddings.generate(
                transcription.transcript, issues, run.ctx.options
            )
            if isinstance(outcome, EmbeddingSet):
                try:
                    await self._store.store_embeddings(run.ref, outcome.vectors)
                except Exception as exc:  # pragma: no cover - database failure
                    logger.warning("Storing embeddings failed session=%s: %s", run.label, exc)
                    outcome = EmbeddingSkipped(f"error: {exc}")
            if isinstance(outcome, EmbeddingSkipped):
                stage["status"] = "skipped"
                stage["detail"] = outcome.reason
                record_skip("embeddings", outcome.reason.split(":", 1)[0])
        return outcome

    # ----------------------------------------------------------------- helpers

    @asynccontextmanager
    async def _stage(self, run: _Run, name: str) -> AsyncIterator[dict[str, Any]]:
        """Time a stage and append its record whether it succeeds or fails."""

        run.ctx.current_stage = name
        outcome: dict[str, Any] = {"status": "completed", "detail": None}
        started = time.monotonic()
        logger.info("Stage %s started session=%s", name, run.label)
        try:
            yield outcome
        except Exception as exc:
            record = run.ctx.record(name, "failed", started, f"{type(exc).__name__}: {exc}")
            observe_stage(name, "failed", record.duration_ms)
            logger.warning("Stage %s failed session=%s: %s", name, run.label, exc)
            raise
        record = run.ctx.record(name, outcome["status"], started, outcome["detail"])
        observe_stage(name, record.status, record.duration_ms)
        logger.info(
            "Stage %s %s session=%s duration_ms=%s",
            name,
            record.status,
            run.label,
            record.duration_ms,
        )

    async def _enter_processing(self, run: _Run) -> None:
        mode = run.ctx.mode
        if run.state is _P.FAILED or (run.ctx.options.reprocess and run.state is _P.COMPLETED):
            # A fresh run re-enters through pending.
            await self._store.update(
                run.ref,
                processing_state=_P.PENDING.value,
                error_details=None,
                incomplete_reason=None,
                progress_percent=0,
            )
            run.state = _P.PENDING
            run.progress_percent = 0
        run.state = ensure_transition(run.state, _P.PROCESSING, mode)
        await self._store.update(
            run.ref,
            processing_state=run.state.value,
            completed=False,
            incomplete_reason=None,
            error_details=None,
        )
        run.entered_processing = True

    async def _transition(self, run: _Run, target: ProcessingState, **fields: Any) -> None:
        run.state = ensure_transition(run.state, target, run.ctx.mode)
        await self._store.update(run.ref, processing_state=run.state.value, **fields)

    async def _set_progress(self, run: _Run, percent: int, stage: str) -> None:
        run.ctx.current_stage = stage
        if percent <= run.progress_percent:
            return
        run.progress_percent = percent
        await self._store.update(run.ref, progress_percent=percent)

    async def _complete(self, run: _Run, result: dict[str, Any]) -> None:
        self._guard_scores(result)
        compliant, reason = self._duration_compliance(run)
        run.state = ensure_transition(run.state, _P.COMPLETED, run.ctx.mode)
        run.progress_percent = progress.COMPLETE
        await self._store.update(
            run.ref,
            processing_state=run.state.value,
            completed=compliant,
            incomplete_reason=reason,
            progress_percent=progress.COMPLETE,
            processed_at=utcnow(),
            analysis_result=result,
            error_details=None,
            lease_token=None,
            lease_expires_at=None,
        )
        logger.info(
            "Analysis completed session=%s duration_ms=%s compliant=%s",
            run.label,
            run.ctx.elapsed_ms(),
            compliant,
        )

    async def _fail(self, run: _Run, exc: BaseException) -> None:
        kind, reason = classify(exc)
        message = user_message_for(kind, reason, trial=run.ref.trial)
        stage = run.ctx.current_stage if run.ctx.current_stage != "pending" else pipeline_stage_for(kind)
        details = {
            "error_class": type(exc).__name__,
            "kind": kind.value,
            "reason": reason,
            "message": str(exc),
            "user_message": message,
            "pipeline_stage": stage,
            "processing_duration_ms": run.ctx.elapsed_ms(),
            "attempt": run.ctx.attempt,
            "stages": run.ctx.stage_metadata(),
        }
        record_run(run.ctx.mode.value, "failed")
        try:
            run.state = ensure_transition(run.state, _P.FAILED, run.ctx.mode)
            await self._store.update(
                run.ref,
                processing_state=_P.FAILED.value,
                completed=False,
                incomplete_reason=message,
                error_details=details,
                lease_token=None,
                lease_expires_at=None,
            )
        except Exception:  # pragma: no cover - database failure
            logger.exception("Could not persist failure session=%s", run.label)
        self._reporter.report(
            exc,
            {
                "session": run.label,
                "pipeline_stage": stage,
                "reason": reason,
                "attempt": run.ctx.attempt,
                "mode": run.ctx.mode.value,
            },
        )
        log = logger.error if kind is PipelineErrorKind.UNEXPECTED else logger.warning
        log("Analysis failed session=%s stage=%s reason=%s: %s", run.label, stage, reason, exc)

    async def _purge(self, run: _Run) -> None:
        keys = run.ctx.session.media_keys
        if not self._purge_media or not keys:
            return
        try:
            await self._media_store.delete_blobs(keys)
            await self._store.update(run.ref, media_keys=[])
        except Exception as exc:  # pragma: no cover - integration failure
            logger.warning("Media purge failed session=%s: %s", run.label, exc)

    def _penalised(self, run: _Run, report: MetricsReport) -> MetricsReport:
        relevance = run.ctx.relevance
        overall = report.overall_scores.get("overall_score")
        if overall is None or relevance is None:
            return report
        penalised = apply_relevance_penalty(overall, relevance, self._t)
        if penalised == overall:
            return report
        return report.with_overall(
            penalised,
            relevance_penalty_applied=True,
            unpenalised_overall_score=overall,
        )

    @staticmethod
    def _guard_scores(result: dict[str, Any]) -> None:
        try:
            assert_unit_scores(result)
        except ValueError as exc:
            raise AnalysisError(str(exc), reason="score_out_of_range") from exc

    def _duration_compliance(self, run: _Run) -> tuple[bool, Optional[str]]:
        session: SessionSnapshot = run.ctx.session
        if run.ref.trial or not session.minimum_duration_enforced or not session.target_seconds:
            return True, None
        transcription = run.ctx.transcription
        actual = self._duration_seconds(run, transcription) if transcription else 0.0
        if actual >= session.target_seconds - self._t.duration_tolerance_seconds:
            return True, None
        return False, (
            f"Session stopped early ({int(actual)}s of {session.target_seconds}s target)"
        )

    @staticmethod
    def _duration_seconds(run: _Run, transcription: TranscriptionResult) -> float:
        if run.ctx.media is not None and run.ctx.media.duration_seconds > 0:
            return run.ctx.media.duration_seconds
        return transcription.duration_seconds or 0.0

    def _duration_ms(self, run: _Run, transcription: TranscriptionResult) -> int:
        return int(round(self._duration_seconds(run, transcription) * 1000))

    def _interim_metrics(self, run: _Run, transcription: TranscriptionResult) -> dict[str, Any]:
        duration = self._duration_seconds(run, transcription)
        fillers = {phrase[0] for phrase in filler_lexicon(run.ctx.language) if len(phrase) == 1}
        timed = transcription.timed_words
        pauses = pause_metrics(timed, self._t.min_pause_ms, self._t.long_pause_ms)
        return {
            "duration_seconds": round(duration, 2),
            "word_count": transcription.word_count,
            "estimated_wpm": round(transcription.word_count / (duration / 60), 1) if duration > 0 else 0.0,
            "filler_count": sum(1 for word in transcription.words if word.normalized in fillers),
            "pause_count": pauses["pause_count"],
        }

    def _build_result(
        self,
        run: _Run,
        transcription: TranscriptionResult,
        report: MetricsReport,
        issues: Sequence[DetectedIssue],
        refinement: RefinementResult | RefinementSkipped | None,
        embeddings: EmbeddingSet | EmbeddingSkipped,
    ) -> dict[str, Any]:
        ctx = run.ctx
        sections = report.sections()
        ai_tips: Sequence[str] = ()
        if refinement is None:
            ai_section: dict[str, Any] = {"status": "pending"}
        else:
            ai_section = refinement.metadata()
            if isinstance(refinement, RefinementResult):
                ai_tips = refinement.micro_tips
                if refinement.fallback:
                    ai_section["user_message"] = user_message_for(
                        PipelineErrorKind.AI_PROVIDER, refinement.fallback_reason or "generic"
                    )

        result: dict[str, Any] = {
            "transcript": transcription.transcript,
            **sections,
            "ai_refinement": ai_section,
            "micro_tips": micro_tips(sections, ai_tips),
            "key_segments": key_segments(issues),
            "embeddings": embeddings.metadata(),
            "pipeline_metadata": {
                "pipeline_version": self._t.pipeline_version,
                "processing_mode": ctx.mode.value,
                "attempt": ctx.attempt,
                "language": ctx.language,
                "transcription_language": transcription.language_code,
                "media": ctx.media.to_dict() if ctx.media else None,
                "stages": ctx.stage_metadata(),
                "total_duration_ms": ctx.elapsed_ms(),
                "ai_skipped": isinstance(refinement, RefinementSkipped),
                "ai_fallback": isinstance(refinement, RefinementResult) and refinement.fallback,
                "metrics_fallback": report.fallback,
                "rule_issue_count": len(ctx.rule_issues),
                "final_issue_count": len(issues),
            },
        }
        if ctx.relevance is not None:
            result["relevance"] = ctx.relevance.to_dict()
        if run.ref.trial:
            result["issues"] = [issue.to_dict() for issue in issues]
        return result


__all__ = ["AnalysisOrchestrator"]
