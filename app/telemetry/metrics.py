"""Prometheus metrics definitions and helpers."""

from __future__ import annotations

from prometheus_client import Counter, Histogram

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests processed",
    ("method", "route", "status"),
)

REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ("method", "route"),
    buckets=(
        0.005,
        0.01,
        0.025,
        0.05,
        0.1,
        0.25,
        0.5,
        1.0,
        2.5,
        5.0,
        10.0,
    ),
)

ERROR_COUNTER = Counter(
    "app_internal_errors_total",
    "Number of requests ending in internal server error responses",
    ("method", "route"),
)

PIPELINE_RUNS = Counter(
    "analysis_pipeline_runs_total",
    "Analysis runs by processing mode and outcome",
    ("mode", "outcome"),
)

STAGE_LATENCY = Histogram(
    "analysis_stage_duration_seconds",
    "Duration of each analysis pipeline stage",
    ("stage", "status"),
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0),
)

AI_FALLBACKS = Counter(
    "analysis_ai_fallbacks_total",
    "AI refinement runs that fell back to rule issues",
    ("reason",),
)

STAGE_SKIPS = Counter(
    "analysis_stage_skips_total",
    "Optional stages skipped before running",
    ("stage", "reason"),
)

REPORTED_ERRORS = Counter(
    "analysis_reported_errors_total",
    "Errors handed to the error reporter",
    ("error_class", "stage"),
)


def observe_request(
    method: str,
    route: str,
    status_code: int,
    duration_seconds: float,
) -> None:
    """Record metrics for a completed HTTP request."""

    safe_route = route or "unknown"
    safe_method = method or "UNKNOWN"
    status_label = str(status_code)
    observed_duration = duration_seconds if duration_seconds >= 0 else 0

    REQUEST_COUNT.labels(
        method=safe_method,
        route=safe_route,
        status=status_label,
    ).inc()
    REQUEST_LATENCY.labels(
        method=safe_method,
        route=safe_route,
    ).observe(observed_duration)

    if status_code >= 500:
        ERROR_COUNTER.labels(
            method=safe_method,
            route=safe_route,
        ).inc()


def observe_stage(stage: str, status: str, duration_ms: int) -> None:
    STAGE_LATENCY.labels(stage=stage, status=status).observe(max(duration_ms, 0) / 1000)


def record_run(mode: str, outcome: str) -> None:
    PIPELINE_RUNS.labels(mode=mode, outcome=outcome).inc()


def record_ai_fallback(reason: str | None) -> None:
    AI_FALLBACKS.labels(reason=reason or "unknown").inc()


def record_skip(stage: str, reason: str) -> None:
    STAGE_SKIPS.labels(stage=stage, reason=reason).inc()


def record_reported_error(error_class: str, stage: str) -> None:
    REPORTED_ERRORS.labels(error_class=error_class, stage=stage).inc()
