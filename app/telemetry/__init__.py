"""Telemetry helpers and metrics."""

from .metrics import (
    AI_FALLBACKS,
    ERROR_COUNTER,
    PIPELINE_RUNS,
    REPORTED_ERRORS,
    REQUEST_COUNT,
    REQUEST_LATENCY,
    STAGE_LATENCY,
    STAGE_SKIPS,
    observe_request,
    observe_stage,
    record_ai_fallback,
    record_reported_error,
    record_run,
    record_skip,
)

__all__ = [
    "AI_FALLBACKS",
    "ERROR_COUNTER",
    "PIPELINE_RUNS",
    "REPORTED_ERRORS",
    "REQUEST_COUNT",
    "REQUEST_LATENCY",
    "STAGE_LATENCY",
    "STAGE_SKIPS",
    "observe_request",
    "observe_stage",
    "record_ai_fallback",
    "record_reported_error",
    "record_run",
    "record_skip",
]
