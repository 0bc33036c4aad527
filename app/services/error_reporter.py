"""Error reporting for failed analysis runs.

Reports go to the log with the run context attached and bump a Prometheus
counter so alerting can pick up spikes per stage.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping

from app.application.interfaces import ErrorReporterInterface
from app.telemetry import record_reported_error

logger = logging.getLogger(__name__)


class LoggingErrorReporter(ErrorReporterInterface):
    def report(self, exc: BaseException, context: Mapping[str, Any]) -> None:
        error_class = type(exc).__name__
        stage = str(context.get("pipeline_stage") or "unknown")
        record_reported_error(error_class, stage)
        details = " ".join(f"{key}={value}" for key, value in sorted(context.items()))
        logger.error(
            "Analysis error %s: %s %s",
            error_class,
            exc,
            details,
            exc_info=(type(exc), exc, exc.__traceback__),
        )


def get_error_reporter() -> ErrorReporterInterface:
    return _DEFAULT_REPORTER


_DEFAULT_REPORTER = LoggingErrorReporter()


__all__ = ["LoggingErrorReporter", "get_error_reporter"]
