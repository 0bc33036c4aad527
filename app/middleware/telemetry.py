"""Telemetry middleware for request instrumentation."""

from __future__ import annotations

import time
from typing import Any, Mapping

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from app.telemetry import observe_request

# Unmatched paths under these prefixes carry ids or trial tokens.
_ROUTE_GROUPS = ("/sessions", "/trial-sessions")


class TelemetryMiddleware(BaseHTTPMiddleware):
    """Count and time requests per route template for Prometheus."""

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        start_time = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception:  # pragma: no cover - re-raised to the exception handlers
            observe_request(request.method, route_label(request.scope), 500, time.perf_counter() - start_time)
            raise

        # The router records the matched route in the scope while handling the call.
        observe_request(
            request.method,
            route_label(request.scope),
            response.status_code,
            time.perf_counter() - start_time,
        )
        return response


def route_label(scope: Mapping[str, Any]) -> str:
    """Route template of a request, so raw ids never become label values."""

    path = getattr(scope.get("route"), "path", None)
    if path:
        return path

    raw_path = scope.get("path") or ""
    for prefix in _ROUTE_GROUPS:
        if raw_path == prefix or raw_path.startswith(prefix + "/"):
            return f"{prefix}/*"
    return "unmatched"


__all__ = ["TelemetryMiddleware", "route_label"]
