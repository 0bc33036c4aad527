"""Pydantic schemas used as views in the MVC architecture."""

from .common import ErrorResponse, HealthResponse
from .sessions import (
    AnalysisResponse,
    IssueRecord,
    JobResponse,
    ProcessRequest,
    ProgressInfo,
    StatusResponse,
)

__all__ = [
    "AnalysisResponse",
    "ErrorResponse",
    "HealthResponse",
    "IssueRecord",
    "JobResponse",
    "ProcessRequest",
    "ProgressInfo",
    "StatusResponse",
]
