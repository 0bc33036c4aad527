"""Common FastAPI dependencies reused across controllers."""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends

from app.application.interfaces import SessionStoreInterface
from app.config.dependencies import get_job_runner, get_session_store
from app.jobs.runner import JobRunner

StoreDep = Annotated[SessionStoreInterface, Depends(get_session_store)]
RunnerDep = Annotated[JobRunner, Depends(get_job_runner)]


__all__ = ["RunnerDep", "StoreDep"]
