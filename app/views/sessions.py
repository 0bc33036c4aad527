"""Pydantic schemas for session processing endpoints."""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class ProcessRequest(BaseModel):
    """Options accepted when queuing a processing run."""

    skip_ai: bool = Field(False, description="Skip relevance and AI refinement")
    skip_embeddings: bool = Field(False, description="Skip embedding generation")
    language: Optional[str] = Field(None, description="Override the session language (ISO 639-1)")
    reprocess: bool = Field(False, description="Re-run a session that already completed")


class JobResponse(BaseModel):
    """Handle of a queued processing job."""

    job_id: str = Field(..., description="Identifier of the queued job")
    session_id: str = Field(..., description="Target session or trial session ID")
    trial: bool
    status: str = Field(..., description="queued, running, retrying, completed, failed or discarded")
    attempts: int = 0
    error: Optional[str] = None


class ProgressInfo(BaseModel):
    percent: int = Field(..., ge=0, le=100)
    stage: str


class StatusResponse(BaseModel):
    """Polling answer for a session's processing status."""

    processing_state: str
    completed: bool
    progress_info: ProgressInfo
    incomplete_reason: Optional[str] = None
    expired: bool = False


class IssueRecord(BaseModel):
    kind: str
    category: str
    start_ms: int
    end_ms: int
    duration_ms: int
    text: str
    source: str
    severity: str
    rationale: Optional[str] = None
    tip: Optional[str] = None
    confidence: Optional[float] = None
    details: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(from_attributes=True)


class AnalysisResponse(BaseModel):
    """Finished analysis of a session."""

    session_id: str
    processing_state: str
    completed: bool
    incomplete_reason: Optional[str] = None
    analysis_result: Optional[dict[str, Any]] = None
    issues: list[IssueRecord] = Field(default_factory=list)
