"""Response schemas shared by every endpoint."""

from typing import Optional

from pydantic import BaseModel


class ErrorResponse(BaseModel):
    """Body of every non-2xx response."""

    detail: str
    code: Optional[str] = None


class HealthResponse(BaseModel):
    status: str
    service: str
    version: str
