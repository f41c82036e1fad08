"""
BreathLens API - Pydantic Schemas
==================================
Request/Response models for API endpoints.
"""

from pydantic import BaseModel, Field, model_validator
from typing import Optional
from enum import Enum


class JobState(str, Enum):
    """Job processing states."""
    UPLOADED = "uploaded"
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


# === Request Models ===

class RoiModel(BaseModel):
    """Region of interest in pixel coordinates."""
    x: int = Field(ge=0)
    y: int = Field(ge=0)
    width: int = Field(gt=0)
    height: int = Field(gt=0)


class MagnifyRequest(BaseModel):
    """Request to start magnifying an uploaded video."""
    job_id: str
    roi: Optional[RoiModel] = None
    gain: float = Field(25.0, gt=0)
    f_min: float = Field(0.1, gt=0)
    f_max: float = Field(0.5, gt=0)
    pyramid_depth: int = Field(3, ge=1, le=8)

    @model_validator(mode='after')
    def check_band(self):
        if self.f_min >= self.f_max:
            raise ValueError("f_min must be below f_max")
        return self


# === Response Models ===

class UploadResponse(BaseModel):
    """Response after successful file upload."""
    job_id: str
    filename: str


class StatusResponse(BaseModel):
    """Job status response."""
    job_id: str
    state: JobState
    progress: int = 0
    stage: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    failed_stage: Optional[str] = None


class ErrorResponse(BaseModel):
    """Standardized error response."""
    error: str
    detail: Optional[str] = None
