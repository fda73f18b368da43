"""
Output schema definitions for the CV document service.

This module defines the persisted resume record as returned to callers,
the generic action result every orchestrator operation is packaged into,
and error / health responses.
"""

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field

from schemas.input_schema import Certification, Education, Experience, PersonalInfo, Skills


class ResumeRecord(BaseModel):
    """A user's CV form data plus any generated documents.

    The two document fields stay None until a generation call for that
    type succeeds; each can be regenerated independently.
    """

    id: str = Field(..., description="Store-generated identifier")
    owner_id: str = Field(..., description="Identity of the creator; immutable")
    personal_info: PersonalInfo
    job_title: str
    education: list[Education] = Field(default_factory=list)
    experience: list[Experience] = Field(default_factory=list)
    skills: Skills = Field(default_factory=Skills)
    certifications: list[Certification] = Field(default_factory=list)
    goals: str
    personal_interests: str | None = None
    formatted_resume_doc: str | None = Field(
        None, description="Generated 履歴書 (Rirekisho) text"
    )
    career_history_doc: str | None = Field(
        None, description="Generated 職務経歴書 (Shokumu Keirekisho) text"
    )
    created_at: datetime
    updated_at: datetime

    model_config = {"extra": "ignore"}


class ErrorResponse(BaseModel):
    """Error payload attached to failed action results."""

    status: str = Field(default="error", description="Always 'error'")
    error_code: str = Field(
        ...,
        description="Machine-readable error code",
        examples=[
            "VALIDATION_ERROR",
            "PERMISSION_DENIED",
            "NOT_FOUND",
            "GENERATION_FAILED",
            "STORE_ERROR",
        ],
    )
    message: str = Field(..., max_length=500, description="Human-readable error message")
    details: dict[str, Any] | None = Field(
        None, description="Additional error details"
    )
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When error occurred",
    )
    request_id: str | None = Field(
        None, description="Request ID for tracking", examples=["REQ_1718000000000"]
    )

    model_config = {"extra": "forbid"}


class ActionResult(BaseModel):
    """Success/failure envelope returned by every public operation."""

    success: bool
    message: str = Field(..., description="Human-readable outcome")
    id: str | None = Field(None, description="Affected resume record id, if any")
    data: Any = Field(None, description="Operation payload (record, list, skills, ...)")
    request_id: str | None = None
    error: ErrorResponse | None = None

    model_config = {"extra": "forbid"}


class HealthCheckResponse(BaseModel):
    """Health check response."""

    status: str = Field(
        ..., pattern="^(healthy|degraded|unhealthy)$", description="Service health status"
    )
    checks: dict[str, str] = Field(
        ..., description="Individual component health checks"
    )
    version: str = Field(default="1.0.0", description="Service version")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = {"extra": "forbid"}


# Export all models
__all__ = [
    "ResumeRecord",
    "ErrorResponse",
    "ActionResult",
    "HealthCheckResponse",
]
