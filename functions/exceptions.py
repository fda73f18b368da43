# functions/exceptions.py
"""
Error taxonomy for the CV document service.

Every failure raised by the validator, gateway, store adapter or
orchestrator derives from CvServiceError so callers (FastAPI routes, the
CLI, Stage D packaging) can map it to a result without knowing where it
came from. Each class carries a machine-readable `error_code` and the HTTP
status it maps to; `message` is always safe to show to the end user.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from schemas.internal_schema import FieldViolation


class CvServiceError(Exception):
    """Base class for all service-level failures."""

    error_code: str = "INTERNAL_ERROR"
    http_status: int = 500
    default_message: str = "An unexpected error occurred."

    def __init__(self, message: Optional[str] = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_details(self) -> Dict[str, Any]:
        """Structured details safe to return to the caller."""
        return {}


class CvValidationError(CvServiceError):
    """Malformed or incomplete form input. Never reaches the store or gateway."""

    error_code = "VALIDATION_ERROR"
    http_status = 422
    default_message = "Invalid form data."

    def __init__(
        self,
        violations: List[FieldViolation],
        message: Optional[str] = None,
    ) -> None:
        self.violations = list(violations)
        super().__init__(message)

    def to_details(self) -> Dict[str, Any]:
        return {"violations": [v.model_dump() for v in self.violations]}

    def __str__(self) -> str:
        if not self.violations:
            return self.message
        joined = "; ".join(f"{v.path}: {v.message}" for v in self.violations)
        return f"{self.message} {joined}"


class CvPermissionError(CvServiceError, PermissionError):
    """Owner id mismatch. The message never reveals the actual owner."""

    error_code = "PERMISSION_DENIED"
    http_status = 403
    default_message = "You don't have permission to access this CV."


class CvNotFoundError(CvServiceError, LookupError):
    """The referenced resume record does not exist."""

    error_code = "NOT_FOUND"
    http_status = 404
    default_message = "CV not found."

    def __init__(self, cv_id: Optional[str] = None, message: Optional[str] = None) -> None:
        self.cv_id = cv_id
        super().__init__(message)


class GenerationError(CvServiceError):
    """The text-generation backend failed or violated the output schema."""

    error_code = "GENERATION_FAILED"
    http_status = 502
    default_message = "Document generation failed. Please try again."

    SCHEMA_VIOLATION = "schema_violation"
    BACKEND_UNAVAILABLE = "backend_unavailable"

    def __init__(
        self,
        cause: str,
        detail: Optional[str] = None,
        message: Optional[str] = None,
    ) -> None:
        self.cause = cause
        self.detail = detail
        super().__init__(message)

    def to_details(self) -> Dict[str, Any]:
        return {"cause": self.cause}

    def __str__(self) -> str:
        if self.detail:
            return f"{self.message} ({self.cause}: {self.detail})"
        return f"{self.message} ({self.cause})"


class StoreError(CvServiceError):
    """The document store is unreachable or rejected the operation."""

    error_code = "STORE_ERROR"
    http_status = 503
    default_message = "The CV store is currently unavailable."


__all__ = [
    "CvServiceError",
    "CvValidationError",
    "CvPermissionError",
    "CvNotFoundError",
    "GenerationError",
    "StoreError",
]
