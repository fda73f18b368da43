# functions/stage_d_packaging.py

"""
Stage D – Result Packaging

This module is the final packaging layer of every CV operation.

Responsibilities:
- Wrap a successful orchestrator outcome (record id, record, list, skills,
  summary) into an ActionResult with a human-readable message.
- Map the error taxonomy in functions.exceptions to an ActionResult carrying
  an ErrorResponse plus the HTTP status, in a way that is HTTP-agnostic so
  FastAPI, the CLI or any other caller can use it directly.
- Keep failure messages generic: permission errors never reveal the owner,
  generation errors report their cause only in `details` and the logs.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional, Tuple

import structlog
from pydantic import BaseModel

from functions.exceptions import CvServiceError
from schemas.output_schema import ActionResult, ErrorResponse

logger = structlog.get_logger(__name__).bind(module="stage_d_packaging")

INTERNAL_ERROR_CODE = "INTERNAL_ERROR"
INTERNAL_ERROR_MESSAGE = "An unexpected error occurred."


# ---------------------------------------------------------------------------
# Core packaging helpers
# ---------------------------------------------------------------------------


def _generate_request_id() -> str:
    """Generate a simple request ID if upstream did not provide one."""
    now = datetime.now(timezone.utc)
    return f"REQ_{int(now.timestamp() * 1000)}"


def _to_serializable(value: Any) -> Any:
    """Pydantic models → JSON-mode dicts, recursively through lists/dicts."""
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, dict):
        return {k: _to_serializable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_serializable(v) for v in value]
    return value


def build_action_result(
    message: str,
    id: Optional[str] = None,
    data: Any = None,
    request_id: Optional[str] = None,
) -> ActionResult:
    """Package a successful operation."""
    return ActionResult(
        success=True,
        message=message,
        id=id,
        data=_to_serializable(data),
        request_id=request_id,
    )


def build_error_response(
    exc: BaseException,
    request_id: Optional[str] = None,
) -> Tuple[ActionResult, int]:
    """
    Build a failed ActionResult and the HTTP status for an exception.

    Service errors keep their own code, status and user-safe message.
    Anything else is reported as INTERNAL_ERROR / 500 with a generic message;
    the original exception is only logged.
    """
    req_id = request_id or _generate_request_id()

    if isinstance(exc, CvServiceError):
        error_code = exc.error_code
        message = exc.message
        details = exc.to_details()
        http_status = exc.http_status
        logger.warning(
            "cv_action_error",
            request_id=req_id,
            error_code=error_code,
            message=message,
            details=details,
            http_status=http_status,
            error=str(exc),
        )
    else:
        error_code = INTERNAL_ERROR_CODE
        message = INTERNAL_ERROR_MESSAGE
        details = {}
        http_status = 500
        logger.error(
            "cv_action_error",
            request_id=req_id,
            error_code=error_code,
            http_status=http_status,
            error_type=type(exc).__name__,
            error=str(exc),
            exc_info=exc,
        )

    err = ErrorResponse(
        error_code=error_code,
        message=message,
        details=details or None,
        request_id=req_id,
    )
    result = ActionResult(
        success=False,
        message=message,
        id=getattr(exc, "cv_id", None),
        request_id=req_id,
        error=err,
    )
    return result, http_status


__all__ = [
    "build_action_result",
    "build_error_response",
]
