"""Unittest suite for Stage D result packaging.

Covers:
- build_action_result: success envelope, record serialisation, request id
- build_error_response: mapping of the error taxonomy to codes / statuses,
  generic messages, details, generated request ids, unknown exceptions
"""

from __future__ import annotations

import unittest
from datetime import datetime, timezone

from functions.exceptions import (
    CvNotFoundError,
    CvPermissionError,
    CvValidationError,
    GenerationError,
    StoreError,
)
from functions.stage_a_validation import validate_cv_form
from functions.stage_d_packaging import build_action_result, build_error_response
from schemas.internal_schema import FieldViolation
from schemas.output_schema import ResumeRecord

from utils_test_support import LoggingTestCase, sample_form


class TestBuildActionResult(LoggingTestCase):
    def test_success_envelope(self) -> None:
        result = build_action_result("CV saved successfully.", id="abc", request_id="REQ_1")
        self.assertTrue(result.success)
        self.assertEqual(result.id, "abc")
        self.assertEqual(result.request_id, "REQ_1")
        self.assertIsNone(result.error)

    def test_records_are_serialised(self) -> None:
        now = datetime(2025, 1, 1, tzinfo=timezone.utc)
        record = ResumeRecord(
            id="abc",
            owner_id="user-1",
            created_at=now,
            updated_at=now,
            **validate_cv_form(sample_form()).form_fields(),
        )
        result = build_action_result("ok", data=[record])
        self.assertIsInstance(result.data, list)
        self.assertEqual(result.data[0]["id"], "abc")
        self.assertEqual(result.data[0]["personal_info"]["gender"], "male")
        self.assertIsInstance(result.data[0]["created_at"], str)


class TestBuildErrorResponse(LoggingTestCase):
    def test_taxonomy_mapping(self) -> None:
        cases = [
            (CvValidationError([FieldViolation(path="goals", message="Career goals are required")]), "VALIDATION_ERROR", 422),
            (CvPermissionError(), "PERMISSION_DENIED", 403),
            (CvNotFoundError("abc"), "NOT_FOUND", 404),
            (GenerationError(GenerationError.SCHEMA_VIOLATION), "GENERATION_FAILED", 502),
            (StoreError(), "STORE_ERROR", 503),
            (RuntimeError("kaboom"), "INTERNAL_ERROR", 500),
        ]
        for exc, code, status in cases:
            with self.subTest(code=code):
                result, http_status = build_error_response(exc, request_id="REQ_1")
                self.assertFalse(result.success)
                self.assertEqual(http_status, status)
                self.assertEqual(result.error.error_code, code)
                self.assertEqual(result.request_id, "REQ_1")

    def test_validation_details_list_violations(self) -> None:
        exc = CvValidationError([FieldViolation(path="education.0.major", message="Major is required")])
        result, _ = build_error_response(exc)
        self.assertEqual(
            result.error.details,
            {"violations": [{"path": "education.0.major", "message": "Major is required"}]},
        )

    def test_permission_message_is_generic(self) -> None:
        result, _ = build_error_response(CvPermissionError())
        self.assertEqual(result.message, "You don't have permission to access this CV.")
        self.assertIsNone(result.error.details)

    def test_generation_cause_only_in_details(self) -> None:
        exc = GenerationError(GenerationError.BACKEND_UNAVAILABLE, detail="503 from upstream")
        result, _ = build_error_response(exc)
        self.assertEqual(result.error.details, {"cause": "backend_unavailable"})
        self.assertNotIn("503", result.message)

    def test_not_found_carries_id(self) -> None:
        result, _ = build_error_response(CvNotFoundError("abc"))
        self.assertEqual(result.id, "abc")
        self.assertEqual(result.message, "CV not found.")

    def test_unknown_exception_message_is_generic(self) -> None:
        result, _ = build_error_response(KeyError("secret internals"))
        self.assertEqual(result.message, "An unexpected error occurred.")
        self.assertNotIn("secret", result.model_dump_json())

    def test_request_id_is_generated(self) -> None:
        result, _ = build_error_response(StoreError())
        self.assertTrue(result.request_id.startswith("REQ_"))


if __name__ == "__main__":
    unittest.main()
