"""Unittest suite for the Stage B document generation engine.

This module tests the core responsibilities of Stage B:

- Internal helpers:
    - _strip_markdown_fence
    - StageBTelemetry

- DocumentGenerationEngine.generate:
    - one document type vs combined call
    - declared output schema
    - schema_violation on malformed / incomplete output
    - backend_unavailable on client failures
    - single attempt, no retry

- Auxiliary flows:
    - suggest_skills
    - summarize_experience

The tests use FakeLLMClient instead of a real backend.
"""

from __future__ import annotations

import threading
import unittest

from functions.exceptions import GenerationError
from functions.stage_a_validation import validate_cv_form
from functions.stage_b_generation import (
    DocumentGenerationEngine,
    StageBTelemetry,
    _strip_markdown_fence,
)
from functions.utils.llm_client import LLMBackendError
from schemas.internal_schema import DocumentType, GenerationRequest

from utils_test_support import FakeLLMClient, LoggingTestCase, sample_form


def _request() -> GenerationRequest:
    return GenerationRequest.from_form(validate_cv_form(sample_form()))


class TestHelpers(LoggingTestCase):
    def test_strip_markdown_fence(self) -> None:
        self.assertEqual(_strip_markdown_fence('```json\n{"a": 1}\n```'), '{"a": 1}')
        self.assertEqual(_strip_markdown_fence('{"a": 1}'), '{"a": 1}')

    def test_telemetry_accumulates_usage(self) -> None:
        t = StageBTelemetry()
        t.add_usage_snapshot("x", {"prompt_tokens": 3, "completion_tokens": 2})
        t.add_usage_snapshot("y", None)
        self.assertEqual(t.calls, 2)
        self.assertEqual(t.total_tokens, 5)

    def test_telemetry_keeps_only_recent_usage_records(self) -> None:
        t = StageBTelemetry()
        for i in range(StageBTelemetry.MAX_USAGE_RECORDS + 10):
            t.add_usage_snapshot(f"op-{i}", {"prompt_tokens": 1})
        self.assertEqual(len(t.usage_records), StageBTelemetry.MAX_USAGE_RECORDS)
        self.assertEqual(t.usage_records[0]["operation"], "op-10")
        self.assertEqual(t.calls, StageBTelemetry.MAX_USAGE_RECORDS + 10)

    def test_telemetry_counts_concurrent_updates(self) -> None:
        t = StageBTelemetry()

        def record() -> None:
            for _ in range(500):
                t.add_usage_snapshot("generate", {"prompt_tokens": 2, "completion_tokens": 1})

        threads = [threading.Thread(target=record) for _ in range(8)]
        for th in threads:
            th.start()
        for th in threads:
            th.join()

        self.assertEqual(t.calls, 4000)
        self.assertEqual(t.prompt_tokens, 8000)
        self.assertEqual(t.output_tokens, 4000)


class TestGenerateDocuments(LoggingTestCase):
    def _engine(self, responses=None) -> tuple[DocumentGenerationEngine, FakeLLMClient]:
        llm = FakeLLMClient(responses)
        return DocumentGenerationEngine(llm), llm

    def test_single_document(self) -> None:
        engine, llm = self._engine([{"resumeDoc": "# 履歴書\n山田 太郎"}])
        result = engine.generate(_request(), DocumentType.RESUME_DOC)

        self.assertEqual(result.resume_doc, "# 履歴書\n山田 太郎")
        self.assertIsNone(result.career_history_doc)
        self.assertEqual(len(llm.calls), 1)
        self.assertEqual(llm.calls[0]["schema"]["required"], ["resumeDoc"])
        self.assertIn("=== Education ===", llm.calls[0]["prompt"])

    def test_both_documents_in_one_call(self) -> None:
        engine, llm = self._engine([{"resumeDoc": "R", "careerHistoryDoc": "C"}])
        result = engine.generate(_request())

        self.assertEqual(result.as_record_update(), {"formatted_resume_doc": "R", "career_history_doc": "C"})
        self.assertEqual(len(llm.calls), 1)
        self.assertEqual(llm.calls[0]["schema"]["required"], ["resumeDoc", "careerHistoryDoc"])

    def test_code_fenced_json_is_accepted(self) -> None:
        engine, _ = self._engine(['```json\n{"careerHistoryDoc": "職務要約"}\n```'])
        result = engine.generate(_request(), DocumentType.CAREER_HISTORY_DOC)
        self.assertEqual(result.career_history_doc, "職務要約")

    def test_missing_key_is_schema_violation(self) -> None:
        engine, _ = self._engine([{"careerHistoryDoc": "wrong key"}])
        with self.assertRaises(GenerationError) as ctx:
            engine.generate(_request(), DocumentType.RESUME_DOC)
        self.assertEqual(ctx.exception.cause, GenerationError.SCHEMA_VIOLATION)

    def test_empty_string_is_schema_violation(self) -> None:
        engine, _ = self._engine([{"resumeDoc": "   "}])
        with self.assertRaises(GenerationError) as ctx:
            engine.generate(_request(), DocumentType.RESUME_DOC)
        self.assertEqual(ctx.exception.cause, GenerationError.SCHEMA_VIOLATION)

    def test_combined_call_with_one_missing_document_fails_entirely(self) -> None:
        engine, _ = self._engine([{"resumeDoc": "R"}])
        with self.assertRaises(GenerationError) as ctx:
            engine.generate(_request())
        self.assertEqual(ctx.exception.cause, GenerationError.SCHEMA_VIOLATION)

    def test_non_json_is_schema_violation(self) -> None:
        engine, _ = self._engine(["Here is your resume!"])
        with self.assertRaises(GenerationError) as ctx:
            engine.generate(_request(), DocumentType.RESUME_DOC)
        self.assertEqual(ctx.exception.cause, GenerationError.SCHEMA_VIOLATION)

    def test_json_array_is_schema_violation(self) -> None:
        engine, _ = self._engine(['["resumeDoc"]'])
        with self.assertRaises(GenerationError) as ctx:
            engine.generate(_request(), DocumentType.RESUME_DOC)
        self.assertEqual(ctx.exception.cause, GenerationError.SCHEMA_VIOLATION)

    def test_backend_error_is_backend_unavailable_without_retry(self) -> None:
        engine, llm = self._engine([LLMBackendError("503 Service Unavailable")])
        with self.assertRaises(GenerationError) as ctx:
            engine.generate(_request(), DocumentType.RESUME_DOC)
        self.assertEqual(ctx.exception.cause, GenerationError.BACKEND_UNAVAILABLE)
        self.assertEqual(len(llm.calls), 1)

    def test_timeout_is_backend_unavailable(self) -> None:
        engine, _ = self._engine([TimeoutError("deadline exceeded")])
        with self.assertRaises(GenerationError) as ctx:
            engine.generate(_request(), DocumentType.RESUME_DOC)
        self.assertEqual(ctx.exception.cause, GenerationError.BACKEND_UNAVAILABLE)

    def test_no_client_is_backend_unavailable(self) -> None:
        engine = DocumentGenerationEngine(None)
        with self.assertRaises(GenerationError) as ctx:
            engine.generate(_request(), DocumentType.RESUME_DOC)
        self.assertEqual(ctx.exception.cause, GenerationError.BACKEND_UNAVAILABLE)

    def test_usage_is_recorded(self) -> None:
        engine, _ = self._engine()
        engine.generate(_request(), DocumentType.RESUME_DOC)
        self.assertEqual(engine.telemetry.calls, 1)
        self.assertEqual(engine.telemetry.total_tokens, 15)


class TestAuxiliaryFlows(LoggingTestCase):
    def test_suggest_skills_trims_and_dedupes(self) -> None:
        llm = FakeLLMClient([{"skills": [" SQL", "Python", "sql", "", 42]}])
        skills = DocumentGenerationEngine(llm).suggest_skills("Data Analyst")
        self.assertEqual(skills, ["SQL", "Python"])
        self.assertIn("Data Analyst", llm.calls[0]["prompt"])

    def test_suggest_skills_empty_list_is_schema_violation(self) -> None:
        llm = FakeLLMClient([{"skills": []}])
        with self.assertRaises(GenerationError) as ctx:
            DocumentGenerationEngine(llm).suggest_skills("Data Analyst")
        self.assertEqual(ctx.exception.cause, GenerationError.SCHEMA_VIOLATION)

    def test_suggest_skills_wrong_type_is_schema_violation(self) -> None:
        llm = FakeLLMClient([{"skills": "SQL, Python"}])
        with self.assertRaises(GenerationError):
            DocumentGenerationEngine(llm).suggest_skills("Data Analyst")

    def test_summarize_experience(self) -> None:
        llm = FakeLLMClient([{"summary": "  バックエンド開発5年  "}])
        summary = DocumentGenerationEngine(llm).summarize_experience("Five years of Django work")
        self.assertEqual(summary, "バックエンド開発5年")
        self.assertEqual(llm.calls[0]["schema"]["required"], ["summary"])

    def test_close_closes_client(self) -> None:
        llm = FakeLLMClient()
        DocumentGenerationEngine(llm).close()
        self.assertTrue(llm.closed)


if __name__ == "__main__":
    unittest.main()
