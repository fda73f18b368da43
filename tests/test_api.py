"""Unittest suite for the FastAPI surface (api.py).

The app is built with an injected orchestrator (SpyResumeStore +
FakeLLMClient) and exercised through fastapi.testclient.TestClient,
including the realtime websocket stream.
"""

from __future__ import annotations

import os
import unittest
from unittest.mock import patch

from fastapi.testclient import TestClient

import api
from api import create_app
from functions.utils.llm_client import LLMBackendError

from utils_test_support import FakeLLMClient, LoggingTestCase, make_orchestrator, sample_form

OWNER_HEADERS = {"X-Owner-Id": "user-1"}
INTRUDER_HEADERS = {"X-Owner-Id": "user-2"}


class ApiTestCase(LoggingTestCase):
    llm_responses: list = []

    def setUp(self) -> None:
        super().setUp()
        self.orch, self.store, self.llm = make_orchestrator(FakeLLMClient(list(self.llm_responses)))
        self.client = TestClient(create_app(self.orch))

    def _create(self) -> str:
        resp = self.client.post("/cvs", json=sample_form(), headers=OWNER_HEADERS)
        self.assertEqual(resp.status_code, 201, resp.text)
        return resp.json()["id"]


class TestHealth(ApiTestCase):
    def test_health(self) -> None:
        resp = self.client.get("/health")
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertEqual(body["status"], "healthy")
        self.assertEqual(body["checks"]["llm"], "FakeLLMClient")


class TestCvEndpoints(ApiTestCase):
    def test_create_and_get(self) -> None:
        cv_id = self._create()
        resp = self.client.get(f"/cvs/{cv_id}", headers=OWNER_HEADERS)

        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertTrue(body["success"])
        self.assertEqual(body["data"]["job_title"], "Frontend Engineer")
        self.assertIsNone(body["data"]["formatted_resume_doc"])

    def test_create_invalid_form(self) -> None:
        resp = self.client.post("/cvs", json=sample_form(goals=""), headers=OWNER_HEADERS)
        self.assertEqual(resp.status_code, 422)
        body = resp.json()
        self.assertFalse(body["success"])
        self.assertEqual(body["error"]["error_code"], "VALIDATION_ERROR")
        self.assertEqual(body["error"]["details"]["violations"][0]["path"], "goals")
        self.assertEqual(self.store.write_calls, [])

    def test_missing_owner_header(self) -> None:
        resp = self.client.post("/cvs", json=sample_form())
        self.assertEqual(resp.status_code, 403)

    def test_get_missing_is_404(self) -> None:
        resp = self.client.get("/cvs/missing", headers=OWNER_HEADERS)
        self.assertEqual(resp.status_code, 404)
        self.assertEqual(resp.json()["error"]["error_code"], "NOT_FOUND")

    def test_get_other_owner_is_403(self) -> None:
        cv_id = self._create()
        resp = self.client.get(f"/cvs/{cv_id}", headers=INTRUDER_HEADERS)
        self.assertEqual(resp.status_code, 403)
        self.assertNotIn("user-1", resp.text)

    def test_update(self) -> None:
        cv_id = self._create()
        resp = self.client.put(
            f"/cvs/{cv_id}", json=sample_form(job_title="Tech Lead"), headers=OWNER_HEADERS
        )
        self.assertEqual(resp.status_code, 200)
        record = self.client.get(f"/cvs/{cv_id}", headers=OWNER_HEADERS).json()["data"]
        self.assertEqual(record["job_title"], "Tech Lead")

    def test_delete(self) -> None:
        cv_id = self._create()
        self.assertEqual(self.client.delete(f"/cvs/{cv_id}", headers=INTRUDER_HEADERS).status_code, 403)
        self.assertEqual(self.client.delete(f"/cvs/{cv_id}", headers=OWNER_HEADERS).status_code, 200)
        self.assertEqual(self.client.get(f"/cvs/{cv_id}", headers=OWNER_HEADERS).status_code, 404)

    def test_list(self) -> None:
        self._create()
        self._create()
        resp = self.client.get("/cvs", headers=OWNER_HEADERS)
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(len(resp.json()["data"]), 2)
        self.assertEqual(self.client.get("/cvs", headers=INTRUDER_HEADERS).json()["data"], [])

    def test_request_id_is_echoed(self) -> None:
        resp = self.client.get("/cvs", headers={**OWNER_HEADERS, "X-Request-ID": "REQ_test"})
        self.assertEqual(resp.json()["request_id"], "REQ_test")


class TestDocumentEndpoints(ApiTestCase):
    llm_responses = [{"resumeDoc": "# 履歴書"}, LLMBackendError("unavailable")]

    def test_generate_then_backend_failure(self) -> None:
        cv_id = self._create()

        resp = self.client.post(f"/cvs/{cv_id}/documents/resumeDoc", headers=OWNER_HEADERS)
        self.assertEqual(resp.status_code, 200, resp.text)
        self.assertEqual(resp.json()["data"]["formatted_resume_doc"], "# 履歴書")

        resp = self.client.post(f"/cvs/{cv_id}/documents/careerHistoryDoc", headers=OWNER_HEADERS)
        self.assertEqual(resp.status_code, 502)
        body = resp.json()
        self.assertEqual(body["error"]["details"], {"cause": "backend_unavailable"})
        record = self.client.get(f"/cvs/{cv_id}", headers=OWNER_HEADERS).json()["data"]
        self.assertIsNone(record["career_history_doc"])

    def test_unknown_document_type(self) -> None:
        cv_id = self._create()
        resp = self.client.post(f"/cvs/{cv_id}/documents/coverLetter", headers=OWNER_HEADERS)
        self.assertEqual(resp.status_code, 422)


class TestGenerateAllEndpoint(ApiTestCase):
    def test_generate_all(self) -> None:
        cv_id = self._create()
        resp = self.client.post(f"/cvs/{cv_id}/documents", headers=OWNER_HEADERS)
        self.assertEqual(resp.status_code, 200, resp.text)
        data = resp.json()["data"]
        self.assertEqual(data["formatted_resume_doc"], "resumeDoc text")
        self.assertEqual(data["career_history_doc"], "careerHistoryDoc text")


class TestHelperEndpoints(ApiTestCase):
    llm_responses = [{"skills": ["SQL", "dbt"]}, {"summary": "要約"}]

    def test_suggest_and_summarize(self) -> None:
        resp = self.client.post("/skills/suggest", json={"job_title": "Data Engineer"})
        self.assertEqual(resp.status_code, 200, resp.text)
        self.assertEqual(resp.json()["data"], {"skills": ["SQL", "dbt"]})

        resp = self.client.post("/experience/summarize", json={"work_experience": "長い経歴"})
        self.assertEqual(resp.json()["data"], {"summary": "要約"})

    def test_suggest_requires_job_title(self) -> None:
        resp = self.client.post("/skills/suggest", json={})
        self.assertEqual(resp.status_code, 422)


class TestWebsocket(ApiTestCase):
    def test_snapshot_stream(self) -> None:
        with self.client.websocket_connect("/ws/cvs?owner_id=user-1") as ws:
            initial = ws.receive_json()
            self.assertEqual(initial, {"type": "snapshot", "records": []})

            cv_id = self._create()
            pushed = ws.receive_json()
            self.assertEqual([r["id"] for r in pushed["records"]], [cv_id])

    def test_missing_owner_is_rejected(self) -> None:
        with self.client.websocket_connect("/ws/cvs") as ws:
            body = ws.receive_json()
        self.assertEqual(body["error"]["error_code"], "PERMISSION_DENIED")


class TestServe(LoggingTestCase):
    def test_serve_runs_app_under_uvicorn(self) -> None:
        with patch.dict(os.environ, {"HOST": "127.0.0.1", "PORT": "9001"}), patch("api.uvicorn.run") as run:
            api.serve()
        run.assert_called_once_with(api.app, host="127.0.0.1", port=9001)

    def test_serve_arguments_win_over_environment(self) -> None:
        with patch.dict(os.environ, {"PORT": "9001"}), patch("api.uvicorn.run") as run:
            api.serve(host="localhost", port=8080)
        run.assert_called_once_with(api.app, host="localhost", port=8080)


if __name__ == "__main__":
    unittest.main()
