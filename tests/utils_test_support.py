# tests/utils_test_support.py
"""
Shared helpers for the unittest suites.

This module is intentionally test-only and is NOT part of the public
service API. It provides:

- LoggingTestCase: readable per-test headers on stderr
- sample_form(): a complete, valid CV form payload
- FakeLLMClient: scripted LLM responses, records every call
- SpyResumeStore: in-memory store that counts reads and writes
- make_orchestrator(): orchestrator wired to the fakes above
"""

from __future__ import annotations

import copy
import json
import sys
import unittest
from typing import Any, Dict, List, Mapping

from functions.cv_orchestrator import CvOrchestrator
from functions.resume_store import InMemoryResumeStore
from functions.stage_a_validation import FormValidator
from functions.stage_b_generation import DocumentGenerationEngine
from functions.utils.llm_client import LLMClient, LLMText


class LoggingTestCase(unittest.TestCase):
    """Base TestCase that prints a readable header per test."""

    def setUp(self) -> None:
        test_name = self._testMethodName
        print("\n" + "=" * 90, file=sys.stderr)
        print(f"STARTING TEST: {self.__class__.__name__}.{test_name}", file=sys.stderr)
        print("=" * 90, file=sys.stderr)

    def tearDown(self) -> None:
        print("-" * 90 + "\n", file=sys.stderr)


# ---------------------------------------------------------------------------
# Form fixture
# ---------------------------------------------------------------------------

_SAMPLE_FORM: Dict[str, Any] = {
    "personal_info": {
        "name": "山田 太郎",
        "email": "taro.yamada@example.com",
        "phone": "090-1234-5678",
        "address": "東京都渋谷区神南1-2-3",
        "dob": "1995-04-01",
        "gender": "male",
    },
    "job_title": "Frontend Engineer",
    "education": [
        {
            "institution": "東京大学",
            "degree": "学士",
            "major": "情報工学",
            "graduation_date": "2018年3月",
        }
    ],
    "experience": [
        {
            "company": "株式会社サンプル",
            "position": "Web Developer",
            "start_date": "2018年4月",
            "end_date": "現在",
            "responsibilities": "React / TypeScript による社内管理画面の開発\nAWS 上の CI/CD 整備",
        }
    ],
    "skills": {
        "selected": ["React", "AWS"],
        "other": "Figma, SQL, React",
    },
    "certifications": [{"name": "基本情報技術者", "date": "2017年11月"}],
    "goals": "ユーザー体験を重視したプロダクト開発に携わりたい。",
    "personal_interests": "登山、写真",
}


def sample_form(**overrides: Any) -> Dict[str, Any]:
    """Deep copy of a valid form; top-level keys can be overridden."""
    form = copy.deepcopy(_SAMPLE_FORM)
    form.update(copy.deepcopy(overrides))
    return form


# ---------------------------------------------------------------------------
# LLM fake
# ---------------------------------------------------------------------------


class FakeLLMClient(LLMClient):
    """
    Scripted client.

    `responses` items are returned in order; a dict is JSON-encoded, a str is
    returned as-is, an Exception instance is raised. When the script runs
    out, every required key of the declared schema is filled with
    "<key> text".
    """

    def __init__(self, responses: List[Any] | None = None, model: str = "fake-model") -> None:
        self.model = model
        self.responses = list(responses or [])
        self.calls: List[Dict[str, Any]] = []
        self.closed = False

    def generate_json(self, prompt: str, response_schema: Dict[str, Any]) -> LLMText:
        self.calls.append({"prompt": prompt, "schema": response_schema})
        if self.responses:
            item = self.responses.pop(0)
        else:
            item = {key: f"{key} text" for key in response_schema.get("required", [])}
        if isinstance(item, BaseException):
            raise item
        text = item if isinstance(item, str) else json.dumps(item, ensure_ascii=False)
        return LLMText(text, usage={"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15})

    def close(self) -> None:
        self.closed = True


# ---------------------------------------------------------------------------
# Store spy
# ---------------------------------------------------------------------------


class SpyResumeStore(InMemoryResumeStore):
    """InMemoryResumeStore that records every public call."""

    def __init__(self) -> None:
        super().__init__()
        self.calls: List[tuple[str, Any]] = []

    @property
    def write_calls(self) -> List[tuple[str, Any]]:
        return [c for c in self.calls if c[0] in ("create", "update", "delete")]

    def create(self, record_data: Mapping[str, Any]) -> str:
        self.calls.append(("create", dict(record_data)))
        return super().create(record_data)

    def update(self, cv_id: str, partial: Mapping[str, Any]) -> None:
        self.calls.append(("update", (cv_id, dict(partial))))
        super().update(cv_id, partial)

    def delete(self, cv_id: str) -> None:
        self.calls.append(("delete", cv_id))
        super().delete(cv_id)

    def get_by_id(self, cv_id: str):
        self.calls.append(("get_by_id", cv_id))
        return super().get_by_id(cv_id)

    def list_by_owner(self, owner_id: str):
        self.calls.append(("list_by_owner", owner_id))
        return super().list_by_owner(owner_id)


def make_orchestrator(
    llm: FakeLLMClient | None = None,
    store: SpyResumeStore | None = None,
) -> tuple[CvOrchestrator, SpyResumeStore, FakeLLMClient]:
    llm = llm or FakeLLMClient()
    store = store or SpyResumeStore()
    engine = DocumentGenerationEngine(llm, {"log_prompt_preview": False})
    orch = CvOrchestrator(store, engine, FormValidator({"enforce_skill_vocabulary": True}))
    return orch, store, llm
