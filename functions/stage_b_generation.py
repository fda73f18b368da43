# functions/stage_b_generation.py

"""
Stage B: document generation.

This module handles:
- Building the prompt for one document type (or the combined prompt for both)
  from a GenerationRequest
- Calling the LLM client once, with a declared JSON output schema
- Checking the returned JSON: every requested key must be a non-empty string
- Returning a GenerationResult, or raising GenerationError

There is no retry loop and no partial result. Either every requested
document comes back as a non-empty string, or the call fails with one of two
causes:

    schema_violation     the backend answered, but not with the declared shape
    backend_unavailable  transport error, timeout, missing credentials, ...

The same engine serves the two auxiliary flows of the CV form:
- suggest_skills(job_title)          → list of skill names
- summarize_experience(free_text)    → short summary string
"""

from __future__ import annotations

import json
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Sequence

import structlog

from functions.exceptions import GenerationError
from functions.utils.common import load_generation_params
from functions.utils.llm_client import LLMBackendError, LLMClient
from functions.utils.prompts_builder import (
    SKILLS_KEY,
    SUMMARY_KEY,
    build_document_prompt,
    build_experience_summary_prompt,
    build_skill_suggestion_prompt,
    document_output_schema,
    load_prompts_config,
    skills_output_schema,
    summary_output_schema,
)
from functions.utils.security_functions import detect_injection, scan_dict_for_injection
from functions.utils.skills_formatting import dedupe_skill_names
from schemas.internal_schema import DocumentType, GenerationRequest, GenerationResult

logger = structlog.get_logger(__name__).bind(module="stage_b_generation")


@dataclass
class StageBTelemetry:
    """
    Token usage accumulated over the lifetime of one engine.

    Counters are updated from request worker threads, so every update goes
    through `_lock`. Only the most recent `MAX_USAGE_RECORDS` raw usage
    records are kept.
    """

    MAX_USAGE_RECORDS = 256

    calls: int = 0
    prompt_tokens: int = 0
    output_tokens: int = 0
    usage_records: Deque[Dict[str, Any]] = field(
        default_factory=lambda: deque(maxlen=StageBTelemetry.MAX_USAGE_RECORDS)
    )
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def add_usage_snapshot(self, operation: str, usage: Dict[str, Any] | None) -> None:
        usage = usage or {}
        prompt = int(usage.get("prompt_tokens") or 0)
        output = int(usage.get("completion_tokens") or 0)
        with self._lock:
            self.calls += 1
            self.prompt_tokens += prompt
            self.output_tokens += output
            self.usage_records.append({"operation": operation, **usage})

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.output_tokens


def _strip_markdown_fence(text: str) -> str:
    """Remove ``` / ```json fences if present, otherwise return text unchanged."""
    stripped = text.strip()
    if stripped.startswith("```"):
        lines = stripped.splitlines()
        # drop first line (``` or ```json)
        if lines:
            lines = lines[1:]
        # drop last line if it's a closing fence
        if lines and lines[-1].strip().startswith("```"):
            lines = lines[:-1]
        stripped = "\n".join(lines).strip()
    return stripped


def _parse_json_object(text: str, operation: str) -> Dict[str, Any]:
    """Parse backend text as a JSON object or raise schema_violation."""
    body = _strip_markdown_fence(text or "")
    if not body:
        raise GenerationError(GenerationError.SCHEMA_VIOLATION, detail=f"{operation}: empty response")
    try:
        data = json.loads(body)
    except json.JSONDecodeError as exc:
        raise GenerationError(
            GenerationError.SCHEMA_VIOLATION,
            detail=f"{operation}: response is not valid JSON ({exc.msg})",
        ) from exc
    if not isinstance(data, dict):
        raise GenerationError(
            GenerationError.SCHEMA_VIOLATION,
            detail=f"{operation}: expected a JSON object, got {type(data).__name__}",
        )
    return data


def _required_text(data: Dict[str, Any], key: str, operation: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise GenerationError(
            GenerationError.SCHEMA_VIOLATION,
            detail=f"{operation}: '{key}' missing or empty",
        )
    return value.strip()


class DocumentGenerationEngine:
    """Encapsulates Stage B logic: prompt building, the LLM call, and output checks."""

    generation_params: Dict[str, Any]

    def __init__(
        self,
        llm_client: LLMClient | None,
        generation_params: Dict[str, Any] | None = None,
        prompts_cfg: Dict[str, str] | None = None,
    ) -> None:
        self.llm_client = llm_client

        defaults: Dict[str, Any] = {
            "model_name": "gemini-2.5-flash",
            "prompts_file": "prompts.yaml",
            "log_prompt_preview": False,
        }
        defaults.update(load_generation_params())
        if generation_params:
            defaults.update(generation_params)

        self.generation_params = defaults
        self.prompts_cfg = prompts_cfg if prompts_cfg is not None else load_prompts_config(defaults)
        self.telemetry = StageBTelemetry()

    # ------------------------------------------------------------------
    # LLM call (single attempt)
    # ------------------------------------------------------------------
    def _call_llm(self, prompt: str, response_schema: Dict[str, Any], operation: str) -> str:
        if self.llm_client is None:
            raise GenerationError(
                GenerationError.BACKEND_UNAVAILABLE,
                detail="no LLM client configured",
            )

        if self.generation_params.get("log_prompt_preview"):
            logger.debug("llm_prompt_preview", operation=operation, prompt_preview=prompt[:400])

        start = time.monotonic()
        try:
            text = self.llm_client.generate_json(prompt, response_schema)
        except GenerationError:
            raise
        except LLMBackendError as exc:
            logger.warning("llm_backend_unavailable", operation=operation, error=str(exc))
            raise GenerationError(GenerationError.BACKEND_UNAVAILABLE, detail=str(exc)) from exc
        except Exception as exc:
            logger.exception("llm_call_unexpected_error", operation=operation, error=str(exc))
            raise GenerationError(
                GenerationError.BACKEND_UNAVAILABLE,
                detail=f"{type(exc).__name__}: {exc}",
            ) from exc

        usage = getattr(text, "usage", None)
        self.telemetry.add_usage_snapshot(operation, usage)
        logger.info(
            "llm_call_completed",
            operation=operation,
            latency_ms=int((time.monotonic() - start) * 1000),
            response_chars=len(text or ""),
            total_tokens=(usage or {}).get("total_tokens"),
        )
        return str(text or "")

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------
    def generate(
        self,
        request: GenerationRequest,
        doc_type: DocumentType | None = None,
    ) -> GenerationResult:
        """
        Generate one document type, or both when `doc_type` is None.

        Raises GenerationError on backend failure or when the output does not
        carry every requested document as a non-empty string.
        """
        doc_types: Sequence[DocumentType] = [doc_type] if doc_type is not None else list(DocumentType)
        requested = [dt.value for dt in doc_types]

        findings = scan_dict_for_injection(request.model_dump(mode="json"))
        if findings.has_findings:
            logger.warning(
                "prompt_injection_patterns_detected",
                doc_types=requested,
                patterns=findings.detected_patterns,
                risk_score=findings.risk_score,
            )

        prompt = build_document_prompt(request, doc_types, self.prompts_cfg)
        schema = document_output_schema(doc_types)

        logger.info("document_generation_start", doc_types=requested, prompt_chars=len(prompt))

        raw = self._call_llm(prompt, schema, operation="generate_documents")
        data = _parse_json_object(raw, "generate_documents")

        texts = {dt: _required_text(data, dt.value, "generate_documents") for dt in doc_types}
        result = GenerationResult(
            resume_doc=texts.get(DocumentType.RESUME_DOC),
            career_history_doc=texts.get(DocumentType.CAREER_HISTORY_DOC),
        )

        logger.info(
            "document_generation_success",
            doc_types=requested,
            output_chars={dt.value: len(t) for dt, t in texts.items()},
        )
        return result

    # ------------------------------------------------------------------
    # Auxiliary flows
    # ------------------------------------------------------------------
    def suggest_skills(self, job_title: str) -> List[str]:
        """Suggest relevant skill names for a job title."""
        if detect_injection(job_title).has_findings:
            logger.warning("prompt_injection_patterns_detected", operation="suggest_skills")

        prompt = build_skill_suggestion_prompt(job_title, self.prompts_cfg)
        raw = self._call_llm(prompt, skills_output_schema(), operation="suggest_skills")
        data = _parse_json_object(raw, "suggest_skills")

        items = data.get(SKILLS_KEY)
        if not isinstance(items, list):
            raise GenerationError(
                GenerationError.SCHEMA_VIOLATION,
                detail=f"suggest_skills: '{SKILLS_KEY}' must be a list",
            )
        skills = dedupe_skill_names(s for s in items if isinstance(s, str))
        if not skills:
            raise GenerationError(
                GenerationError.SCHEMA_VIOLATION,
                detail="suggest_skills: no usable skill names",
            )

        logger.info("skills_suggested", count=len(skills))
        return skills

    def summarize_experience(self, work_experience: str) -> str:
        """Condense a free-text work history into a short summary."""
        if detect_injection(work_experience).has_findings:
            logger.warning("prompt_injection_patterns_detected", operation="summarize_experience")

        prompt = build_experience_summary_prompt(work_experience, self.prompts_cfg)
        raw = self._call_llm(prompt, summary_output_schema(), operation="summarize_experience")
        data = _parse_json_object(raw, "summarize_experience")
        summary = _required_text(data, SUMMARY_KEY, "summarize_experience")

        logger.info("experience_summarized", input_chars=len(work_experience), output_chars=len(summary))
        return summary

    def close(self) -> None:
        if self.llm_client is not None:
            self.llm_client.close()


__all__ = [
    "DocumentGenerationEngine",
    "StageBTelemetry",
]
