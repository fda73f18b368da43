# functions/utils/llm_client.py
"""
Clients for the external text-generation backend.

Every client exposes the same small surface:

    client.generate_json(prompt, response_schema) -> LLMText
    client.close()

`response_schema` is an OpenAPI-style object schema (the subset Gemini
accepts for structured output). The client constrains the backend to JSON
matching it; checking the parsed JSON is the caller's job (Stage B).

Clients are constructed explicitly and injected; nothing here keeps a
module-level client. `build_llm_client()` picks the implementation:

    1) parameters.yaml generation.use_stub → StubLLMClient
    2) No API key (env GOOGLE_API_KEY or parameters/credentials.yaml)
       → UnconfiguredLLMClient (every call fails as backend unavailable)
    3) Else GeminiClient (google-generativeai)
"""

from __future__ import annotations

import json
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, cast

import google.generativeai as genai
import structlog
from google.generativeai.types import GenerationConfig, RequestOptions

from functions.utils.common import (
    PARAMETERS_DIR,
    ROOT,
    load_all_parameters,
    load_generation_params,
    load_yaml_dict,
    map_engine_params,
)

logger = structlog.get_logger().bind(module="llm_client")

DEFAULT_MODEL = "gemini-2.5-flash"


class LLMBackendError(RuntimeError):
    """The backend could not be reached or rejected the call."""


# ---------------------------------------------------------------------------
# String subclass that can carry usage metadata
# ---------------------------------------------------------------------------
class LLMText(str):
    """
    String that also exposes:
      - .usage: dict {prompt_tokens, completion_tokens, total_tokens}
      - .finish_reason: backend finish reason, if reported
      - .raw: raw SDK response object
    """

    usage: Dict[str, Any]
    finish_reason: Optional[str]
    raw: Any

    def __new__(
        cls,
        text: str,
        usage: Optional[Dict[str, Any]] = None,
        finish_reason: Optional[str] = None,
        raw: Any = None,
    ) -> "LLMText":
        obj = cast(LLMText, str.__new__(cls, text or ""))
        obj.usage = usage or {}
        obj.finish_reason = finish_reason
        obj.raw = raw
        return obj


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------
def resolve_api_key() -> Optional[str]:
    """GOOGLE_API_KEY from the environment, else parameters/credentials.yaml."""
    api_key = os.environ.get("GOOGLE_API_KEY")
    if api_key:
        return api_key
    creds_path = PARAMETERS_DIR / "credentials.yaml"
    if not creds_path.exists():
        return None
    creds = load_yaml_dict(creds_path)
    api_key = creds.get("GOOGLE_API_KEY") or creds.get("google_api_key")
    if not api_key:
        logger.warning("google_api_key_missing_in_credentials")
        return None
    return str(api_key)


# ---------------------------------------------------------------------------
# Raw dump helpers (for saving SDK/raw responses)
# ---------------------------------------------------------------------------
def _raw_dump_enabled() -> bool:
    """
    Enable if:
      - env LLM_RAW_DUMP=1, or
      - parameters.yaml paths.llm_raw_dump is True
    """
    if os.getenv("LLM_RAW_DUMP") == "1":
        return True
    paths = load_all_parameters().get("paths") or {}
    return bool(paths.get("llm_raw_dump", False))


def _raw_dump_dir() -> Path:
    """
    Dump dir preference order:
      1) env LLM_RAW_DUMP_DIR (absolute or under project root)
      2) parameters.yaml → paths.llm_raw_dump_dir
      3) <project_root>/local_logs/raw_api_responses
    """
    conf = os.getenv("LLM_RAW_DUMP_DIR")
    if not conf:
        paths = load_all_parameters().get("paths") or {}
        conf = paths.get("llm_raw_dump_dir")
    if isinstance(conf, str) and conf.strip():
        p = Path(conf)
        return p if p.is_absolute() else (ROOT / p)
    return ROOT / "local_logs" / "raw_api_responses"


def _safe_preview(txt: Optional[str], n: int = 400) -> Optional[str]:
    if not isinstance(txt, str):
        return None
    t = txt.strip()
    if not t:
        return None
    return t[:n] + ("…[truncated]" if len(t) > n else "")


def _dump_raw_response(
    *,
    channel: str,
    model: str,
    prompt: str,
    text: str,
    usage: Optional[Dict[str, Any]],
    finish_reason: Optional[str] = None,
) -> None:
    if not _raw_dump_enabled():
        return
    try:
        out_dir = _raw_dump_dir()
        out_dir.mkdir(parents=True, exist_ok=True)
        ts = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%f")
        out_path = out_dir / f"raw_response_{channel}_{model}_{ts}.json"

        payload = {
            "channel": channel,  # genai | stub
            "model": model,
            "timestamp_utc": ts,
            "prompt_preview": _safe_preview(prompt, 800),
            "text_preview": _safe_preview(text, 800),
            "usage": usage or {},
            "finish_reason": finish_reason,
        }

        with out_path.open("w", encoding="utf-8") as f:
            json.dump(payload, f, ensure_ascii=False, indent=2, default=str)

        logger.info("llm_raw_dump_saved", path=str(out_path))
    except OSError as e:
        logger.warning("llm_raw_dump_failed", error=str(e))


# ---------------------------------------------------------------------------
# Clients
# ---------------------------------------------------------------------------
class LLMClient:
    """Base class: lifecycle + the generate_json contract."""

    model: str = DEFAULT_MODEL

    def generate_json(self, prompt: str, response_schema: Dict[str, Any]) -> LLMText:
        raise NotImplementedError

    def close(self) -> None:
        """Release backend resources. Safe to call more than once."""

    def __enter__(self) -> "LLMClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


def _extract_text(resp: Any) -> tuple[str, Optional[str]]:
    """Return (text, finish_reason). Blocked/empty candidates yield ''."""
    finish_reason: Optional[str] = None
    candidates = getattr(resp, "candidates", None) or []
    if candidates:
        finish_reason = str(getattr(candidates[0], "finish_reason", None))
    try:
        txt = resp.text
    except ValueError:
        # The SDK raises ValueError from .text when no candidate has text parts
        # (safety block, MAX_TOKENS with empty output, ...).
        logger.warning("gemini_empty_text", reason="exception_on_text_accessor", finish_reason=finish_reason)
        return "", finish_reason
    if not txt or not str(txt).strip():
        logger.warning("gemini_empty_text", reason="blank_text_returned", finish_reason=finish_reason)
        return "", finish_reason
    return str(txt).strip(), finish_reason


class GeminiClient(LLMClient):
    """google-generativeai client with JSON-constrained output.

    One call per generate_json(); no retries. Transport errors, timeouts and
    API errors surface as LLMBackendError.
    """

    def __init__(
        self,
        api_key: str,
        *,
        model: str = DEFAULT_MODEL,
        temperature: float = 0.4,
        top_p: float = 0.9,
        max_output_tokens: int = 8192,
        timeout_seconds: int = 60,
    ) -> None:
        if not api_key:
            raise LLMBackendError("GeminiClient requires an API key")
        # google-generativeai keeps its transport configuration process-wide;
        # the client owns the only call to configure().
        genai.configure(api_key=api_key)
        self.model = model
        self.temperature = temperature
        self.top_p = top_p
        self.max_output_tokens = max_output_tokens
        self.timeout_seconds = timeout_seconds
        self._model: Any = genai.GenerativeModel(model)
        self._closed = False

    def generate_json(self, prompt: str, response_schema: Dict[str, Any]) -> LLMText:
        if self._closed:
            raise LLMBackendError("GeminiClient is closed")

        gen_cfg = GenerationConfig(
            temperature=self.temperature,
            top_p=self.top_p,
            max_output_tokens=self.max_output_tokens,
            response_mime_type="application/json",
            response_schema=response_schema,
        )
        req_opts = RequestOptions(timeout=self.timeout_seconds)

        logger.info(
            "llm_real_call_start",
            module="google-generativeai",
            model=self.model,
            temperature=self.temperature,
            max_output_tokens=self.max_output_tokens,
            timeout=self.timeout_seconds,
        )

        try:
            resp = self._model.generate_content(
                prompt,
                generation_config=gen_cfg,
                request_options=req_opts,
            )
        except Exception as e:
            logger.exception(
                "llm_real_call_failed",
                module="google-generativeai",
                model=self.model,
                error=str(e),
            )
            raise LLMBackendError(f"{type(e).__name__}: {e}") from e

        text, finish_reason = _extract_text(resp)

        um = getattr(resp, "usage_metadata", None)
        usage = {
            "prompt_tokens": getattr(um, "prompt_token_count", None) if um else None,
            "completion_tokens": getattr(um, "candidates_token_count", None) if um else None,
            "total_tokens": getattr(um, "total_token_count", None) if um else None,
        }

        logger.info(
            "llm_real_call_success",
            module="google-generativeai",
            model=self.model,
            result_preview=text[:200],
            finish_reason=finish_reason,
            prompt_tokens=usage["prompt_tokens"],
            output_tokens=usage["completion_tokens"],
            total_tokens=usage["total_tokens"],
        )

        _dump_raw_response(
            channel="genai",
            model=self.model,
            prompt=prompt,
            text=text,
            usage=usage,
            finish_reason=finish_reason,
        )

        return LLMText(text, usage=usage, finish_reason=finish_reason, raw=resp)

    def close(self) -> None:
        self._closed = True
        self._model = None


def _stub_value(schema: Dict[str, Any], key: str, model: str) -> Any:
    type_ = str(schema.get("type", "STRING")).upper()
    if type_ == "OBJECT":
        props = schema.get("properties") or {}
        return {k: _stub_value(v, k, model) for k, v in props.items()}
    if type_ == "ARRAY":
        return [_stub_value(schema.get("items") or {}, f"{key}_{i}", model) for i in (1, 2, 3)]
    if type_ in ("INTEGER", "NUMBER"):
        return 0
    if type_ == "BOOLEAN":
        return False
    return f"[STUB:{model}] {key}"


class StubLLMClient(LLMClient):
    """Offline client: schema-conformant placeholder JSON, no network."""

    def __init__(self, model: str = DEFAULT_MODEL) -> None:
        self.model = model

    def generate_json(self, prompt: str, response_schema: Dict[str, Any]) -> LLMText:
        logger.info("llm_stub_call", model=self.model, prompt_chars=len(prompt))
        text = json.dumps(_stub_value(response_schema, "root", self.model), ensure_ascii=False)
        usage = {"prompt_tokens": None, "completion_tokens": None, "total_tokens": None}
        _dump_raw_response(channel="stub", model=self.model, prompt=prompt, text=text, usage=usage)
        return LLMText(text, usage=usage)


class UnconfiguredLLMClient(LLMClient):
    """Stands in for the real client when no API key is configured; every call fails."""

    def __init__(self, model: str = DEFAULT_MODEL) -> None:
        self.model = model

    def generate_json(self, prompt: str, response_schema: Dict[str, Any]) -> LLMText:
        logger.warning("llm_call_without_api_key", model=self.model)
        raise LLMBackendError("No API key configured for the generation backend")


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------
def build_llm_client(
    gen_cfg: Optional[Dict[str, Any]] = None,
    *,
    api_key: Optional[str] = None,
) -> LLMClient:
    """Choose and construct the LLM client from the `generation` config."""
    cfg = gen_cfg if gen_cfg is not None else load_generation_params()
    engine_params = map_engine_params(cfg)
    model = engine_params.get("model", DEFAULT_MODEL)

    if cfg.get("use_stub") is True:
        logger.info("llm_stub_enabled_by_generation_config", model=model)
        return StubLLMClient(model=model)

    key = api_key or resolve_api_key()
    if not key:
        logger.warning("llm_api_key_missing", model=model)
        return UnconfiguredLLMClient(model=model)

    logger.info("using_real_llm_client", model=model)
    return GeminiClient(
        key,
        model=model,
        temperature=engine_params.get("temperature", 0.4),
        top_p=engine_params.get("top_p", 0.9),
        max_output_tokens=engine_params.get("max_output_tokens", 8192),
        timeout_seconds=engine_params.get("timeout_seconds", 60),
    )


__all__ = [
    "DEFAULT_MODEL",
    "LLMBackendError",
    "LLMText",
    "LLMClient",
    "GeminiClient",
    "StubLLMClient",
    "UnconfiguredLLMClient",
    "build_llm_client",
    "resolve_api_key",
]
