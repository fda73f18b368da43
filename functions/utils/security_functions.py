"""
Prompt Safety Helpers
=====================

Lightweight functions for cleaning user-provided text before it is
interpolated into a generation prompt, and for flagging content that looks
like an attempt to steer the model (prompt injection).

Two complementary strategies:

1. Sanitization
   - Removes non-whitespace control characters and trims lines, while
     keeping line breaks (responsibilities and goals are often multi-line).

2. Pattern-based detection
   - Regex patterns (critical and suspicious) loaded from
     `parameters/parameters.yaml`, allowing updates without code changes.
   - Detection is advisory: the generation gateway logs findings, it does
     not reject the request. Form validation already decided the input is
     well-formed.

Configuration
-------------
    security:
      control_chars_except_whitespace: "<regex>"
      critical_patterns: [...]
      suspicious_patterns: [...]
"""

from __future__ import annotations

import re
from typing import Any

from functions.utils.common import load_all_parameters
from schemas.internal_schema import InjectionDetectionResult

_DEFAULT_CONTROL_CHARS = r"[\x00-\x08\x0B-\x0C\x0E-\x1F\x7F]"


def _security_cfg() -> dict[str, Any]:
    cfg = load_all_parameters().get("security") or {}
    return cfg if isinstance(cfg, dict) else {}


def _patterns(key: str) -> tuple[str, ...]:
    return tuple(_security_cfg().get(key) or ())


# ---------------------------------------------------------------------------
# Sanitization
# ---------------------------------------------------------------------------


def sanitize_prompt_text(text: str) -> str:
    """
    Clean a single user-provided string for prompt interpolation.

    - Removes non-whitespace control characters
    - Normalizes CRLF / CR to LF
    - Strips trailing spaces on each line and collapses 3+ blank lines
    """
    if not text:
        return ""
    control = _security_cfg().get("control_chars_except_whitespace") or _DEFAULT_CONTROL_CHARS
    v = text.replace("\r\n", "\n").replace("\r", "\n")
    v = re.sub(control, "", v)
    v = "\n".join(line.rstrip() for line in v.split("\n"))
    v = re.sub(r"\n{3,}", "\n\n", v)
    return v.strip()


# ---------------------------------------------------------------------------
# Detection logic
# ---------------------------------------------------------------------------


def detect_injection(text: str) -> InjectionDetectionResult:
    """
    Analyze a single string for potential prompt injection.

    Returns:
        InjectionDetectionResult:
            - `detected_patterns` contains tagged pattern IDs, e.g.
              "CRITICAL: <regex>", "SUSPICIOUS: <regex>"
            - `risk_score` is 1.0 for critical matches, 0.6 for suspicious
              matches, 0.0 otherwise
    """
    if not isinstance(text, str) or not text.strip():
        return InjectionDetectionResult.safe()

    detected: list[str] = []
    risk_score = 0.0

    for pattern in _patterns("critical_patterns"):
        if re.search(pattern, text, re.IGNORECASE):
            detected.append(f"CRITICAL: {pattern}")
            risk_score = 1.0

    if risk_score < 1.0:
        for pattern in _patterns("suspicious_patterns"):
            if re.search(pattern, text, re.IGNORECASE):
                detected.append(f"SUSPICIOUS: {pattern}")
                risk_score = max(risk_score, 0.6)

    return InjectionDetectionResult.from_findings(
        is_safe=(risk_score < 0.8),
        detected_patterns=list(dict.fromkeys(detected)),
        risk_score=risk_score,
    )


def scan_dict_for_injection(data: Any) -> InjectionDetectionResult:
    """
    Recursively scan nested JSON-like data, aggregating findings from every
    string value into a single result (max risk, union of patterns).
    """
    result = InjectionDetectionResult.safe()

    def _scan(v: Any) -> None:
        nonlocal result
        if isinstance(v, str):
            found = detect_injection(v)
            if found.has_findings:
                result = result.merge(found)
        elif isinstance(v, dict):
            for vv in v.values():
                _scan(vv)
        elif isinstance(v, list):
            for vv in v:
                _scan(vv)

    _scan(data)
    return result


__all__ = [
    "sanitize_prompt_text",
    "detect_injection",
    "scan_dict_for_injection",
]
