# functions/utils/prompts_builder.py

from __future__ import annotations

from functools import lru_cache
from typing import Any, Dict, Iterable, List, Sequence

import structlog

from functions.utils.common import PARAMETERS_DIR, ROOT, load_generation_params, load_yaml_dict
from functions.utils.security_functions import sanitize_prompt_text
from functions.utils.skills_formatting import format_plain_skill_bullets
from schemas.internal_schema import DocumentType, GenerationRequest

logger = structlog.get_logger(__name__)

# Output keys for the auxiliary flows
SKILLS_KEY = "skills"
SUMMARY_KEY = "summary"

# Used only when prompts.yaml is missing a key.
_DEFAULT_PROMPTS: Dict[str, str] = {
    "preamble": "You are an expert in creating Japanese job-application documents.",
    DocumentType.RESUME_DOC.value: (
        'Generate a draft 履歴書 (Rirekisho) for the position of "{job_title}". '
        "Format the document as Markdown."
    ),
    DocumentType.CAREER_HISTORY_DOC.value: (
        'Generate a draft 職務経歴書 (Shokumu Keirekisho) for the position of "{job_title}". '
        "Format the document as Markdown."
    ),
    "combined": (
        'Generate drafts of a 履歴書 and a 職務経歴書 for the position of "{job_title}". '
        "Format both documents as Markdown."
    ),
    "suggest_skills": (
        "Suggest a list of 5 to 10 relevant skills for the job title below.\n\n"
        "Job Title: {job_title}"
    ),
    "summarize_experience": (
        "Summarize the following work experience in a concise manner.\n\n"
        "Work Experience: {work_experience}"
    ),
    "json_output_suffix": "Return ONLY a JSON object with these keys:",
}


# ---------------------------------------------------------------------------
# Prompt templates (parameters/prompts.yaml)
# ---------------------------------------------------------------------------

@lru_cache(maxsize=4)
def _load_prompts_from_file(prompts_file: str) -> dict[str, str]:
    """
    Load prompt templates from parameters/<prompts_file>.

    Expected structure (top-level mapping):

        preamble: |
          ...
        resumeDoc: |
          ... {job_title} ...
        careerHistoryDoc: |
          ...
        combined: |
          ...
        suggest_skills: |
          ... {job_title} ...
        summarize_experience: |
          ... {work_experience} ...
        json_output_suffix: |
          ...

    Returns {} on any error.
    """
    candidate = PARAMETERS_DIR / prompts_file
    if not candidate.exists():
        # prompts_file might already contain a subpath
        candidate_alt = ROOT / prompts_file
        if candidate_alt.exists():
            candidate = candidate_alt

    data = load_yaml_dict(candidate)
    return {str(k): str(v) for k, v in data.items() if v is not None}


def load_prompts_config(generation_params: Dict[str, Any] | None = None) -> dict[str, str]:
    """
    Public, cached accessor for prompt templates, with built-in defaults for
    any key prompts.yaml does not define.
    """
    gen_cfg = generation_params if generation_params is not None else load_generation_params()
    prompts_file = str(gen_cfg.get("prompts_file") or "prompts.yaml")

    merged = dict(_DEFAULT_PROMPTS)
    loaded = _load_prompts_from_file(prompts_file)
    if not loaded:
        logger.warning("prompts_config_empty_using_defaults", prompts_file=prompts_file)
    merged.update({k: v for k, v in loaded.items() if v.strip()})
    return merged


def _template(prompts_cfg: dict[str, str], key: str) -> str:
    return (prompts_cfg.get(key) or _DEFAULT_PROMPTS[key]).strip()


# ---------------------------------------------------------------------------
# Output schemas declared to the backend
# ---------------------------------------------------------------------------

def build_output_schema(keys: Iterable[str]) -> Dict[str, Any]:
    """Object schema with one required, non-empty string property per key."""
    key_list = list(dict.fromkeys(keys))
    return {
        "type": "OBJECT",
        "properties": {k: {"type": "STRING"} for k in key_list},
        "required": key_list,
    }


def document_output_schema(doc_types: Sequence[DocumentType]) -> Dict[str, Any]:
    return build_output_schema(dt.value for dt in doc_types)


def skills_output_schema() -> Dict[str, Any]:
    return {
        "type": "OBJECT",
        "properties": {SKILLS_KEY: {"type": "ARRAY", "items": {"type": "STRING"}}},
        "required": [SKILLS_KEY],
    }


def summary_output_schema() -> Dict[str, Any]:
    return build_output_schema([SUMMARY_KEY])


# ---------------------------------------------------------------------------
# Structured candidate blocks
# ---------------------------------------------------------------------------

def _clean(value: Any) -> str:
    if value is None:
        return ""
    if hasattr(value, "value"):  # enums (Gender)
        value = value.value
    return sanitize_prompt_text(str(value))


def _indent(text: str, prefix: str = "    ") -> str:
    return "\n".join(prefix + line for line in text.split("\n"))


def _personal_info_lines(request: GenerationRequest) -> List[str]:
    info = request.personal_info
    lines = [
        f"- Name: {_clean(info.name)}",
        f"- Email: {_clean(info.email)}",
        f"- Phone: {_clean(info.phone)}",
        f"- Address: {_clean(info.address)}",
    ]
    if info.dob:
        lines.append(f"- Date of Birth: {_clean(info.dob)}")
    if info.gender:
        lines.append(f"- Gender: {_clean(info.gender)}")
    return lines


def _education_lines(request: GenerationRequest) -> List[str]:
    return [
        f"- {_clean(e.graduation_date)}: {_clean(e.institution)}, "
        f"{_clean(e.degree)} in {_clean(e.major)}"
        for e in request.education
    ]


def _experience_lines(request: GenerationRequest) -> List[str]:
    if not request.experience:
        return ["- (No work experience provided)"]
    lines: List[str] = []
    for e in request.experience:
        lines.append(
            f"- {_clean(e.start_date)} – {_clean(e.end_date)}: "
            f"{_clean(e.position)} at {_clean(e.company)}"
        )
        lines.append("  Responsibilities:")
        lines.append(_indent(_clean(e.responsibilities)))
    return lines


def _certification_lines(request: GenerationRequest) -> List[str]:
    if not request.certifications:
        return ["- (None)"]
    return [f"- {_clean(c.date)}: {_clean(c.name)}" for c in request.certifications]


def _skill_lines(request: GenerationRequest) -> List[str]:
    bullets = format_plain_skill_bullets(_clean(s) for s in request.skills)
    return bullets.split("\n") if bullets else ["- (None)"]


def _json_contract(prompts_cfg: dict[str, str], keys: Sequence[str]) -> List[str]:
    lines = [_template(prompts_cfg, "json_output_suffix")]
    lines.extend(f'- "{k}"' for k in keys)
    return lines


# ---------------------------------------------------------------------------
# Prompt builders
# ---------------------------------------------------------------------------

def build_document_prompt(
    request: GenerationRequest,
    doc_types: Sequence[DocumentType],
    prompts_cfg: dict[str, str] | None = None,
) -> str:
    """
    Render the generation prompt for one document type, or the combined
    prompt when both types are requested.

    Layout:
        <preamble>
        === Target Position ===
        === Personal Information ===
        === Education ===
        === Work Experience ===
        === Skills ===
        === Certifications ===
        === Career Goals ===
        === Personal Interests ===   (only when provided)
        === Output Requirements ===
        <document template>
        <JSON output contract>
    """
    if not doc_types:
        raise ValueError("build_document_prompt requires at least one document type")

    cfg = prompts_cfg if prompts_cfg is not None else load_prompts_config()
    template_key = doc_types[0].value if len(doc_types) == 1 else "combined"
    job_title = _clean(request.job_title)
    instructions = _template(cfg, template_key).replace("{job_title}", job_title)

    lines: List[str] = [
        _template(cfg, "preamble"),
        "",
        "=== Target Position ===",
        job_title,
        "",
        "=== Personal Information ===",
        *_personal_info_lines(request),
        "",
        "=== Education ===",
        *_education_lines(request),
        "",
        "=== Work Experience ===",
        *_experience_lines(request),
        "",
        "=== Skills ===",
        *_skill_lines(request),
        "",
        "=== Certifications ===",
        *_certification_lines(request),
        "",
        "=== Career Goals ===",
        _clean(request.goals),
    ]

    if request.personal_interests:
        lines.extend(["", "=== Personal Interests ===", _clean(request.personal_interests)])

    lines.extend(["", "=== Output Requirements ===", instructions, ""])
    lines.extend(_json_contract(cfg, [dt.value for dt in doc_types]))

    prompt = "\n".join(lines)
    logger.debug(
        "document_prompt_built",
        template=template_key,
        doc_types=[dt.value for dt in doc_types],
        prompt_chars=len(prompt),
    )
    return prompt


def build_skill_suggestion_prompt(
    job_title: str,
    prompts_cfg: dict[str, str] | None = None,
) -> str:
    cfg = prompts_cfg if prompts_cfg is not None else load_prompts_config()
    body = _template(cfg, "suggest_skills").replace("{job_title}", _clean(job_title))
    return "\n".join([body, "", f'Return ONLY a JSON object of the form {{"{SKILLS_KEY}": ["<skill>", ...]}}.'])


def build_experience_summary_prompt(
    work_experience: str,
    prompts_cfg: dict[str, str] | None = None,
) -> str:
    cfg = prompts_cfg if prompts_cfg is not None else load_prompts_config()
    body = _template(cfg, "summarize_experience").replace(
        "{work_experience}", _clean(work_experience)
    )
    return "\n".join([body, "", f'Return ONLY a JSON object of the form {{"{SUMMARY_KEY}": "<summary>"}}.'])


__all__ = [
    "SKILLS_KEY",
    "SUMMARY_KEY",
    "load_prompts_config",
    "build_output_schema",
    "document_output_schema",
    "skills_output_schema",
    "summary_output_schema",
    "build_document_prompt",
    "build_skill_suggestion_prompt",
    "build_experience_summary_prompt",
]
