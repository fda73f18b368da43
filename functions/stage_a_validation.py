"""Stage A: Form validation.

This module is responsible for:
- Validating a raw CV form submission against schemas.input_schema.CvFormInput
- Enforcing the closed skill vocabulary (configurable)
- Turning every failure into a FieldViolation with a human-readable reason
- Reporting *all* violations at once, ordered by check precedence

Check precedence (violations are sorted into this order):
    1. required personal-info strings (name, phone, address, ...)
    2. email format
    3. target job title
    4. at least one education entry
    5. per-entry required fields: education → experience → certifications
       (skills vocabulary sits between experience and certifications)
    6. non-empty career goals

Stage A is pure: it never touches the store or the generation backend, and
it never returns a partially validated object.
"""

from __future__ import annotations

import re
from typing import Any, Dict, List, Mapping, Sequence

import structlog
from pydantic import BaseModel, ValidationError

from functions.exceptions import CvValidationError
from schemas.input_schema import SKILL_OPTIONS, CvFormInput
from schemas.internal_schema import FieldViolation, ValidationResult

logger = structlog.get_logger(__name__).bind(module="stage_a_validation")


# Field labels keyed by index-free path ("education.*.major").
FIELD_LABELS: Dict[str, str] = {
    "personal_info": "Personal information",
    "personal_info.name": "Full name",
    "personal_info.email": "Email",
    "personal_info.phone": "Phone number",
    "personal_info.address": "Address",
    "personal_info.dob": "Date of birth",
    "personal_info.gender": "Gender",
    "job_title": "Job title",
    "education": "Education",
    "education.*.institution": "Institution",
    "education.*.degree": "Degree",
    "education.*.major": "Major",
    "education.*.graduation_date": "Graduation date",
    "experience": "Work experience",
    "experience.*.company": "Company",
    "experience.*.position": "Position",
    "experience.*.start_date": "Start date",
    "experience.*.end_date": "End date",
    "experience.*.responsibilities": "Responsibilities",
    "skills": "Skills",
    "skills.selected": "Selected skills",
    "skills.other": "Other skills",
    "certifications": "Certifications",
    "certifications.*.name": "Certification name",
    "certifications.*.date": "Certification date",
    "goals": "Career goals",
    "personal_interests": "Personal interests",
}

# Messages that read better than "<label> is required".
REQUIRED_MESSAGES: Dict[str, str] = {
    "education": "At least one education entry is required",
    "experience.*.responsibilities": "Responsibilities are required",
    "goals": "Career goals are required",
}

_INDEX = re.compile(r"\.\d+(?=\.|$)")


def _normalize_path(path: str) -> str:
    return _INDEX.sub(".*", path)


def _precedence(path: str) -> int:
    """Rank a violation path by the documented check order."""
    norm = _normalize_path(path)
    if norm == "personal_info.email":
        return 1
    if norm.startswith("personal_info"):
        return 0
    if norm == "job_title":
        return 2
    if norm == "education":
        return 3
    if norm.startswith("education."):
        return 4
    if norm.startswith("experience"):
        return 5
    if norm.startswith("skills"):
        return 6
    if norm.startswith("certifications"):
        return 7
    if norm == "goals":
        return 8
    if norm == "personal_interests":
        return 9
    return 10


def _label_for(path: str) -> str:
    norm = _normalize_path(path)
    if norm in FIELD_LABELS:
        return FIELD_LABELS[norm]
    leaf = path.rsplit(".", 1)[-1]
    return leaf.replace("_", " ").capitalize()


def _message_for(error: Mapping[str, Any], path: str) -> str:
    """Translate one pydantic error into a form-level reason."""
    err_type = str(error.get("type", ""))
    ctx = error.get("ctx") or {}
    norm = _normalize_path(path)
    label = _label_for(path)

    if err_type in ("missing", "string_too_short", "too_short"):
        return REQUIRED_MESSAGES.get(norm, f"{label} is required")
    if norm == "personal_info.email":
        return "Invalid email address"
    if err_type == "enum" and ctx.get("expected"):
        return f"{label} must be one of: {ctx['expected']}"
    if err_type == "string_too_long":
        return f"{label} must be at most {ctx.get('max_length')} characters"
    if err_type == "too_long":
        return f"{label} allows at most {ctx.get('max_length')} entries"
    if err_type == "extra_forbidden":
        return f"Unknown field '{path}'"
    if err_type in ("model_type", "model_attributes_type", "dict_type"):
        return f"{label} must be an object"
    if err_type == "list_type":
        return f"{label} must be a list"
    if err_type == "string_type":
        return f"{label} must be text"
    return str(error.get("msg") or f"{label} is invalid")


def violations_from_pydantic(exc: ValidationError) -> List[FieldViolation]:
    """Convert a pydantic ValidationError into FieldViolations."""
    violations: List[FieldViolation] = []
    for error in exc.errors():
        path = ".".join(str(part) for part in error.get("loc", ()))
        violations.append(FieldViolation(path=path, message=_message_for(error, path)))
    return violations


class FormValidator:
    """
    Encapsulates Stage A logic:
    - Schema validation (CvFormInput)
    - Skill vocabulary enforcement
    - Precedence-ordered violation reporting
    """

    def __init__(self, validation_config: dict[str, Any] | None = None) -> None:
        self.logger = logger.bind(stage="A_validation")

        # Defaults, aligned with parameters.yaml
        default_validation_config: dict[str, Any] = {
            "enforce_skill_vocabulary": True,
            "skill_options": list(SKILL_OPTIONS),
        }
        if validation_config:
            default_validation_config.update(
                {k: v for k, v in validation_config.items() if v is not None}
            )

        self.validation_config = default_validation_config
        self.skill_options: tuple[str, ...] = tuple(
            self.validation_config.get("skill_options") or SKILL_OPTIONS
        )

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------
    @staticmethod
    def _as_mapping(raw: Any) -> Any:
        if isinstance(raw, BaseModel):
            return raw.model_dump(mode="json")
        return raw

    def _vocabulary_violations(self, raw: Any) -> List[FieldViolation]:
        """Selected skills must come from the closed vocabulary."""
        if not self.validation_config.get("enforce_skill_vocabulary", True):
            return []
        if not isinstance(raw, Mapping):
            return []
        skills = raw.get("skills")
        if not isinstance(skills, Mapping):
            return []
        selected = skills.get("selected")
        if not isinstance(selected, Sequence) or isinstance(selected, str):
            return []

        allowed = set(self.skill_options)
        violations: List[FieldViolation] = []
        for idx, tag in enumerate(selected):
            if not isinstance(tag, str) or not tag.strip():
                continue
            if tag.strip() not in allowed:
                violations.append(
                    FieldViolation(
                        path=f"skills.selected.{idx}",
                        message=f"'{tag.strip()}' is not a selectable skill; add it under other skills instead",
                    )
                )
        return violations

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------
    def check(self, raw_form_input: Any) -> tuple[CvFormInput | None, ValidationResult]:
        """Validate without raising. Returns (form or None, result)."""
        raw = self._as_mapping(raw_form_input)

        if not isinstance(raw, Mapping):
            violation = FieldViolation(path="", message="Form data must be an object")
            return None, ValidationResult(is_valid=False, violations=[violation])

        form: CvFormInput | None = None
        violations: List[FieldViolation] = []
        try:
            form = CvFormInput.model_validate(raw)
        except ValidationError as exc:
            violations.extend(violations_from_pydantic(exc))

        violations.extend(self._vocabulary_violations(raw))

        if violations:
            violations.sort(key=lambda v: _precedence(v.path))
            return None, ValidationResult(is_valid=False, violations=violations)

        return form, ValidationResult(is_valid=True)

    def validate(self, raw_form_input: Any) -> CvFormInput:
        """Validate a form submission or raise CvValidationError."""
        form, result = self.check(raw_form_input)
        if form is None:
            self.logger.warning(
                "form_validation_failed",
                violation_count=len(result.violations),
                paths=[v.path for v in result.violations],
            )
            raise CvValidationError(result.violations)
        return form


def validate_cv_form(
    raw_form_input: Any,
    validation_config: dict[str, Any] | None = None,
) -> CvFormInput:
    """Functional entrypoint: validate a raw form or raise CvValidationError."""
    return FormValidator(validation_config).validate(raw_form_input)


__all__ = [
    "FIELD_LABELS",
    "FormValidator",
    "validate_cv_form",
    "violations_from_pydantic",
]
