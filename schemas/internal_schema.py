"""Internal schemas for validation results and the generation pipeline.

These models are not part of the public form contract. They structure the
signals passed between the validator, the generation gateway and the
orchestrator in a consistent, type-safe way.

**Document types**

Two documents can be generated for a CV record:

1. ``resumeDoc``         → 履歴書 (Rirekisho), stored in ``formatted_resume_doc``
2. ``careerHistoryDoc``  → 職務経歴書 (Shokumu Keirekisho), stored in ``career_history_doc``

The enum value doubles as the JSON key the backend must return, so the
output schema declared to the backend and the parsing in Stage B can never
drift apart.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List

from pydantic import BaseModel, Field

from schemas.input_schema import Certification, CvFormInput, Education, Experience, PersonalInfo
from functions.utils.skills_formatting import flatten_skills


# ---------------------------------------------------------------------------
# Security / Prompt Injection
# ---------------------------------------------------------------------------


class InjectionDetectionResult(BaseModel):
    """Standardized result for prompt injection detection.

    Attributes:
        is_safe:
            False when the scanned text matched a critical pattern.
        detected_patterns:
            Tagged pattern identifiers that triggered, e.g.
            "CRITICAL: ignore\\s+previous".
        risk_score:
            Normalized risk score in [0.0, 1.0].
    """

    is_safe: bool = Field(..., description="True if no critical pattern matched.")
    detected_patterns: List[str] = Field(default_factory=list)
    risk_score: float = Field(0.0, ge=0.0, le=1.0)

    @property
    def has_findings(self) -> bool:
        """Return True if any patterns were triggered."""
        return bool(self.detected_patterns)

    @classmethod
    def safe(cls) -> "InjectionDetectionResult":
        """Convenience factory for a clean 'no issues' result."""
        return cls(is_safe=True, detected_patterns=[], risk_score=0.0)

    @classmethod
    def from_findings(
        cls,
        *,
        is_safe: bool,
        detected_patterns: list[str] | None = None,
        risk_score: float = 0.0,
    ) -> "InjectionDetectionResult":
        return cls(
            is_safe=is_safe and risk_score < 0.8,
            detected_patterns=detected_patterns or [],
            risk_score=risk_score,
        )

    def merge(self, other: "InjectionDetectionResult") -> "InjectionDetectionResult":
        """Merge two detection results, keeping max risk and union of patterns."""
        combined_patterns = list(
            dict.fromkeys(self.detected_patterns + other.detected_patterns)
        )
        max_risk = max(self.risk_score, other.risk_score)
        return InjectionDetectionResult(
            is_safe=(max_risk < 0.8),
            detected_patterns=combined_patterns,
            risk_score=max_risk,
        )


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class FieldViolation(BaseModel):
    """A single failing field in a submitted form.

    Attributes:
        path:
            Dotted path to the field, with list indices, e.g.
            ``personal_info.email`` or ``education.0.major``.
        message:
            Human-readable reason, e.g. ``Major is required``.
    """

    path: str
    message: str


class ValidationResult(BaseModel):
    """Result of Stage A validation.

    Produced by FormValidator.check and consumed by callers that want a
    non-raising view (e.g. a form pre-check endpoint).
    """

    is_valid: bool = Field(..., description="True if the form can be saved.")
    violations: List[FieldViolation] = Field(
        default_factory=list,
        description="Every failing field, in check-precedence order.",
    )

    @property
    def has_errors(self) -> bool:
        """Return True if there are any violations."""
        return bool(self.violations)


# ---------------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------------


class DocumentType(str, Enum):
    """Generated document kinds."""

    RESUME_DOC = "resumeDoc"
    CAREER_HISTORY_DOC = "careerHistoryDoc"

    @property
    def record_field(self) -> str:
        """Name of the ResumeRecord field holding this document."""
        return _RECORD_FIELDS[self]


_RECORD_FIELDS: Dict[DocumentType, str] = {
    DocumentType.RESUME_DOC: "formatted_resume_doc",
    DocumentType.CAREER_HISTORY_DOC: "career_history_doc",
}


class GenerationRequest(BaseModel):
    """Structured input for one generation call.

    Same facts as the form, with the skills block flattened into a single
    ordered list of names.
    """

    personal_info: PersonalInfo
    job_title: str
    education: List[Education]
    experience: List[Experience] = Field(default_factory=list)
    skills: List[str] = Field(default_factory=list)
    certifications: List[Certification] = Field(default_factory=list)
    goals: str
    personal_interests: str | None = None

    @classmethod
    def from_form(cls, form: CvFormInput) -> "GenerationRequest":
        """Derive the generation input from a validated form."""
        return cls(
            personal_info=form.personal_info,
            job_title=form.job_title,
            education=form.education,
            experience=form.experience,
            skills=flatten_skills(form.skills.selected, form.skills.other),
            certifications=form.certifications,
            goals=form.goals,
            personal_interests=form.personal_interests,
        )


class GenerationResult(BaseModel):
    """Documents returned by a successful generation call.

    Only the requested document types are populated; each populated field is
    a non-empty string.
    """

    resume_doc: str | None = None
    career_history_doc: str | None = None

    def get(self, doc_type: DocumentType) -> str | None:
        if doc_type is DocumentType.RESUME_DOC:
            return self.resume_doc
        return self.career_history_doc

    def as_record_update(self) -> Dict[str, Any]:
        """Map populated documents to ResumeRecord field names."""
        update: Dict[str, Any] = {}
        for doc_type in DocumentType:
            text = self.get(doc_type)
            if text is not None:
                update[doc_type.record_field] = text
        return update


__all__ = [
    "FieldViolation",
    "ValidationResult",
    "DocumentType",
    "GenerationRequest",
    "GenerationResult",
]
