"""Input schema definitions for CV form submissions.

These models define the validated input contract between the presentation
layer (CV form with dynamic repeating sections) and the CV document
service. All fields are designed to be:
- Prompt-friendly (plain strings, bounded lengths)
- Faithful to what the user typed (dates stay free text, e.g. "2020年3月")
- Safe (whitespace trimmed, control characters removed, no unknown fields)

Repeating sections (education / experience / certifications) are ordered
lists of structurally identical entries. Client-side row ids that form
libraries attach to those entries are accepted and dropped.
"""

import re
from enum import Enum
from typing import Any

from pydantic import BaseModel, EmailStr, Field, field_validator

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B-\x0C\x0E-\x1F\x7F]")

# Closed vocabulary offered as checkboxes in the form. parameters.yaml
# (validation.skill_options) may override it.
SKILL_OPTIONS: tuple[str, ...] = (
    "Japanese (JLPT N1)",
    "Japanese (JLPT N2)",
    "English (Business Level)",
    "React",
    "Next.js",
    "TypeScript",
    "Node.js",
    "Python",
    "AWS",
    "Google Cloud Platform",
)


class Gender(str, Enum):
    """Gender as selectable on the 履歴書 form."""

    MALE = "male"
    FEMALE = "female"
    OTHER = "other"


class _FormModel(BaseModel):
    """Shared config: trim strings and strip control characters."""

    model_config = {"str_strip_whitespace": True, "extra": "ignore"}

    @field_validator("*", mode="before")
    @classmethod
    def remove_control_chars(cls, v: Any) -> Any:
        if isinstance(v, str):
            return _CONTROL_CHARS.sub("", v)
        return v


class PersonalInfo(_FormModel):
    """Contact block printed at the top of the 履歴書.

    `name`, `email`, `phone` and `address` are required; `dob` and
    `gender` are optional because many applicants leave them blank.
    """

    name: str = Field(..., min_length=1, max_length=100)
    email: EmailStr
    phone: str = Field(..., min_length=1, max_length=30)
    address: str = Field(..., min_length=1, max_length=300)
    dob: str | None = Field(None, max_length=50)
    gender: Gender | None = None

    @field_validator("dob", "gender", mode="before")
    @classmethod
    def empty_to_none(cls, v: Any) -> Any:
        """Forms submit '' for untouched optional inputs."""
        if isinstance(v, str) and not v.strip():
            return None
        return v


class Education(_FormModel):
    """One 学歴 row."""

    institution: str = Field(..., min_length=1, max_length=200)
    degree: str = Field(..., min_length=1, max_length=200)
    major: str = Field(..., min_length=1, max_length=200)
    graduation_date: str = Field(..., min_length=1, max_length=50)


class Experience(_FormModel):
    """One 職歴 row. `responsibilities` is free text (one item per line is common)."""

    company: str = Field(..., min_length=1, max_length=200)
    position: str = Field(..., min_length=1, max_length=200)
    start_date: str = Field(..., min_length=1, max_length=50)
    end_date: str = Field(..., min_length=1, max_length=50)
    responsibilities: str = Field(..., min_length=1, max_length=3000)


class Certification(_FormModel):
    """One 免許・資格 row."""

    name: str = Field(..., min_length=1, max_length=200)
    date: str = Field(..., min_length=1, max_length=50)


class Skills(_FormModel):
    """Selected vocabulary tags plus a comma-separated free-text addendum.

    Deduplication between the two happens when the generation input is
    derived (see functions.utils.skills_formatting.flatten_skills), not here.
    """

    selected: list[str] = Field(default_factory=list, max_length=50)
    other: str = Field("", max_length=1000)

    @field_validator("selected")
    @classmethod
    def drop_blank_tags(cls, v: list[str]) -> list[str]:
        return [s.strip() for s in v if s and s.strip()]

    @field_validator("other", mode="before")
    @classmethod
    def none_to_empty(cls, v: Any) -> Any:
        return "" if v is None else v


class CvFormInput(_FormModel):
    """The complete CV form as submitted by the user.

    - Enforces minimum evidence: ≥1 education entry, non-empty goals
    - Experience, certifications and personal interests may be empty
    - Forbids extra top-level fields
    """

    personal_info: PersonalInfo
    job_title: str = Field(..., min_length=1, max_length=200)
    education: list[Education] = Field(..., min_length=1, max_length=10)
    experience: list[Experience] = Field(default_factory=list, max_length=20)
    skills: Skills = Field(default_factory=Skills)
    certifications: list[Certification] = Field(default_factory=list, max_length=20)
    goals: str = Field(..., min_length=1, max_length=3000)
    personal_interests: str | None = Field(None, max_length=1000)

    model_config = {"str_strip_whitespace": True, "extra": "forbid"}

    @field_validator("experience", "certifications", mode="before")
    @classmethod
    def none_to_empty_list(cls, v: Any) -> Any:
        return [] if v is None else v

    @field_validator("personal_interests", mode="before")
    @classmethod
    def blank_interests_to_none(cls, v: Any) -> Any:
        if isinstance(v, str) and not v.strip():
            return None
        return v

    def form_fields(self) -> dict[str, Any]:
        """Plain-JSON view of the form fields, as persisted on the record."""
        return self.model_dump(mode="json")


class SkillSuggestionInput(_FormModel):
    """Job title for which relevant skills should be suggested."""

    job_title: str = Field(..., min_length=1, max_length=200)


class ExperienceSummaryInput(_FormModel):
    """Free-text work history to be condensed into a short summary."""

    work_experience: str = Field(..., min_length=1, max_length=5000)


__all__ = [
    "SKILL_OPTIONS",
    "Gender",
    "PersonalInfo",
    "Education",
    "Experience",
    "Certification",
    "Skills",
    "CvFormInput",
    "SkillSuggestionInput",
    "ExperienceSummaryInput",
]
