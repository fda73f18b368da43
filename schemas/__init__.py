"""Schema definitions for the CV document service."""

from schemas.input_schema import (
    SKILL_OPTIONS,
    Certification,
    CvFormInput,
    Education,
    Experience,
    ExperienceSummaryInput,
    Gender,
    PersonalInfo,
    SkillSuggestionInput,
    Skills,
)

__all__ = [
    # Input schemas
    "SKILL_OPTIONS",
    "CvFormInput",
    "PersonalInfo",
    "Gender",
    "Education",
    "Experience",
    "Certification",
    "Skills",
    "SkillSuggestionInput",
    "ExperienceSummaryInput",
]
