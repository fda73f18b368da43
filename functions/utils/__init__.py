"""
Utility helpers: configuration, skills parsing, prompt safety, LLM client.
"""

from .skills_formatting import flatten_skills, parse_other_skills

__all__ = [
    "flatten_skills",
    "parse_other_skills",
]
