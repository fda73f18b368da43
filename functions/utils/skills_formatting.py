# utils/skills_formatting.py

"""
Utility helpers for parsing and rendering the skills block of a CV form.

This module is intentionally kept free of any LLM, store, or I/O dependencies.
It focuses purely on **simple parsing** and **presentation** logic that the
generation gateway relies on.

Responsibilities
----------------
1. Parsing
   - parse_other_skills()   ← free-text addendum → ordered tokens

2. Flattening
   - flatten_skills()       ← selected tags ∪ free-text tokens

3. Presentation
   - format_plain_skill_bullets()

Design Principles
-----------------
- Pure functions only: no YAML loading, no LLM calls.
- Order is meaningful: selected tags keep the form's order, free-text tokens
  keep the order the user typed them.
"""

import re
from typing import Iterable, List

# ASCII comma plus the Japanese 読点 / fullwidth comma
_SKILL_SEPARATORS = re.compile(r"[,、，]")


def _skill_key(skill: str) -> str:
    """Case-insensitive, whitespace-normalized comparison key."""
    return " ".join(skill.split()).casefold()


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def parse_other_skills(other: str | None) -> List[str]:
    """Split the free-text addendum into trimmed, non-empty tokens."""
    if not other:
        return []
    return [token.strip() for token in _SKILL_SEPARATORS.split(other) if token.strip()]


# ---------------------------------------------------------------------------
# Flattening
# ---------------------------------------------------------------------------

def flatten_skills(selected: Iterable[str], other: str | None) -> List[str]:
    """
    Merge selected vocabulary tags and the free-text addendum into one list.

    - selected items first, in the given order (trimmed, blanks dropped)
    - then free-text items in the order typed
    - a free-text item that repeats an already included skill is dropped
      (case-insensitive)

    >>> flatten_skills(["React", "AWS"], "Figma, SQL, React")
    ['React', 'AWS', 'Figma', 'SQL']
    """
    result: List[str] = []
    seen: set[str] = set()

    for raw in selected:
        skill = (raw or "").strip()
        if not skill:
            continue
        result.append(skill)
        seen.add(_skill_key(skill))

    for skill in parse_other_skills(other):
        key = _skill_key(skill)
        if key in seen:
            continue
        seen.add(key)
        result.append(skill)

    return result


def dedupe_skill_names(skills: Iterable[str]) -> List[str]:
    """Trim, drop blanks and case-insensitive duplicates, keep first occurrence."""
    result: List[str] = []
    seen: set[str] = set()
    for raw in skills:
        skill = str(raw or "").strip()
        key = _skill_key(skill)
        if not skill or key in seen:
            continue
        seen.add(key)
        result.append(skill)
    return result


# ---------------------------------------------------------------------------
# Presentation helpers
# ---------------------------------------------------------------------------

def format_plain_skill_bullets(skills: Iterable[str]) -> str:
    """Render a simple bullet list from skill names."""
    lines = [f"- {name.strip()}" for name in skills if name and name.strip()]
    return "\n".join(lines)


__all__ = [
    "parse_other_skills",
    "flatten_skills",
    "dedupe_skill_names",
    "format_plain_skill_bullets",
]
