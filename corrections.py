"""Personal word corrections applied to remote transcriptions."""

from __future__ import annotations

import re
from typing import Mapping

from errors import InvalidInputError


def apply_corrections(text: str, corrections: Mapping[str, str]) -> str:
    """Replace whole-word, case-insensitive matches of each misheard word."""
    if not text or not corrections:
        return text
    # Longest first so multi-word phrases win over their parts.
    keys = sorted((k for k in corrections if k.strip()), key=len, reverse=True)
    if not keys:
        return text
    lookup = {k.lower(): corrections[k] for k in keys}
    pattern = re.compile(
        r"\b(" + "|".join(re.escape(k) for k in keys) + r")\b",
        flags=re.IGNORECASE,
    )
    return pattern.sub(lambda m: lookup[m.group(0).lower()], text)


def add_correction(corrections: dict[str, str], incorrect: str, correct: str) -> dict[str, str]:
    """Return a copy of ``corrections`` with one mapping added or replaced."""
    incorrect = incorrect.strip()
    correct = correct.strip()
    if not incorrect or not correct:
        raise InvalidInputError("both the misheard word and its correction are required")
    updated = {k: v for k, v in corrections.items() if k.lower() != incorrect.lower()}
    updated[incorrect] = correct
    return updated


def remove_correction(corrections: dict[str, str], incorrect: str) -> dict[str, str]:
    return {k: v for k, v in corrections.items() if k.lower() != incorrect.strip().lower()}
