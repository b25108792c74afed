"""Prompt validation for user-supplied edit instructions.

WHY: Prompts arrive from slash commands and modal inputs. Empty or
oversized prompts waste a model call, and a small list of obviously
disallowed terms is cheaper to reject locally than to round-trip
through the provider's safety filter.

RULES:
- Prompts are trimmed; the trimmed value is what gets used
- Maximum length is 500 characters (matches the modal's max_length)
- Returns (prompt, None) on success, (None, error message) on failure
"""

from __future__ import annotations

import re
from typing import Optional, Tuple

MAX_PROMPT_LENGTH = 500

_FORBIDDEN_PATTERNS = (
    re.compile(r"\b(nude|naked|nsfw|sexual|explicit)\b", re.IGNORECASE),
    re.compile(r"\b(violence|violent|kill|death|blood)\b", re.IGNORECASE),
    re.compile(r"\b(hate|racist|offensive|inappropriate)\b", re.IGNORECASE),
)


def validate_prompt(prompt: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    if not prompt or not isinstance(prompt, str):
        return None, "Prompt must be a non-empty string"

    trimmed = prompt.strip()
    if not trimmed:
        return None, "Prompt cannot be empty"

    if len(trimmed) > MAX_PROMPT_LENGTH:
        return None, "Prompt must be {} characters or less".format(MAX_PROMPT_LENGTH)

    for pattern in _FORBIDDEN_PATTERNS:
        if pattern.search(trimmed):
            return None, "Prompt contains inappropriate content"

    return trimmed, None
