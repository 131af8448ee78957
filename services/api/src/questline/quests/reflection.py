"""Reflection text validation and spam heuristics."""

from __future__ import annotations

import re
from collections import Counter

from questline.config import get_settings
from questline.errors import InvalidReflection

SHORT_TEXT_LIMIT = 30
SINGLE_CHAR_RATIO = 0.85
REPEATED_WORD_RATIO = 0.7

_MASH_PATTERNS = [
    re.compile(r"^(.)\1{10,}$"),
    re.compile(r"(asdf|qwer|zxcv|hjkl){2,}"),
    re.compile(r"^(\w{1,3})\1{5,}$"),
]


def is_spam(text: str) -> bool:
    """Heuristic check for filler text. ``text`` is already trimmed."""
    compact = re.sub(r"\s+", "", text).lower()
    if not compact:
        return True

    if len(compact) < SHORT_TEXT_LIMIT:
        _, top = Counter(compact).most_common(1)[0]
        if top / len(compact) > SINGLE_CHAR_RATIO:
            return True

    if any(pattern.search(compact) for pattern in _MASH_PATTERNS):
        return True

    words = text.lower().split()
    if len(words) >= 3:
        _, top = Counter(words).most_common(1)[0]
        if top / len(words) > REPEATED_WORD_RATIO:
            return True

    return False


def validate_reflection(text: str | None) -> str:
    """Return the trimmed reflection or raise InvalidReflection."""
    settings = get_settings()
    cleaned = (text or "").strip()
    if len(cleaned) < settings.reflection_min_length:
        raise InvalidReflection(
            f"Reflection must be at least {settings.reflection_min_length} characters"
        )
    if len(cleaned) > settings.reflection_max_length:
        raise InvalidReflection(
            f"Reflection must be at most {settings.reflection_max_length} characters"
        )
    if is_spam(cleaned):
        raise InvalidReflection("Please write a genuine reflection")
    return cleaned
