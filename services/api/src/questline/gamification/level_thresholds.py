"""Level curve and computation.

Every level costs a flat XP_PER_LEVEL; the client XP bar renders the same
curve, so keep the two in step.
"""

from __future__ import annotations

XP_PER_LEVEL = 1000

LEVEL_TITLES: list[tuple[int, str]] = [
    (1, "Novice"),
    (3, "Apprentice"),
    (5, "Adventurer"),
    (10, "Pathfinder"),
    (20, "Champion"),
    (35, "Legend"),
    (50, "Mythic"),
]


def level_for_xp(total_xp: int) -> int:
    """Level 1 starts at 0 XP; each further XP_PER_LEVEL adds one level."""
    return max(total_xp, 0) // XP_PER_LEVEL + 1


def title_for_level(level: int) -> str:
    title = LEVEL_TITLES[0][1]
    for min_level, name in LEVEL_TITLES:
        if level >= min_level:
            title = name
    return title


def compute_level(total_xp: int) -> dict:
    """Compute level info from total XP."""
    level = level_for_xp(total_xp)
    xp_into_level = max(total_xp, 0) - (level - 1) * XP_PER_LEVEL
    return {
        "level": level,
        "title": title_for_level(level),
        "xp_into_level": xp_into_level,
        "xp_for_level": XP_PER_LEVEL,
        "next_level": level + 1,
        "next_title": title_for_level(level + 1),
    }
