"""Catalogue seed data: power-ups, badges and starter quests."""

from __future__ import annotations

import logging
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from questline.db.models import BadgeDefinition, PowerUp, Quest

logger = logging.getLogger(__name__)

POWER_UP_SEED_DATA: list[dict] = [
    {
        "slug": "xp_booster",
        "name": "XP Booster",
        "description": "Double XP on every quest for 24 hours",
        "effect_type": "xp_boost",
        "effect_value": 24,
        "price": Decimal("49.00"),
    },
    {
        "slug": "streak_shield",
        "name": "Streak Shield",
        "description": "Protects your streak through one missed day",
        "effect_type": "streak_freeze",
        "effect_value": 48,
        "price": Decimal("29.00"),
    },
    {
        "slug": "streak_insurance",
        "name": "Streak Insurance",
        "description": "Bring back a lost streak within 24 hours of losing it",
        "effect_type": "streak_save",
        "effect_value": 24,
        "price": Decimal("39.00"),
    },
]

BADGE_SEED_DATA: list[dict] = [
    {
        "slug": "first_quest",
        "name": "First Step",
        "description": "Complete your first quest",
        "category": "quests",
        "requirement_type": "quests_completed",
        "xp_reward": 25,
        "sort_order": 1,
    },
    {
        "slug": "habit_builder",
        "name": "Habit Builder",
        "description": "Complete 10 quests",
        "category": "quests",
        "requirement_type": "quests_completed",
        "xp_reward": 50,
        "sort_order": 2,
    },
    {
        "slug": "quest_veteran",
        "name": "Quest Veteran",
        "description": "Complete 50 quests",
        "category": "quests",
        "requirement_type": "quests_completed",
        "xp_reward": 150,
        "sort_order": 3,
    },
    {
        "slug": "challenge_finisher",
        "name": "Challenge Finisher",
        "description": "Complete a challenge",
        "category": "challenges",
        "requirement_type": "challenge_complete",
        "xp_reward": 0,
        "sort_order": 10,
    },
    {
        "slug": "premium_supporter",
        "name": "Supporter",
        "description": "Unlocked with Premium",
        "category": "premium",
        "requirement_type": "premium_unlock",
        "is_premium_only": True,
        "xp_reward": 0,
        "sort_order": 100,
    },
    {
        "slug": "premium_golden_heart",
        "name": "Golden Heart",
        "description": "A premium-only badge for members who keep the lights on",
        "category": "premium",
        "requirement_type": "premium_unlock",
        "is_premium_only": True,
        "xp_reward": 0,
        "sort_order": 101,
    },
]

QUEST_SEED_DATA: list[dict] = [
    {"title": "Gratitude", "content": "Write down three things you are grateful for today."},
    {"title": "Move", "content": "Take a 15 minute walk without your phone."},
    {"title": "Reach out", "content": "Send a kind message to someone you have not spoken to in a while."},
    {"title": "Declutter", "content": "Clear one surface in your home or workspace."},
    {"title": "Learn", "content": "Spend 20 minutes learning something new."},
]


async def _seed(db: AsyncSession, model: type, key: str, rows: list[dict]) -> int:
    """Insert rows whose ``key`` value is not present yet. Returns inserted count."""
    result = await db.execute(select(getattr(model, key)))
    existing = set(result.scalars().all())
    inserted = 0
    for data in rows:
        if data[key] in existing:
            continue
        db.add(model(**data))
        inserted += 1
    await db.flush()
    return inserted


async def seed_catalogue(db: AsyncSession) -> dict[str, int]:
    """Seed all catalogues idempotently and commit."""
    counts = {
        "power_ups": await _seed(db, PowerUp, "slug", POWER_UP_SEED_DATA),
        "badges": await _seed(db, BadgeDefinition, "slug", BADGE_SEED_DATA),
        "quests": await _seed(db, Quest, "title", QUEST_SEED_DATA),
    }
    await db.commit()
    logger.info("Catalogue seeded: %s", counts)
    return counts
