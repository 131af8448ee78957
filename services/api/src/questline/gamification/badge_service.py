"""Badge grants with duplicate prevention."""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from questline.db.base import utcnow
from questline.db.models import BadgeDefinition, Notification, Profile, UserBadge
from questline.gamification.xp_service import grant_xp
from questline.social.notification_push import build_notification

logger = logging.getLogger(__name__)


# Quest-count badges and the completion total that earns each one.
QUEST_COUNT_BADGES: list[tuple[str, int]] = [
    ("first_quest", 1),
    ("habit_builder", 10),
    ("quest_veteran", 50),
]


async def has_badge(db: AsyncSession, user_id: int, badge_id: int) -> bool:
    """Check if user already has a specific badge."""
    result = await db.execute(
        select(UserBadge.id).where(
            UserBadge.user_id == user_id,
            UserBadge.badge_id == badge_id,
        )
    )
    return result.scalar_one_or_none() is not None


async def award_badge(
    db: AsyncSession,
    profile: Profile,
    badge: BadgeDefinition,
    source: str,
    now: datetime | None = None,
    outbox: list[Notification] | None = None,
) -> bool:
    """Award a badge to a user.

    Returns True if awarded, False if already earned. The insert runs in a
    savepoint so a concurrent grant of the same badge only undoes itself.
    Badge XP goes through the ledger under ``badge:{slug}:{user_id}``.
    """
    if await has_badge(db, profile.id, badge.id):
        return False

    if now is None:
        now = utcnow()

    try:
        async with db.begin_nested():
            db.add(UserBadge(user_id=profile.id, badge_id=badge.id, earned_at=now, source=source))
    except IntegrityError:
        return False  # Race condition: badge already awarded

    if badge.xp_reward:
        await grant_xp(
            db,
            profile,
            amount=badge.xp_reward,
            source="badge",
            source_id=badge.slug,
            description=f'Earned badge: "{badge.name}"',
            idempotency_key=f"badge:{badge.slug}:{profile.id}",
            now=now,
            outbox=outbox,
        )

    notification = build_notification(
        user_id=profile.id,
        subtype="badge_earned",
        title=f'Badge Earned: "{badge.name}"',
        description=badge.description or None,
        action_url="/profile/badges",
        now=now,
    )
    db.add(notification)
    if outbox is not None:
        outbox.append(notification)
    await db.flush()
    return True


async def award_quest_count_badges(
    db: AsyncSession,
    profile: Profile,
    now: datetime | None = None,
    outbox: list[Notification] | None = None,
) -> list[str]:
    """Award every quest-count badge the profile's completion total has reached.

    Runs inside the caller's transaction; slugs missing from the catalogue
    are skipped.
    """
    reached = [slug for slug, threshold in QUEST_COUNT_BADGES if profile.total_quests_completed >= threshold]
    if not reached:
        return []

    result = await db.execute(
        select(BadgeDefinition)
        .where(BadgeDefinition.slug.in_(reached))
        .order_by(BadgeDefinition.sort_order.asc(), BadgeDefinition.id.asc())
    )
    awarded = []
    for badge in result.scalars().all():
        if await award_badge(db, profile, badge, source="quest", now=now, outbox=outbox):
            awarded.append(badge.slug)
    if awarded:
        logger.info("Quest badges awarded: user_id=%d badges=%s", profile.id, awarded)
    return awarded


async def get_user_badges(db: AsyncSession, user_id: int) -> list[UserBadge]:
    result = await db.execute(
        select(UserBadge)
        .where(UserBadge.user_id == user_id)
        .order_by(UserBadge.earned_at.asc(), UserBadge.id.asc())
    )
    return list(result.scalars().unique().all())
