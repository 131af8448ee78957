"""Profiles and XP grants with idempotency and level-up detection."""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from questline.config import get_settings
from questline.db.base import utcnow
from questline.db.models import Notification, Profile, XPLedger
from questline.errors import ConstraintViolation, ProfileNotFound
from questline.gamification.level_thresholds import compute_level
from questline.social.notification_push import build_notification

logger = logging.getLogger(__name__)


async def create_profile(
    db: AsyncSession,
    username: str,
    timezone: str | None = None,
    is_admin: bool = False,
    now: datetime | None = None,
) -> Profile:
    """Create the progression row for a freshly signed-up user."""
    if now is None:
        now = utcnow()
    profile = Profile(
        username=username,
        timezone=timezone or get_settings().default_timezone,
        is_admin=is_admin,
        created_at=now,
        updated_at=now,
    )
    try:
        async with db.begin_nested():
            db.add(profile)
    except IntegrityError as exc:
        raise ConstraintViolation(f"Username '{username}' is already taken") from exc
    logger.info("Profile created: user_id=%d username=%s", profile.id, username)
    return profile


async def get_profile(db: AsyncSession, user_id: int, for_update: bool = False) -> Profile:
    """Load a profile, optionally row-locked for the rest of the transaction."""
    stmt = select(Profile).where(Profile.id == user_id)
    if for_update:
        stmt = stmt.with_for_update()
    result = await db.execute(stmt)
    profile = result.scalar_one_or_none()
    if profile is None:
        raise ProfileNotFound(f"Profile {user_id} not found")
    return profile


async def grant_xp(
    db: AsyncSession,
    profile: Profile,
    amount: int,
    source: str,
    source_id: str,
    description: str,
    idempotency_key: str,
    now: datetime | None = None,
    outbox: list[Notification] | None = None,
) -> bool:
    """Grant XP to a user. Returns True if granted, False if duplicate.

    1. Insert into xp_ledger (unique idempotency_key)
    2. Update profile.xp
    3. Recompute level from xp
    4. If the level rose, persist a level_up notification and queue it on
       ``outbox`` for pushing after commit

    Nothing is committed here; the caller owns the transaction.
    """
    existing = await db.execute(
        select(XPLedger.id).where(XPLedger.idempotency_key == idempotency_key)
    )
    if existing.scalar_one_or_none() is not None:
        return False

    if now is None:
        now = utcnow()

    entry = XPLedger(
        user_id=profile.id,
        amount=amount,
        source=source,
        source_id=source_id,
        description=description,
        idempotency_key=idempotency_key,
        created_at=now,
    )
    try:
        async with db.begin_nested():
            db.add(entry)
    except IntegrityError:
        return False  # Concurrent grant under the same key

    old_level = profile.level
    profile.xp += amount
    level_info = compute_level(profile.xp)
    profile.level = level_info["level"]
    profile.updated_at = now

    if profile.level > old_level:
        notification = build_notification(
            user_id=profile.id,
            subtype="level_up",
            title="Level Up!",
            description=f"Level {profile.level}: {level_info['title']}",
            action_url="/profile",
            now=now,
        )
        db.add(notification)
        if outbox is not None:
            outbox.append(notification)
        logger.info("Level up: user_id=%d %d -> %d", profile.id, old_level, profile.level)

    await db.flush()
    return True


async def get_xp_history(db: AsyncSession, user_id: int, limit: int = 20) -> list[XPLedger]:
    """Most recent ledger rows first."""
    result = await db.execute(
        select(XPLedger)
        .where(XPLedger.user_id == user_id)
        .order_by(XPLedger.created_at.desc(), XPLedger.id.desc())
        .limit(limit)
    )
    return list(result.scalars().all())
