"""Daily streak ledger: advancement, freezes, loss and recovery.

All day arithmetic happens on the user's local calendar day, derived on the
server from the profile's IANA timezone. Client-supplied dates are never
trusted.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from questline.config import get_settings
from questline.db.base import ensure_utc, utcnow
from questline.db.models import PowerUp, Profile, UserPowerUp
from questline.errors import (
    NoStreakInsurance,
    NoStreakToRecover,
    NotPermitted,
    RecoveryWindowExpired,
)
from questline.gamification.xp_service import get_profile
from questline.payments.audit import AuditOutcome, record_admin_action

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StreakAdvance:
    streak: int
    freeze_used: bool = False
    streak_lost: bool = False


@dataclass(frozen=True)
class StreakOverride:
    streak: int
    clamped: bool
    audit: AuditOutcome


def local_date(now: datetime, tz_name: str | None) -> date:
    """Calendar day of ``now`` in the given IANA zone (UTC if unknown)."""
    try:
        tz = ZoneInfo(tz_name or get_settings().default_timezone)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r, falling back to UTC", tz_name)
        tz = ZoneInfo("UTC")
    return ensure_utc(now).astimezone(tz).date()


def is_freeze_armed(profile: Profile, now: datetime) -> bool:
    """A freeze without expiry stays armed until consumed."""
    if not profile.streak_freeze_active:
        return False
    expires_at = ensure_utc(profile.streak_freeze_expires_at)
    return expires_at is None or now <= expires_at


def advance_streak(
    profile: Profile,
    completion_date: date,
    now: datetime,
    allow_freeze: bool = True,
) -> StreakAdvance:
    """Register a completion on ``completion_date`` and mutate the profile.

    - first completion ever starts the streak at 1
    - a completion on or before the last registered day changes nothing
    - the next calendar day extends the streak
    - a gap is bridged by an armed freeze (which is spent), otherwise the
      streak is snapshotted for recovery and restarts at 1
    """
    last = profile.last_quest_date

    if last is None:
        profile.streak = 1
        result = StreakAdvance(streak=1)
    elif completion_date <= last:
        return StreakAdvance(streak=profile.streak)
    elif completion_date == last + timedelta(days=1):
        profile.streak += 1
        result = StreakAdvance(streak=profile.streak)
    elif allow_freeze and is_freeze_armed(profile, now):
        profile.streak += 1
        profile.streak_freeze_active = False
        profile.streak_freeze_expires_at = None
        result = StreakAdvance(streak=profile.streak, freeze_used=True)
    else:
        if profile.streak > 0:
            profile.last_streak_count = profile.streak
            profile.streak_lost_at = now
        if profile.streak_freeze_active:
            # Expired freeze, switched off lazily.
            profile.streak_freeze_active = False
            profile.streak_freeze_expires_at = None
        profile.streak = 1
        result = StreakAdvance(streak=1, streak_lost=True)

    profile.last_quest_date = completion_date
    profile.longest_streak = max(profile.longest_streak, profile.streak)
    return result


async def _find_streak_insurance(db: AsyncSession, user_id: int) -> UserPowerUp | None:
    result = await db.execute(
        select(UserPowerUp)
        .join(PowerUp, PowerUp.id == UserPowerUp.power_up_id)
        .where(
            UserPowerUp.user_id == user_id,
            UserPowerUp.used_at.is_(None),
            PowerUp.effect_type == "streak_save",
        )
        .order_by(UserPowerUp.purchased_at.asc(), UserPowerUp.id.asc())
        .limit(1)
    )
    return result.scalars().first()


async def restore_streak(db: AsyncSession, user_id: int, now: datetime | None = None) -> int:
    """Spend a streak_save power-up to restore a recently lost streak.

    The restored streak is the snapshot plus whatever was built since the
    loss, as though a freeze had covered the gap. Returns the new streak.
    """
    if now is None:
        now = utcnow()
    window = timedelta(hours=get_settings().streak_recovery_window_hours)

    try:
        profile = await get_profile(db, user_id, for_update=True)
        lost_at = ensure_utc(profile.streak_lost_at)
        if lost_at is None or not profile.last_streak_count:
            raise NoStreakToRecover("No lost streak to recover")
        if now - lost_at > window:
            raise RecoveryWindowExpired(
                f"Streak can only be restored within {window.total_seconds() / 3600:g} hours"
            )

        insurance = await _find_streak_insurance(db, user_id)
        if insurance is None:
            raise NoStreakInsurance("No Streak Insurance power-up available")

        restored_from = profile.last_streak_count
        profile.streak = restored_from + profile.streak
        profile.longest_streak = max(profile.longest_streak, profile.streak)
        profile.streak_lost_at = None
        profile.last_streak_count = None
        profile.updated_at = now
        insurance.used_at = now
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info(
        "Streak restored: user_id=%d from=%d streak=%d", user_id, restored_from, profile.streak
    )
    return profile.streak


async def admin_override_streak(
    db: AsyncSession,
    admin_id: int,
    user_id: int,
    streak_count: int,
    reason: str,
    now: datetime | None = None,
) -> StreakOverride:
    """Set a user's streak directly, bypassing the recovery window.

    The value is clamped to [0, total_quests_completed]. The action is
    audited best-effort.
    """
    if now is None:
        now = utcnow()

    try:
        admin = await get_profile(db, admin_id)
        if not admin.is_admin:
            raise NotPermitted("Admin access required")

        profile = await get_profile(db, user_id, for_update=True)
        target = max(0, min(streak_count, profile.total_quests_completed))
        previous = profile.streak
        profile.streak = target
        profile.longest_streak = max(profile.longest_streak, target)
        profile.streak_lost_at = None
        profile.last_streak_count = None
        profile.updated_at = now

        audit = await record_admin_action(
            db,
            admin_user_id=admin_id,
            action="streak_override",
            target_type="profile",
            target_id=user_id,
            details={
                "previous_streak": previous,
                "requested_streak": streak_count,
                "new_streak": target,
                "reason": reason,
            },
            now=now,
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info(
        "Streak overridden: admin_id=%d user_id=%d %d -> %d", admin_id, user_id, previous, target
    )
    return StreakOverride(streak=target, clamped=target != streak_count, audit=audit)
