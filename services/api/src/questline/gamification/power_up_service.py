"""Power-up inventory: grants and activation."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from questline.db.base import ensure_utc, utcnow
from questline.db.models import PowerUp, UserPowerUp
from questline.errors import NotPermitted, PowerUpAlreadyUsed, PowerUpNotFound
from questline.gamification.xp_service import get_profile

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Activation:
    power_up: str
    effect_type: str
    expires_at: datetime


async def get_power_up_by_name(db: AsyncSession, name: str) -> PowerUp | None:
    """Resolve a catalogue entry by display name, case-insensitively."""
    result = await db.execute(
        select(PowerUp).where(func.lower(PowerUp.name) == name.strip().lower())
    )
    return result.scalar_one_or_none()


async def grant_power_up(
    db: AsyncSession,
    user_id: int,
    power_up: PowerUp,
    source: str = "purchase",
    now: datetime | None = None,
) -> UserPowerUp:
    """Add one unit of ``power_up`` to the user's inventory. Caller commits."""
    unit = UserPowerUp(
        user_id=user_id,
        power_up_id=power_up.id,
        quantity=1,
        source=source,
        purchased_at=now or utcnow(),
    )
    db.add(unit)
    await db.flush()
    return unit


async def list_inventory(db: AsyncSession, user_id: int, unused_only: bool = True) -> list[UserPowerUp]:
    stmt = select(UserPowerUp).where(UserPowerUp.user_id == user_id)
    if unused_only:
        stmt = stmt.where(UserPowerUp.used_at.is_(None))
    result = await db.execute(stmt.order_by(UserPowerUp.purchased_at.asc(), UserPowerUp.id.asc()))
    return list(result.scalars().unique().all())


def _extend(current: datetime | None, now: datetime, hours: int) -> datetime:
    """New expiry stacks on top of a still-running one."""
    start = ensure_utc(current)
    if start is None or start < now:
        start = now
    return start + timedelta(hours=hours)


async def activate_power_up(
    db: AsyncSession,
    user_id: int,
    user_power_up_id: int,
    now: datetime | None = None,
) -> Activation:
    """Consume one inventory unit and switch its effect on.

    ``streak_save`` units are spent by streak restoration only.
    """
    if now is None:
        now = utcnow()

    try:
        result = await db.execute(
            select(UserPowerUp).where(
                UserPowerUp.id == user_power_up_id,
                UserPowerUp.user_id == user_id,
            )
        )
        unit = result.scalars().first()
        if unit is None:
            raise PowerUpNotFound(f"Power-up {user_power_up_id} not found")
        if unit.used_at is not None:
            raise PowerUpAlreadyUsed(f"Power-up {user_power_up_id} was already used")

        power_up = unit.power_up
        profile = await get_profile(db, user_id, for_update=True)

        if power_up.effect_type == "xp_boost":
            profile.xp_booster_expires_at = _extend(
                profile.xp_booster_expires_at if profile.xp_booster_active else None,
                now,
                power_up.effect_value,
            )
            profile.xp_booster_active = True
            expires_at = profile.xp_booster_expires_at
        elif power_up.effect_type == "streak_freeze":
            profile.streak_freeze_expires_at = _extend(
                profile.streak_freeze_expires_at if profile.streak_freeze_active else None,
                now,
                power_up.effect_value,
            )
            profile.streak_freeze_active = True
            expires_at = profile.streak_freeze_expires_at
        else:
            raise NotPermitted(f"{power_up.name} cannot be activated directly")

        unit.used_at = now
        profile.updated_at = now
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info(
        "Power-up activated: user_id=%d power_up=%s expires_at=%s",
        user_id,
        power_up.slug,
        expires_at.isoformat(),
    )
    return Activation(power_up=power_up.name, effect_type=power_up.effect_type, expires_at=expires_at)
