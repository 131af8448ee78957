"""Gamification API endpoints: progress summary, streaks, power-ups."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from questline.auth.dependencies import get_current_user, require_admin
from questline.database import get_session
from questline.db.base import ensure_utc
from questline.db.models import Profile
from questline.errors import (
    NoStreakInsurance,
    NoStreakToRecover,
    NotPermitted,
    PowerUpAlreadyUsed,
    PowerUpNotFound,
    ProfileNotFound,
    RecoveryWindowExpired,
)
from questline.gamification.badge_service import get_user_badges
from questline.gamification.level_thresholds import compute_level
from questline.gamification.power_up_service import activate_power_up, list_inventory
from questline.gamification.schemas import (
    ActivationResponse,
    EarnedBadgeResponse,
    InventoryItem,
    LevelResponse,
    ProgressSummaryResponse,
    RestoreStreakResponse,
    StreakOverrideRequest,
    StreakOverrideResponse,
    StreakResponse,
    XPHistoryEntry,
)
from questline.gamification.streak_service import admin_override_streak, restore_streak
from questline.gamification.xp_service import get_xp_history

router = APIRouter(prefix="/api/v1", tags=["Gamification"])


@router.get("/users/me/progress", response_model=ProgressSummaryResponse)
async def my_progress(
    user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    """Everything the profile screen needs in one call."""
    badges = await get_user_badges(db, user.id)
    inventory = await list_inventory(db, user.id)
    history = await get_xp_history(db, user.id)

    return ProgressSummaryResponse(
        user_id=user.id,
        username=user.username,
        xp=user.xp,
        level=LevelResponse(**compute_level(user.xp)),
        total_quests_completed=user.total_quests_completed,
        streak=StreakResponse(
            streak=user.streak,
            longest_streak=user.longest_streak,
            last_quest_date=user.last_quest_date,
            streak_lost_at=ensure_utc(user.streak_lost_at),
            last_streak_count=user.last_streak_count,
            streak_freeze_active=user.streak_freeze_active,
            streak_freeze_expires_at=ensure_utc(user.streak_freeze_expires_at),
        ),
        premium_status=user.premium_status,
        xp_booster_active=user.xp_booster_active,
        xp_booster_expires_at=ensure_utc(user.xp_booster_expires_at),
        badges=[
            EarnedBadgeResponse(slug=b.badge.slug, name=b.badge.name, earned_at=b.earned_at)
            for b in badges
        ],
        power_ups=[
            InventoryItem(
                id=unit.id,
                slug=unit.power_up.slug,
                name=unit.power_up.name,
                effect_type=unit.power_up.effect_type,
                purchased_at=unit.purchased_at,
            )
            for unit in inventory
        ],
        recent_xp=[
            XPHistoryEntry(
                amount=row.amount,
                source=row.source,
                description=row.description,
                created_at=row.created_at,
            )
            for row in history
        ],
    )


@router.post("/streak/restore", response_model=RestoreStreakResponse)
async def restore(
    user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    """Spend Streak Insurance to bring back a streak lost in the last 24 hours."""
    try:
        streak = await restore_streak(db, user.id)
    except (NoStreakToRecover, RecoveryWindowExpired, NoStreakInsurance) as e:
        raise HTTPException(status_code=400, detail={"message": str(e), "error_code": e.error_code}) from e
    return RestoreStreakResponse(streak=streak)


@router.post("/admin/streak/override", response_model=StreakOverrideResponse)
async def override_streak(
    body: StreakOverrideRequest,
    admin: Profile = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
):
    try:
        result = await admin_override_streak(
            db,
            admin_id=admin.id,
            user_id=body.user_id,
            streak_count=body.streak_count,
            reason=body.reason,
        )
    except ProfileNotFound as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except NotPermitted as e:
        raise HTTPException(status_code=403, detail=str(e)) from e
    return StreakOverrideResponse(
        user_id=body.user_id,
        streak=result.streak,
        clamped=result.clamped,
        audit_logged=result.audit.ok,
    )


@router.post("/power-ups/{user_power_up_id}/activate", response_model=ActivationResponse)
async def activate(
    user_power_up_id: int,
    user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    try:
        activation = await activate_power_up(db, user.id, user_power_up_id)
    except PowerUpNotFound as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except (PowerUpAlreadyUsed, NotPermitted) as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    return ActivationResponse(
        power_up=activation.power_up,
        effect_type=activation.effect_type,
        expires_at=ensure_utc(activation.expires_at),
    )
