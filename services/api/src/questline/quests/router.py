"""Quest API endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from questline.auth.dependencies import get_current_user
from questline.database import get_session
from questline.db.models import Profile
from questline.dependencies import get_redis_dep
from questline.errors import AlreadyCompleted, InvalidReflection, QuestNotFound
from questline.quests.schemas import CompleteQuestRequest, CompleteQuestResponse, QuestLogResponse
from questline.quests.service import complete_quest, get_or_assign_daily_quest

router = APIRouter(prefix="/api/v1", tags=["Quests"])


@router.get("/quests/daily", response_model=QuestLogResponse)
async def daily_quest(
    user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    """Today's quest for the caller, assigned on first request of the local day."""
    try:
        entry = await get_or_assign_daily_quest(db, user.id)
    except QuestNotFound as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    return QuestLogResponse(
        log_id=entry.id,
        quest_id=entry.quest_id,
        title=entry.quest.title,
        content=entry.quest.content,
        assigned_date=entry.assigned_date,
        is_golden=entry.is_golden,
        completed_at=entry.completed_at,
        xp_awarded=entry.xp_awarded,
    )


@router.post("/quests/{log_id}/complete", response_model=CompleteQuestResponse)
async def complete(
    log_id: int,
    body: CompleteQuestRequest,
    user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
    redis: object | None = Depends(get_redis_dep),
):
    """Complete a quest. Errors leave the streak untouched."""
    try:
        result = await complete_quest(
            db,
            redis,
            log_id=log_id,
            user_id=user.id,
            reflection_text=body.reflection_text,
            is_golden_quest=body.is_golden_quest,
        )
    except AlreadyCompleted as e:
        raise HTTPException(
            status_code=409,
            detail={
                "message": "Quest already completed",
                "error_code": e.error_code,
                "xp_awarded": e.xp_awarded,
            },
        ) from e
    except InvalidReflection as e:
        raise HTTPException(
            status_code=422,
            detail={"message": str(e), "error_code": e.error_code, "streak_safe": True},
        ) from e
    except QuestNotFound as e:
        raise HTTPException(status_code=404, detail=str(e)) from e

    return CompleteQuestResponse(
        xp_awarded=result.xp_awarded,
        streak=result.new_streak,
        level=result.new_level,
        total_xp=result.total_xp,
        xp_booster_applied=result.xp_booster_applied,
        streak_freeze_used=result.streak_freeze_used,
        streak_lost=result.streak_lost,
    )
