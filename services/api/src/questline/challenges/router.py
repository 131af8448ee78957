"""Challenge API endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from questline.auth.dependencies import get_current_user
from questline.challenges.schemas import (
    JoinDuoRequest,
    JoinTeamChallengeRequest,
    ParticipantResponse,
    ProgressUpdateResponse,
    RewardResponse,
    SyncResponse,
    TeamChallengeProgressResponse,
)
from questline.challenges.service import (
    ProgressUpdate,
    join_challenge,
    join_duo_challenge,
    join_team_challenge,
    sync_progress,
)
from questline.database import get_session
from questline.db.models import ChallengeParticipant, Profile
from questline.dependencies import get_redis_dep
from questline.errors import (
    ChallengeNotFound,
    ConstraintViolation,
    InvalidJoin,
    NotPermitted,
    ProfileNotFound,
    TeamNotFound,
)

router = APIRouter(prefix="/api/v1", tags=["Challenges"])


def _participant(row: ChallengeParticipant) -> ParticipantResponse:
    return ParticipantResponse(
        challenge_id=row.challenge_id,
        user_id=row.user_id,
        duo_partner_id=row.duo_partner_id,
        current_progress=row.current_progress,
        completed=row.completed,
        joined_at=row.joined_at,
    )


def _update(update: ProgressUpdate) -> ProgressUpdateResponse:
    return ProgressUpdateResponse(
        challenge_id=update.challenge_id,
        kind=update.kind,
        progress=update.progress,
        completed=update.completed,
        reward=(
            RewardResponse(xp=update.reward.xp, badge=update.reward.badge)
            if update.reward is not None
            else None
        ),
    )


@router.post("/challenges/sync", response_model=SyncResponse)
async def sync(
    user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
    redis: object | None = Depends(get_redis_dep),
):
    """Recompute progress for all of the caller's open challenges."""
    updates = await sync_progress(db, redis, user.id)
    return SyncResponse(updates=[_update(u) for u in updates])


@router.post("/challenges/{challenge_id}/join", response_model=ParticipantResponse)
async def join(
    challenge_id: int,
    user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    try:
        row = await join_challenge(db, challenge_id, user.id)
    except ChallengeNotFound as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except ConstraintViolation as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    except InvalidJoin as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    return _participant(row)


@router.post("/challenges/{challenge_id}/join-duo", response_model=list[ParticipantResponse])
async def join_duo(
    challenge_id: int,
    body: JoinDuoRequest,
    user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    """Join a duo challenge together with an accepted friend."""
    try:
        rows = await join_duo_challenge(db, challenge_id, user.id, body.partner_id)
    except (ChallengeNotFound, ProfileNotFound) as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except ConstraintViolation as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    except InvalidJoin as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    return [_participant(row) for row in rows]


@router.post("/team-challenges/{team_challenge_id}/join", response_model=TeamChallengeProgressResponse)
async def join_team(
    team_challenge_id: int,
    body: JoinTeamChallengeRequest,
    user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    """Enroll the caller's team. Team creators only."""
    try:
        progress = await join_team_challenge(db, team_challenge_id, body.team_id, user.id)
    except (ChallengeNotFound, TeamNotFound) as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except NotPermitted as e:
        raise HTTPException(status_code=403, detail=str(e)) from e
    except ConstraintViolation as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    except InvalidJoin as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    return TeamChallengeProgressResponse(
        team_challenge_id=progress.team_challenge_id,
        team_id=progress.team_id,
        current_progress=progress.current_progress,
        completed=progress.completed,
        members=len(progress.baseline_data),
    )
