"""Team and friendship API endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from questline.auth.dependencies import get_current_user
from questline.database import get_session
from questline.db.models import Friendship, Profile, Team
from questline.errors import (
    ConstraintViolation,
    FriendRequestNotFound,
    InvalidJoin,
    ProfileNotFound,
    TeamNotFound,
)
from questline.social.schemas import (
    CreateTeamRequest,
    FriendshipResponse,
    TeamMemberResponse,
    TeamResponse,
)
from questline.social.team_service import accept_friend, add_friend, create_team, join_team

router = APIRouter(prefix="/api/v1", tags=["Social"])


def _team(team: Team) -> TeamResponse:
    return TeamResponse(
        id=team.id,
        name=team.name,
        team_type=team.team_type,
        max_members=team.max_members,
        creator_id=team.creator_id,
        xp=team.xp,
    )


def _friendship(friendship: Friendship) -> FriendshipResponse:
    return FriendshipResponse(
        user_id=friendship.user_id,
        friend_id=friendship.friend_id,
        status=friendship.status,
    )


@router.post("/teams", response_model=TeamResponse, status_code=201)
async def create(
    body: CreateTeamRequest,
    user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    """Create a team or duo with the caller as admin."""
    try:
        team = await create_team(
            db,
            creator_id=user.id,
            name=body.name,
            team_type=body.team_type,
            max_members=body.max_members,
            description=body.description,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    return _team(team)


@router.post("/teams/{team_id}/join", response_model=TeamMemberResponse)
async def join(
    team_id: int,
    user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    try:
        member = await join_team(db, team_id, user.id)
    except TeamNotFound as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except ConstraintViolation as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    except InvalidJoin as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    return TeamMemberResponse(
        team_id=member.team_id,
        user_id=member.user_id,
        role=member.role,
        joined_at=member.joined_at,
    )


@router.post("/friends/{friend_id}", response_model=FriendshipResponse, status_code=201)
async def request_friend(
    friend_id: int,
    user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    try:
        friendship = await add_friend(db, user.id, friend_id)
    except ProfileNotFound as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except ConstraintViolation as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    except InvalidJoin as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    return _friendship(friendship)


@router.post("/friends/{requester_id}/accept", response_model=FriendshipResponse)
async def accept(
    requester_id: int,
    user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    try:
        friendship = await accept_friend(db, user.id, requester_id)
    except FriendRequestNotFound as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    return _friendship(friendship)
