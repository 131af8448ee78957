"""Teams, duos and friendships.

Rules:
- A duo always has exactly two seats (clamped on every write of Team)
- Regular teams hold between 2 and MAX_TEAM_MEMBERS members
- The creator is the first member and the team's admin
- Friend requests are directed; acceptance makes them symmetric for duo checks
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from questline.db.base import utcnow
from questline.db.models import Friendship, Team, TeamMember
from questline.errors import ConstraintViolation, FriendRequestNotFound, InvalidJoin, TeamNotFound
from questline.gamification.xp_service import get_profile

logger = logging.getLogger(__name__)

MAX_TEAM_MEMBERS = 100
DEFAULT_TEAM_MEMBERS = 5
TEAM_TYPES = ("team", "duo")


async def member_count(db: AsyncSession, team_id: int) -> int:
    result = await db.execute(
        select(func.count(TeamMember.id)).where(TeamMember.team_id == team_id)
    )
    return result.scalar_one()


async def create_team(
    db: AsyncSession,
    creator_id: int,
    name: str,
    team_type: str = "team",
    max_members: int = DEFAULT_TEAM_MEMBERS,
    description: str | None = None,
    now: datetime | None = None,
) -> Team:
    """Create a team or duo. The creator becomes the admin member."""
    if team_type not in TEAM_TYPES:
        raise ValueError(f"Unknown team type: {team_type}")
    if team_type == "team" and not 2 <= max_members <= MAX_TEAM_MEMBERS:
        raise ValueError(f"Teams hold between 2 and {MAX_TEAM_MEMBERS} members")
    if now is None:
        now = utcnow()

    try:
        await get_profile(db, creator_id)
        team = Team(
            name=name.strip(),
            description=description,
            team_type=team_type,
            max_members=max_members,
            creator_id=creator_id,
            created_at=now,
        )
        db.add(team)
        await db.flush()
        db.add(TeamMember(team_id=team.id, user_id=creator_id, role="admin", joined_at=now))
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info("Team created: %s (id=%d, type=%s, creator=%d)", team.name, team.id, team_type, creator_id)
    return team


async def join_team(
    db: AsyncSession,
    team_id: int,
    user_id: int,
    now: datetime | None = None,
) -> TeamMember:
    """Join a team with a free seat."""
    if now is None:
        now = utcnow()
    try:
        team = await db.get(Team, team_id, with_for_update=True)
        if team is None:
            raise TeamNotFound(f"Team {team_id} not found")
        await get_profile(db, user_id)
        if await member_count(db, team_id) >= team.max_members:
            raise InvalidJoin(f"This team is full ({team.max_members} members maximum)")

        member = TeamMember(team_id=team_id, user_id=user_id, role="member", joined_at=now)
        try:
            async with db.begin_nested():
                db.add(member)
        except IntegrityError as exc:
            raise ConstraintViolation("You are already a member of this team") from exc
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info("Team joined: team_id=%d user_id=%d", team_id, user_id)
    return member


async def get_user_teams(db: AsyncSession, user_id: int) -> list[Team]:
    result = await db.execute(
        select(Team)
        .join(TeamMember, TeamMember.team_id == Team.id)
        .where(TeamMember.user_id == user_id)
        .order_by(Team.id.asc())
    )
    return list(result.scalars().all())


async def add_friend(
    db: AsyncSession,
    user_id: int,
    friend_id: int,
    now: datetime | None = None,
) -> Friendship:
    """Send a friend request."""
    if user_id == friend_id:
        raise InvalidJoin("You cannot befriend yourself")
    if now is None:
        now = utcnow()
    try:
        await get_profile(db, friend_id)
        reverse = await db.execute(
            select(Friendship.id).where(
                or_(
                    (Friendship.user_id == user_id) & (Friendship.friend_id == friend_id),
                    (Friendship.user_id == friend_id) & (Friendship.friend_id == user_id),
                )
            )
        )
        if reverse.first() is not None:
            raise ConstraintViolation("A friend request between you already exists")

        friendship = Friendship(user_id=user_id, friend_id=friend_id, status="pending", created_at=now)
        try:
            async with db.begin_nested():
                db.add(friendship)
        except IntegrityError as exc:
            raise ConstraintViolation("A friend request between you already exists") from exc
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    return friendship


async def accept_friend(db: AsyncSession, user_id: int, requester_id: int) -> Friendship:
    """Accept a pending request sent by ``requester_id`` to ``user_id``."""
    try:
        result = await db.execute(
            select(Friendship).where(
                Friendship.user_id == requester_id,
                Friendship.friend_id == user_id,
            )
        )
        friendship = result.scalar_one_or_none()
        if friendship is None:
            raise FriendRequestNotFound("No friend request to accept")
        friendship.status = "accepted"
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    logger.info("Friendship accepted: %d <-> %d", requester_id, user_id)
    return friendship
