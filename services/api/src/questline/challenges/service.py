"""Challenge joins and the progress reconciler.

Progress is always ``live counter - baseline`` where the baseline is the
snapshot taken at join time. Completed rows are never revisited, and every
reward is claimed by inserting a ChallengeReward row whose unique
idempotency key makes a second issuance impossible.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from questline.db.base import ensure_utc, utcnow
from questline.db.models import (
    BadgeDefinition,
    Challenge,
    ChallengeParticipant,
    ChallengeReward,
    Friendship,
    Notification,
    Profile,
    Team,
    TeamChallenge,
    TeamChallengeProgress,
    TeamMember,
)
from questline.errors import (
    ChallengeNotFound,
    ConstraintViolation,
    InvalidJoin,
    NotPermitted,
    RewardAlreadyIssued,
    TeamNotFound,
)
from questline.gamification.badge_service import award_badge
from questline.gamification.xp_service import get_profile, grant_xp
from questline.social.notification_push import build_notification, push_all

logger = logging.getLogger(__name__)

TARGET_TYPES = ("quests", "xp", "streak")


@dataclass(frozen=True)
class Reward:
    xp: int
    badge: str | None = None


@dataclass(frozen=True)
class ProgressUpdate:
    challenge_id: int
    kind: str
    progress: int
    completed: bool
    reward: Reward | None = None


# ---------------------------------------------------------------------------
# Counters
# ---------------------------------------------------------------------------


def live_counters(profile: Profile) -> dict[str, int]:
    return {
        "quests": profile.total_quests_completed,
        "xp": profile.xp,
        "streak": profile.streak,
    }


def delta(live: dict[str, int], baseline: dict[str, int], target_type: str) -> int:
    """Progress never goes below zero, even when a streak resets."""
    return max(0, live[target_type] - baseline.get(target_type, 0))


def _participant_baseline(part: ChallengeParticipant) -> dict[str, int]:
    return {
        "quests": part.baseline_quests,
        "xp": part.baseline_xp,
        "streak": part.baseline_streak,
    }


def _is_running(starts_at: datetime | None, ends_at: datetime | None, now: datetime) -> bool:
    starts_at = ensure_utc(starts_at)
    ends_at = ensure_utc(ends_at)
    if starts_at is not None and now < starts_at:
        return False
    return ends_at is None or now <= ends_at


# ---------------------------------------------------------------------------
# Joins
# ---------------------------------------------------------------------------


async def _get_challenge(db: AsyncSession, challenge_id: int, now: datetime) -> Challenge:
    challenge = await db.get(Challenge, challenge_id)
    if challenge is None:
        raise ChallengeNotFound(f"Challenge {challenge_id} not found")
    ends_at = ensure_utc(challenge.ends_at)
    if ends_at is not None and now > ends_at:
        raise InvalidJoin("This challenge has already ended")
    return challenge


def _new_participant(
    challenge_id: int,
    profile: Profile,
    now: datetime,
    partner_id: int | None = None,
) -> ChallengeParticipant:
    return ChallengeParticipant(
        challenge_id=challenge_id,
        user_id=profile.id,
        duo_partner_id=partner_id,
        baseline_quests=profile.total_quests_completed,
        baseline_xp=profile.xp,
        baseline_streak=profile.streak,
        joined_at=now,
    )


async def join_challenge(
    db: AsyncSession,
    challenge_id: int,
    user_id: int,
    now: datetime | None = None,
) -> ChallengeParticipant:
    """Join a solo challenge, snapshotting the user's counters."""
    if now is None:
        now = utcnow()
    try:
        challenge = await _get_challenge(db, challenge_id, now)
        if challenge.challenge_type == "duo":
            raise InvalidJoin("Duo challenges need a partner")
        profile = await get_profile(db, user_id)
        participant = _new_participant(challenge.id, profile, now)
        try:
            async with db.begin_nested():
                db.add(participant)
        except IntegrityError as exc:
            raise ConstraintViolation("You have already joined this challenge") from exc
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    logger.info("Challenge joined: challenge_id=%d user_id=%d", challenge_id, user_id)
    return participant


async def are_friends(db: AsyncSession, user_id: int, other_id: int) -> bool:
    """Accepted friendship in either direction."""
    result = await db.execute(
        select(Friendship.id).where(
            Friendship.status == "accepted",
            or_(
                (Friendship.user_id == user_id) & (Friendship.friend_id == other_id),
                (Friendship.user_id == other_id) & (Friendship.friend_id == user_id),
            ),
        )
    )
    return result.first() is not None


async def join_duo_challenge(
    db: AsyncSession,
    challenge_id: int,
    user_id: int,
    partner_id: int,
    now: datetime | None = None,
) -> list[ChallengeParticipant]:
    """Enroll the caller and a friend together; both rows or neither."""
    if now is None:
        now = utcnow()
    try:
        challenge = await _get_challenge(db, challenge_id, now)
        if challenge.challenge_type != "duo":
            raise InvalidJoin("This is not a duo challenge")
        if partner_id == user_id:
            raise InvalidJoin("You cannot partner with yourself")

        profile = await get_profile(db, user_id)
        partner = await get_profile(db, partner_id)
        if not await are_friends(db, user_id, partner_id):
            raise InvalidJoin("You can only team up with accepted friends")

        existing = await db.execute(
            select(ChallengeParticipant.user_id).where(
                ChallengeParticipant.challenge_id == challenge_id,
                ChallengeParticipant.user_id.in_([user_id, partner_id]),
            )
        )
        if existing.first() is not None:
            raise ConstraintViolation("You or your partner already joined this challenge")

        rows = [
            _new_participant(challenge.id, profile, now, partner_id=partner.id),
            _new_participant(challenge.id, partner, now, partner_id=profile.id),
        ]
        try:
            async with db.begin_nested():
                db.add_all(rows)
        except IntegrityError as exc:
            raise ConstraintViolation("You or your partner already joined this challenge") from exc
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    logger.info(
        "Duo challenge joined: challenge_id=%d user_id=%d partner_id=%d",
        challenge_id,
        user_id,
        partner_id,
    )
    return rows


async def team_member_profiles(db: AsyncSession, team_id: int) -> list[Profile]:
    result = await db.execute(
        select(Profile)
        .join(TeamMember, TeamMember.user_id == Profile.id)
        .where(TeamMember.team_id == team_id)
        .order_by(Profile.id.asc())
    )
    return list(result.scalars().all())


async def join_team_challenge(
    db: AsyncSession,
    team_challenge_id: int,
    team_id: int,
    user_id: int,
    now: datetime | None = None,
) -> TeamChallengeProgress:
    """Enroll a team. Only the team's creator may do this."""
    if now is None:
        now = utcnow()
    try:
        team_challenge = await db.get(TeamChallenge, team_challenge_id)
        if team_challenge is None:
            raise ChallengeNotFound(f"Team challenge {team_challenge_id} not found")
        ends_at = ensure_utc(team_challenge.ends_at)
        if ends_at is not None and now > ends_at:
            raise InvalidJoin("This challenge has already ended")
        team = await db.get(Team, team_id)
        if team is None:
            raise TeamNotFound(f"Team {team_id} not found")
        if team.creator_id != user_id:
            raise NotPermitted("Only the team creator can join team challenges")

        members = await team_member_profiles(db, team_id)
        progress = TeamChallengeProgress(
            team_id=team_id,
            team_challenge_id=team_challenge_id,
            baseline_data={str(m.id): live_counters(m) for m in members},
            joined_at=now,
        )
        try:
            async with db.begin_nested():
                db.add(progress)
        except IntegrityError as exc:
            raise ConstraintViolation("Your team is already participating in this challenge") from exc
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    logger.info(
        "Team challenge joined: team_challenge_id=%d team_id=%d members=%d",
        team_challenge_id,
        team_id,
        len(members),
    )
    return progress


# ---------------------------------------------------------------------------
# Rewards
# ---------------------------------------------------------------------------


async def _claim_reward(db: AsyncSession, idempotency_key: str, **fields: object) -> None:
    """Insert the reward row; raises RewardAlreadyIssued on a duplicate key."""
    try:
        async with db.begin_nested():
            db.add(ChallengeReward(idempotency_key=idempotency_key, **fields))
    except IntegrityError as exc:
        raise RewardAlreadyIssued(idempotency_key) from exc


async def _pay_member(
    db: AsyncSession,
    profile: Profile,
    idempotency_key: str,
    title: str,
    xp: int,
    badge: BadgeDefinition | None,
    now: datetime,
    outbox: list[Notification],
) -> Reward:
    if xp:
        await grant_xp(
            db,
            profile,
            amount=xp,
            source="challenge",
            source_id=idempotency_key,
            description=f"Completed challenge: {title}",
            idempotency_key=idempotency_key,
            now=now,
            outbox=outbox,
        )
    if badge is not None:
        await award_badge(db, profile, badge, source="challenge", now=now, outbox=outbox)
    notification = build_notification(
        user_id=profile.id,
        subtype="challenge_complete",
        title="Challenge Complete!",
        description=f"{title}: +{xp} XP",
        action_url="/challenges",
        now=now,
    )
    db.add(notification)
    outbox.append(notification)
    return Reward(xp=xp, badge=badge.slug if badge is not None else None)


async def _reward_participant(
    db: AsyncSession,
    challenge: Challenge,
    profile: Profile,
    badge: BadgeDefinition | None,
    now: datetime,
    outbox: list[Notification],
) -> Reward | None:
    key = f"challenge:{challenge.id}:{profile.id}"
    try:
        await _claim_reward(
            db,
            key,
            challenge_id=challenge.id,
            user_id=profile.id,
            xp_awarded=challenge.reward_xp,
            badge_id=challenge.reward_badge_id,
            created_at=now,
        )
    except RewardAlreadyIssued:
        logger.debug("Reward already issued: %s", key)
        return None
    return await _pay_member(db, profile, key, challenge.title, challenge.reward_xp, badge, now, outbox)


# ---------------------------------------------------------------------------
# Reconciler
# ---------------------------------------------------------------------------


async def _sync_challenges(
    db: AsyncSession,
    profile: Profile,
    now: datetime,
    outbox: list[Notification],
) -> list[ProgressUpdate]:
    result = await db.execute(
        select(ChallengeParticipant, Challenge)
        .join(Challenge, Challenge.id == ChallengeParticipant.challenge_id)
        .where(
            ChallengeParticipant.user_id == profile.id,
            ChallengeParticipant.completed.is_(False),
        )
        .order_by(Challenge.id.asc())
    )
    updates: list[ProgressUpdate] = []
    for participant, challenge in result.all():
        if not _is_running(challenge.starts_at, challenge.ends_at, now):
            continue

        rows = [(participant, profile)]
        if challenge.challenge_type == "duo" and participant.duo_partner_id is not None:
            partner_row = await db.execute(
                select(ChallengeParticipant).where(
                    ChallengeParticipant.challenge_id == challenge.id,
                    ChallengeParticipant.user_id == participant.duo_partner_id,
                )
            )
            partner_participant = partner_row.scalar_one_or_none()
            if partner_participant is not None and not partner_participant.completed:
                partner = await get_profile(db, participant.duo_partner_id, for_update=True)
                rows.append((partner_participant, partner))

        deltas = [
            delta(live_counters(p), _participant_baseline(row), challenge.target_type)
            for row, p in rows
        ]
        kind = "duo" if challenge.challenge_type == "duo" else "solo"
        if challenge.target_type == "streak":
            # A joint streak only lasts as long as the weaker partner's.
            progress = min(deltas)
        else:
            progress = sum(deltas)

        completed = progress >= challenge.target_value
        for row, _ in rows:
            row.current_progress = progress
            if completed:
                row.completed = True
                row.completed_at = now

        reward = None
        if completed:
            badge = (
                await db.get(BadgeDefinition, challenge.reward_badge_id)
                if challenge.reward_badge_id
                else None
            )
            for row, member in rows:
                issued = await _reward_participant(db, challenge, member, badge, now, outbox)
                if member.id == profile.id:
                    reward = issued
            logger.info(
                "Challenge completed: challenge_id=%d user_ids=%s",
                challenge.id,
                [member.id for _, member in rows],
            )

        updates.append(ProgressUpdate(challenge.id, kind, progress, completed, reward))
    return updates


async def _sync_team_challenges(
    db: AsyncSession,
    profile: Profile,
    now: datetime,
    outbox: list[Notification],
) -> list[ProgressUpdate]:
    team_ids = select(TeamMember.team_id).where(TeamMember.user_id == profile.id)
    result = await db.execute(
        select(TeamChallengeProgress, TeamChallenge)
        .join(TeamChallenge, TeamChallenge.id == TeamChallengeProgress.team_challenge_id)
        .where(
            TeamChallengeProgress.team_id.in_(team_ids),
            TeamChallengeProgress.completed.is_(False),
        )
        .order_by(TeamChallenge.id.asc(), TeamChallengeProgress.team_id.asc())
    )
    updates: list[ProgressUpdate] = []
    for progress_row, team_challenge in result.all():
        if not _is_running(team_challenge.starts_at, team_challenge.ends_at, now):
            continue

        members = await team_member_profiles(db, progress_row.team_id)
        baselines = dict(progress_row.baseline_data or {})
        missing = [m for m in members if str(m.id) not in baselines]
        if missing:
            # Late joiners count from the first sync that sees them.
            for member in missing:
                baselines[str(member.id)] = live_counters(member)
            progress_row.baseline_data = baselines

        deltas = [
            delta(live_counters(m), baselines[str(m.id)], team_challenge.target_type)
            for m in members
        ]
        if not deltas:
            progress = 0
        elif team_challenge.target_type == "streak":
            progress = max(deltas)
        else:
            progress = sum(deltas)

        completed = progress >= team_challenge.target_value
        progress_row.current_progress = progress
        reward = None
        if completed:
            progress_row.completed = True
            progress_row.completed_at = now
            reward = await _reward_team(db, team_challenge, progress_row.team_id, members, profile, now, outbox)
            logger.info(
                "Team challenge completed: team_challenge_id=%d team_id=%d",
                team_challenge.id,
                progress_row.team_id,
            )

        updates.append(ProgressUpdate(team_challenge.id, "team", progress, completed, reward))
    return updates


async def _reward_team(
    db: AsyncSession,
    team_challenge: TeamChallenge,
    team_id: int,
    members: list[Profile],
    caller: Profile,
    now: datetime,
    outbox: list[Notification],
) -> Reward | None:
    """Issue the team reward per policy. Returns what the caller received."""
    badge = (
        await db.get(BadgeDefinition, team_challenge.reward_badge_id)
        if team_challenge.reward_badge_id
        else None
    )
    base_key = f"team:{team_challenge.id}:{team_id}"

    if team_challenge.reward_policy == "members":
        caller_reward = None
        for member in members:
            key = f"{base_key}:{member.id}"
            try:
                await _claim_reward(
                    db,
                    key,
                    team_challenge_id=team_challenge.id,
                    team_id=team_id,
                    user_id=member.id,
                    xp_awarded=team_challenge.reward_xp,
                    badge_id=team_challenge.reward_badge_id,
                    created_at=now,
                )
            except RewardAlreadyIssued:
                logger.debug("Reward already issued: %s", key)
                continue
            issued = await _pay_member(
                db, member, key, team_challenge.title, team_challenge.reward_xp, badge, now, outbox
            )
            if member.id == caller.id:
                caller_reward = issued
        return caller_reward

    try:
        await _claim_reward(
            db,
            base_key,
            team_challenge_id=team_challenge.id,
            team_id=team_id,
            xp_awarded=team_challenge.reward_xp,
            badge_id=team_challenge.reward_badge_id,
            created_at=now,
        )
    except RewardAlreadyIssued:
        logger.debug("Reward already issued: %s", base_key)
        return None

    team = await db.get(Team, team_id, with_for_update=True)
    if team is not None:
        team.xp += team_challenge.reward_xp
    for member in members:
        if badge is not None:
            await award_badge(db, member, badge, source="team_challenge", now=now, outbox=outbox)
        notification = build_notification(
            user_id=member.id,
            subtype="team_challenge_complete",
            title="Team Challenge Complete!",
            description=f"{team_challenge.title}: +{team_challenge.reward_xp} team XP",
            action_url="/teams",
            now=now,
        )
        db.add(notification)
        outbox.append(notification)
    return Reward(xp=team_challenge.reward_xp, badge=badge.slug if badge is not None else None)


async def sync_progress(
    db: AsyncSession,
    redis: object | None,
    user_id: int,
    now: datetime | None = None,
) -> list[ProgressUpdate]:
    """Recompute progress for every open participation of ``user_id``.

    Solo and duo challenges come first, then team challenges of every team
    the user belongs to. One transaction; notifications go out after commit.
    """
    if now is None:
        now = utcnow()
    outbox: list[Notification] = []
    try:
        profile = await get_profile(db, user_id, for_update=True)
        updates = await _sync_challenges(db, profile, now, outbox)
        updates += await _sync_team_challenges(db, profile, now, outbox)
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    await push_all(redis, outbox)
    return updates
