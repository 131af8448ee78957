"""Quest assignment and the completion processor.

Completion is the hot path: one transaction finalizes the log entry, moves
the streak, grants XP and bumps the completion counter. The conditional
update on ``completed_at IS NULL`` is the only writer guard, so of two
concurrent completions exactly one wins.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from datetime import date, datetime

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from questline.config import Settings, get_settings
from questline.db.base import ensure_utc, utcnow
from questline.db.models import Notification, Profile, Quest, QuestLogEntry
from questline.errors import AlreadyCompleted, ConstraintViolation, QuestNotFound
from questline.gamification.badge_service import award_quest_count_badges
from questline.gamification.streak_service import advance_streak, local_date
from questline.gamification.xp_service import get_profile, grant_xp
from questline.quests.reflection import validate_reflection
from questline.social.notification_push import publish_event, push_all

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CompletionResult:
    xp_awarded: int
    new_streak: int
    new_level: int
    total_xp: int
    xp_booster_applied: bool = False
    streak_freeze_used: bool = False
    streak_lost: bool = False


def compute_quest_xp(base_xp: int, golden: bool, booster: bool, settings: Settings | None = None) -> int:
    """Multipliers stack: golden x3 and booster x2 give x6."""
    settings = settings or get_settings()
    xp = base_xp
    if golden:
        xp *= settings.golden_quest_multiplier
    if booster:
        xp *= settings.xp_booster_multiplier
    return xp


def booster_applies(profile: Profile, now: datetime) -> bool:
    """True while the booster runs. An expired booster is switched off on the profile."""
    if not profile.xp_booster_active:
        return False
    expires_at = ensure_utc(profile.xp_booster_expires_at)
    if expires_at is None or now <= expires_at:
        return True
    profile.xp_booster_active = False
    profile.xp_booster_expires_at = None
    return False


async def _load_entry(db: AsyncSession, log_id: int, user_id: int) -> QuestLogEntry:
    result = await db.execute(select(QuestLogEntry).where(QuestLogEntry.id == log_id))
    entry = result.scalars().first()
    if entry is None or entry.user_id != user_id:
        raise QuestNotFound(f"Quest log {log_id} not found")
    return entry


async def _already_completed(db: AsyncSession, log_id: int, user_id: int) -> AlreadyCompleted:
    """Discard this attempt and report what the winning completion paid."""
    await db.rollback()
    entry = await _load_entry(db, log_id, user_id)
    return AlreadyCompleted(log_id, entry.xp_awarded)


async def complete_quest(
    db: AsyncSession,
    redis: object | None,
    log_id: int,
    user_id: int,
    reflection_text: str,
    is_golden_quest: bool = False,
    now: datetime | None = None,
) -> CompletionResult:
    """Finalize a quest log entry and apply its XP and streak effects.

    Raises InvalidReflection before touching the database, QuestNotFound for
    entries that are missing or owned by someone else, and AlreadyCompleted
    (carrying the XP paid the first time) when the entry was finalized
    earlier or by a concurrent request. On any error nothing is written.
    """
    settings = get_settings()
    if now is None:
        now = utcnow()
    reflection = validate_reflection(reflection_text)
    outbox: list[Notification] = []

    try:
        # The claim is the first statement so the write lock is held from the
        # start; a concurrent loser waits and then sees completed_at set.
        claimed = await db.execute(
            update(QuestLogEntry)
            .where(
                QuestLogEntry.id == log_id,
                QuestLogEntry.user_id == user_id,
                QuestLogEntry.completed_at.is_(None),
            )
            .values(completed_at=now, reflection_text=reflection)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            raise await _already_completed(db, log_id, user_id)

        entry = await _load_entry(db, log_id, user_id)
        profile = await get_profile(db, user_id, for_update=True)

        golden = (is_golden_quest or entry.is_golden) and settings.is_feature_enabled("golden_quest")
        booster = settings.is_feature_enabled("xp_booster") and booster_applies(profile, now)
        xp = compute_quest_xp(settings.quest_base_xp, golden, booster, settings)
        entry.completed_at = now
        entry.reflection_text = reflection
        entry.xp_awarded = xp

        advance = advance_streak(
            profile,
            local_date(now, profile.timezone),
            now,
            allow_freeze=settings.is_feature_enabled("streak_freeze"),
        )

        granted = await grant_xp(
            db,
            profile,
            amount=xp,
            source="quest",
            source_id=str(log_id),
            description=f"Completed quest: {entry.quest.title}",
            idempotency_key=f"quest:{log_id}",
            now=now,
            outbox=outbox,
        )
        if not granted:
            # Ledger already paid this entry.
            raise await _already_completed(db, log_id, user_id)

        profile.total_quests_completed += 1
        profile.updated_at = now
        await award_quest_count_badges(db, profile, now=now, outbox=outbox)
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info(
        "Quest completed: user_id=%d log_id=%d xp=%d streak=%d level=%d",
        user_id,
        log_id,
        xp,
        profile.streak,
        profile.level,
    )

    await push_all(redis, outbox)
    await publish_event(
        redis,
        "pubsub:quest_completed",
        {"user_id": user_id, "log_id": log_id, "xp": xp, "streak": profile.streak},
    )

    return CompletionResult(
        xp_awarded=xp,
        new_streak=profile.streak,
        new_level=profile.level,
        total_xp=profile.xp,
        xp_booster_applied=booster,
        streak_freeze_used=advance.freeze_used,
        streak_lost=advance.streak_lost,
    )


async def assign_quest(
    db: AsyncSession,
    user_id: int,
    quest_id: int,
    now: datetime | None = None,
    golden: bool | None = None,
) -> QuestLogEntry:
    """Create a pending log entry. ``golden=None`` rolls the golden chance.

    A user holds one entry per local day; a second assignment for the same
    day raises ConstraintViolation.
    """
    settings = get_settings()
    if now is None:
        now = utcnow()
    if golden is None:
        golden = random.random() < settings.golden_quest_chance

    try:
        profile = await get_profile(db, user_id)
        quest = await db.get(Quest, quest_id)
        if quest is None:
            raise QuestNotFound(f"Quest {quest_id} not found")

        entry = QuestLogEntry(
            quest_id=quest.id,
            user_id=user_id,
            assigned_at=now,
            assigned_date=local_date(now, profile.timezone),
            is_golden=golden,
        )
        try:
            async with db.begin_nested():
                db.add(entry)
        except IntegrityError as exc:
            raise ConstraintViolation("A quest is already assigned for that day") from exc
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    await db.refresh(entry)
    return entry


async def _entry_for_day(db: AsyncSession, user_id: int, day: date) -> QuestLogEntry | None:
    result = await db.execute(
        select(QuestLogEntry).where(QuestLogEntry.user_id == user_id, QuestLogEntry.assigned_date == day)
    )
    return result.scalars().first()


async def get_or_assign_daily_quest(
    db: AsyncSession,
    user_id: int,
    now: datetime | None = None,
) -> QuestLogEntry:
    """Return today's entry, assigning the day's rotating quest if there is none."""
    if now is None:
        now = utcnow()
    profile = await get_profile(db, user_id)
    today = local_date(now, profile.timezone)

    entry = await _entry_for_day(db, user_id, today)
    if entry is not None:
        return entry

    quests = await db.execute(
        select(Quest.id).where(Quest.is_active.is_(True)).order_by(Quest.id.asc())
    )
    quest_ids = list(quests.scalars().all())
    if not quest_ids:
        raise QuestNotFound("No active quests available")

    quest_id = quest_ids[today.toordinal() % len(quest_ids)]
    try:
        return await assign_quest(db, user_id, quest_id, now=now)
    except ConstraintViolation:
        # A concurrent request assigned today's entry first.
        entry = await _entry_for_day(db, user_id, today)
        if entry is None:
            raise
        return entry
