"""XP ledger, badges and catalogue seeding."""

from __future__ import annotations

import pytest
from sqlalchemy import func, select

from conftest import NOW
from questline.db.models import BadgeDefinition, PowerUp, Quest, XPLedger
from questline.errors import ConstraintViolation, ProfileNotFound
from questline.gamification.badge_service import award_badge, get_user_badges
from questline.gamification.power_up_service import get_power_up_by_name
from questline.gamification.seed import BADGE_SEED_DATA, POWER_UP_SEED_DATA, seed_catalogue
from questline.gamification.xp_service import create_profile, get_profile, get_xp_history, grant_xp


class TestProfiles:
    @pytest.mark.asyncio
    async def test_create_uses_default_timezone(self, db_session):
        profile = await create_profile(db_session, "newbie", now=NOW)
        await db_session.commit()

        assert profile.id is not None
        assert profile.timezone == "UTC"
        assert profile.level == 1
        assert profile.xp == 0

    @pytest.mark.asyncio
    async def test_duplicate_username(self, db_session, factory):
        await factory.profile("taken")
        with pytest.raises(ConstraintViolation):
            await create_profile(db_session, "taken", now=NOW)

    @pytest.mark.asyncio
    async def test_missing_profile(self, db_session):
        with pytest.raises(ProfileNotFound):
            await get_profile(db_session, 12345)


class TestGrantXP:
    """One ledger row per idempotency key."""

    @pytest.mark.asyncio
    async def test_grant_then_duplicate(self, db_session, factory):
        user = await factory.profile()

        first = await grant_xp(db_session, user, 40, "manual", "1", "Bonus", "manual:1", now=NOW)
        second = await grant_xp(db_session, user, 40, "manual", "1", "Bonus", "manual:1", now=NOW)
        await db_session.commit()

        assert first is True
        assert second is False
        assert user.xp == 40
        count = await db_session.execute(select(func.count(XPLedger.id)).where(XPLedger.user_id == user.id))
        assert count.scalar_one() == 1

    @pytest.mark.asyncio
    async def test_level_up_queued_on_outbox(self, db_session, factory):
        user = await factory.profile(xp=1990, level=2)
        outbox = []

        await grant_xp(db_session, user, 20, "manual", "2", "Bonus", "manual:2", now=NOW, outbox=outbox)
        await db_session.commit()

        assert user.level == 3
        assert [n.subtype for n in outbox] == ["level_up"]
        assert outbox[0].id is not None

    @pytest.mark.asyncio
    async def test_history_newest_first(self, db_session, factory):
        user = await factory.profile()
        await grant_xp(db_session, user, 10, "manual", "a", "First", "manual:a", now=NOW)
        await grant_xp(db_session, user, 20, "manual", "b", "Second", "manual:b", now=NOW)
        await db_session.commit()

        history = await get_xp_history(db_session, user.id)

        assert [row.amount for row in history] == [20, 10]


class TestBadges:
    @pytest.mark.asyncio
    async def test_award_once_with_xp(self, db_session, factory):
        user = await factory.profile()
        badge = await factory.badge("first_quest", xp_reward=25)
        outbox = []

        assert await award_badge(db_session, user, badge, source="quest", now=NOW, outbox=outbox)
        assert not await award_badge(db_session, user, badge, source="quest", now=NOW, outbox=outbox)
        await db_session.commit()

        assert user.xp == 25
        assert [n.subtype for n in outbox] == ["badge_earned"]
        earned = await get_user_badges(db_session, user.id)
        assert [b.badge.slug for b in earned] == ["first_quest"]


class TestSeed:
    @pytest.mark.asyncio
    async def test_seed_is_idempotent(self, db_session):
        first = await seed_catalogue(db_session)
        second = await seed_catalogue(db_session)

        assert first["power_ups"] == len(POWER_UP_SEED_DATA)
        assert first["badges"] == len(BADGE_SEED_DATA)
        assert second == {"power_ups": 0, "badges": 0, "quests": 0}
        quests = await db_session.execute(select(func.count(Quest.id)))
        assert quests.scalar_one() == first["quests"]

    @pytest.mark.asyncio
    async def test_seeded_catalogue_supports_purchases(self, db_session):
        await seed_catalogue(db_session)

        shield = await get_power_up_by_name(db_session, "streak shield")
        assert shield is not None
        assert shield.effect_type == "streak_freeze"

        premium = await db_session.execute(
            select(BadgeDefinition.slug).where(BadgeDefinition.requirement_type == "premium_unlock")
        )
        assert set(premium.scalars().all()) == {"premium_supporter", "premium_golden_heart"}
        insurance = await db_session.execute(select(PowerUp).where(PowerUp.effect_type == "streak_save"))
        assert insurance.scalar_one().name == "Streak Insurance"
