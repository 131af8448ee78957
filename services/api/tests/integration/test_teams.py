"""Teams, duo capacity and friendships."""

from __future__ import annotations

import pytest
from sqlalchemy import insert, select, update

from conftest import NOW
from questline.db.models import Friendship, Team
from questline.errors import ConstraintViolation, FriendRequestNotFound, InvalidJoin, TeamNotFound
from questline.social.team_service import (
    accept_friend,
    add_friend,
    create_team,
    get_user_teams,
    join_team,
    member_count,
)


class TestDuoCapacity:
    """A duo holds exactly two seats whatever the writer asks for."""

    @pytest.mark.asyncio
    async def test_insert_is_clamped(self, db_session, session_factory, factory):
        owner = await factory.profile("owner")
        db_session.add(Team(name="Pair", team_type="duo", max_members=100, creator_id=owner.id))
        await db_session.commit()

        async with session_factory() as check:
            team = (await check.execute(select(Team).where(Team.name == "Pair"))).scalar_one()
            assert team.max_members == 2

    @pytest.mark.asyncio
    async def test_update_is_clamped(self, db_session, session_factory, factory):
        owner = await factory.profile("owner")
        team = await factory.team(owner, team_type="duo")

        team.max_members = 7
        await db_session.commit()

        async with session_factory() as check:
            assert (await check.get(Team, team.id)).max_members == 2

    @pytest.mark.asyncio
    async def test_conversion_to_duo_is_clamped(self, db_session, session_factory, factory):
        owner = await factory.profile("owner")
        team = await factory.team(owner, max_members=10)

        team.team_type = "duo"
        await db_session.commit()

        async with session_factory() as check:
            assert (await check.get(Team, team.id)).max_members == 2

    @pytest.mark.asyncio
    async def test_core_insert_is_clamped_by_the_database(self, db_session, session_factory, factory):
        owner = await factory.profile("owner")

        await db_session.execute(
            insert(Team).values(name="Raw", team_type="duo", max_members=100, creator_id=owner.id, created_at=NOW)
        )
        await db_session.commit()

        async with session_factory() as check:
            team = (await check.execute(select(Team).where(Team.name == "Raw"))).scalar_one()
            assert team.max_members == 2

    @pytest.mark.asyncio
    async def test_core_update_is_clamped_by_the_database(self, db_session, session_factory, factory):
        owner = await factory.profile("owner")
        team = await factory.team(owner, team_type="duo")
        team_id = team.id

        await db_session.execute(
            update(Team).where(Team.id == team_id).values(max_members=9).execution_options(synchronize_session=False)
        )
        await db_session.commit()

        async with session_factory() as check:
            assert (await check.get(Team, team_id)).max_members == 2

    @pytest.mark.asyncio
    async def test_create_duo_through_service(self, db_session, factory):
        owner = await factory.profile("owner")
        team = await create_team(db_session, owner.id, "  Pair  ", team_type="duo", max_members=50)

        assert team.name == "Pair"
        assert team.max_members == 2
        assert await member_count(db_session, team.id) == 1

    @pytest.mark.asyncio
    async def test_third_member_cannot_join_duo(self, db_session, factory):
        owner = await factory.profile("owner")
        second = await factory.profile("second")
        third = await factory.profile("third")
        team = await create_team(db_session, owner.id, "Pair", team_type="duo")
        await join_team(db_session, team.id, second.id)

        with pytest.raises(InvalidJoin):
            await join_team(db_session, team.id, third.id)


class TestTeams:
    @pytest.mark.asyncio
    async def test_capacity_bounds(self, db_session, factory):
        owner = await factory.profile("owner")
        with pytest.raises(ValueError):
            await create_team(db_session, owner.id, "Solo", max_members=1)
        with pytest.raises(ValueError):
            await create_team(db_session, owner.id, "Crowd", max_members=101)
        with pytest.raises(ValueError):
            await create_team(db_session, owner.id, "Odd", team_type="guild")

    @pytest.mark.asyncio
    async def test_join_and_list(self, db_session, factory):
        owner = await factory.profile("owner")
        member = await factory.profile("member")
        team = await create_team(db_session, owner.id, "Crew", max_members=3)

        await join_team(db_session, team.id, member.id)

        assert [t.id for t in await get_user_teams(db_session, member.id)] == [team.id]
        assert await member_count(db_session, team.id) == 2

    @pytest.mark.asyncio
    async def test_join_twice_rejected(self, db_session, factory):
        owner = await factory.profile("owner")
        member = await factory.profile("member")
        team = await create_team(db_session, owner.id, "Crew")
        await join_team(db_session, team.id, member.id)

        with pytest.raises(ConstraintViolation):
            await join_team(db_session, team.id, member.id)

    @pytest.mark.asyncio
    async def test_unknown_team(self, db_session, factory):
        member = await factory.profile("member")
        with pytest.raises(TeamNotFound):
            await join_team(db_session, 999, member.id)


class TestFriendships:
    @pytest.mark.asyncio
    async def test_request_and_accept(self, db_session, factory):
        a = await factory.profile("ana")
        b = await factory.profile("ben")

        request = await add_friend(db_session, a.id, b.id)
        assert request.status == "pending"

        accepted = await accept_friend(db_session, b.id, a.id)
        assert accepted.status == "accepted"

    @pytest.mark.asyncio
    async def test_reverse_duplicate_rejected(self, db_session, factory):
        a = await factory.profile("ana")
        b = await factory.profile("ben")
        await add_friend(db_session, a.id, b.id)

        with pytest.raises(ConstraintViolation):
            await add_friend(db_session, b.id, a.id)

        rows = (await db_session.execute(select(Friendship))).scalars().all()
        assert len(rows) == 1

    @pytest.mark.asyncio
    async def test_cannot_befriend_self(self, db_session, factory):
        a = await factory.profile("ana")
        with pytest.raises(InvalidJoin):
            await add_friend(db_session, a.id, a.id)

    @pytest.mark.asyncio
    async def test_sender_has_no_request_to_accept(self, db_session, factory):
        a = await factory.profile("ana")
        b = await factory.profile("ben")
        await add_friend(db_session, a.id, b.id)

        with pytest.raises(FriendRequestNotFound):
            await accept_friend(db_session, a.id, b.id)
