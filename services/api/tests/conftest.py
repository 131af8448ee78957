"""Shared test fixtures: file-backed async SQLite, test client, factories."""

from __future__ import annotations

import os

# Settings are cached on first use; pin test values before importing the app.
os.environ.setdefault("QL_DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("QL_JWT_SECRET_KEY", "test-secret-key-for-questline-tests")
os.environ.setdefault("QL_LOG_FORMAT", "console")

from collections.abc import AsyncGenerator  # noqa: E402
from datetime import date, datetime, timezone  # noqa: E402
from decimal import Decimal  # noqa: E402
from unittest.mock import AsyncMock, MagicMock  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy import event  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker  # noqa: E402

from questline.auth.jwt import create_access_token  # noqa: E402
from questline.config import get_settings  # noqa: E402
from questline.database import create_engine_for, get_session  # noqa: E402
from questline.db.base import Base  # noqa: E402
from questline.db.models import (  # noqa: E402
    BadgeDefinition,
    Challenge,
    Friendship,
    PaymentProof,
    PaymentTransaction,
    PowerUp,
    Profile,
    Quest,
    QuestLogEntry,
    Team,
    TeamChallenge,
    TeamMember,
    UserPowerUp,
)
from questline.dependencies import get_redis_dep  # noqa: E402
from questline.main import create_app  # noqa: E402

NOW = datetime(2024, 1, 10, 9, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def _fresh_settings():
    """Tests may flip QL_* env vars; never leak a cached Settings between them."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """One SQLite file per test so separate sessions see each other's commits."""
    eng = create_engine_for(f"sqlite+aiosqlite:///{tmp_path / 'questline.db'}")

    @event.listens_for(eng.sync_engine, "connect")
    def _wal(dbapi_connection, _record):
        # Readers must not block the writer in multi-session tests.
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def redis_mock() -> MagicMock:
    """Stand-in for redis.asyncio.Redis; only publish is used."""
    redis = MagicMock()
    redis.publish = AsyncMock(return_value=1)
    redis.ping = AsyncMock(return_value=True)
    return redis


@pytest_asyncio.fixture
async def client(session_factory, redis_mock) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client against the app with the test database and mocked Redis."""
    app = create_app()

    async def _override_session() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    async def _override_redis() -> AsyncGenerator[object, None]:
        yield redis_mock

    app.dependency_overrides[get_session] = _override_session
    app.dependency_overrides[get_redis_dep] = _override_redis

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


def auth_headers(user_id: int) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user_id)}"}


class Factory:
    """Row builders. Every helper commits so rows are visible to other sessions."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def _save(self, row):
        self.db.add(row)
        await self.db.commit()
        return row

    async def profile(self, username: str = "alice", **fields) -> Profile:
        fields.setdefault("timezone", "UTC")
        fields.setdefault("created_at", NOW)
        fields.setdefault("updated_at", NOW)
        return await self._save(Profile(username=username, **fields))

    async def quest(self, title: str = "Gratitude", content: str = "Write three things.") -> Quest:
        return await self._save(Quest(title=title, content=content, is_active=True))

    async def quest_log(
        self,
        user: Profile,
        quest: Quest | None = None,
        is_golden: bool = False,
        assigned_date: date | None = None,
    ) -> QuestLogEntry:
        quest = quest or await self.quest()
        entry = await self._save(
            QuestLogEntry(
                quest_id=quest.id,
                user_id=user.id,
                assigned_at=NOW,
                assigned_date=assigned_date or NOW.date(),
                is_golden=is_golden,
            )
        )
        await self.db.refresh(entry)
        await self.db.commit()
        return entry

    async def power_up(
        self,
        slug: str = "streak_insurance",
        name: str = "Streak Insurance",
        effect_type: str = "streak_save",
        effect_value: int = 24,
    ) -> PowerUp:
        return await self._save(
            PowerUp(
                slug=slug,
                name=name,
                description="",
                effect_type=effect_type,
                effect_value=effect_value,
                price=Decimal("10.00"),
            )
        )

    async def inventory(self, user: Profile, power_up: PowerUp, used_at: datetime | None = None) -> UserPowerUp:
        unit = await self._save(
            UserPowerUp(user_id=user.id, power_up_id=power_up.id, purchased_at=NOW, used_at=used_at)
        )
        await self.db.refresh(unit)
        await self.db.commit()
        return unit

    async def badge(
        self,
        slug: str,
        requirement_type: str | None = None,
        is_premium_only: bool = False,
        xp_reward: int = 0,
    ) -> BadgeDefinition:
        return await self._save(
            BadgeDefinition(
                slug=slug,
                name=slug.replace("_", " ").title(),
                description="",
                category="premium" if is_premium_only else "general",
                requirement_type=requirement_type,
                is_premium_only=is_premium_only,
                xp_reward=xp_reward,
            )
        )

    async def challenge(
        self,
        target_type: str = "quests",
        target_value: int = 3,
        challenge_type: str = "solo",
        reward_xp: int = 100,
        **fields,
    ) -> Challenge:
        return await self._save(
            Challenge(
                title=f"{target_type} x{target_value}",
                challenge_type=challenge_type,
                target_type=target_type,
                target_value=target_value,
                reward_xp=reward_xp,
                **fields,
            )
        )

    async def team_challenge(
        self,
        target_type: str = "quests",
        target_value: int = 3,
        reward_xp: int = 200,
        reward_policy: str = "team",
        **fields,
    ) -> TeamChallenge:
        return await self._save(
            TeamChallenge(
                title=f"team {target_type} x{target_value}",
                target_type=target_type,
                target_value=target_value,
                reward_xp=reward_xp,
                reward_policy=reward_policy,
                **fields,
            )
        )

    async def team(self, creator: Profile, members: tuple[Profile, ...] = (), **fields) -> Team:
        fields.setdefault("team_type", "team")
        fields.setdefault("max_members", 5)
        team = await self._save(Team(name=fields.pop("name", "Crew"), creator_id=creator.id, **fields))
        self.db.add(TeamMember(team_id=team.id, user_id=creator.id, role="admin"))
        for member in members:
            self.db.add(TeamMember(team_id=team.id, user_id=member.id))
        await self.db.commit()
        return team

    async def friends(self, a: Profile, b: Profile, status: str = "accepted") -> Friendship:
        return await self._save(Friendship(user_id=a.id, friend_id=b.id, status=status))

    async def payment(
        self,
        user: Profile,
        item_type: str = "premium",
        item_name: str = "Premium Monthly",
        amount: Decimal = Decimal("99.00"),
    ) -> PaymentProof:
        transaction = await self._save(
            PaymentTransaction(user_id=user.id, amount=amount, item_type=item_type, item_name=item_name)
        )
        return await self._save(
            PaymentProof(
                transaction_id=transaction.id,
                user_id=user.id,
                file_path=f"proofs/{user.id}/{transaction.id}.png",
                file_name="upi.png",
            )
        )


@pytest.fixture
def factory(db_session: AsyncSession) -> Factory:
    return Factory(db_session)
