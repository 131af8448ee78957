"""ORM models for the progression engine.

Column types are kept portable so the same metadata runs on PostgreSQL in
production and SQLite in tests.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DDL,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    event,
    false,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from questline.db.base import Base, BigIntId, utcnow


# ---------------------------------------------------------------------------
# Profiles
# ---------------------------------------------------------------------------


class Profile(Base):
    """One row per user: XP, level, streak state and premium flags."""

    __tablename__ = "profiles"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    is_admin: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="UTC", server_default="UTC")

    xp: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, server_default="0")
    level: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    total_quests_completed: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")

    streak: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    longest_streak: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    last_quest_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    streak_lost_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_streak_count: Mapped[int | None] = mapped_column(Integer, nullable=True)

    premium_status: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())
    xp_booster_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())
    xp_booster_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    streak_freeze_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())
    streak_freeze_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


# ---------------------------------------------------------------------------
# Quests
# ---------------------------------------------------------------------------


class Quest(Base):
    """Daily task definition."""

    __tablename__ = "quests"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(String(128), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class QuestLogEntry(Base):
    """A quest assigned to a user for one local day; completed exactly once."""

    __tablename__ = "quest_logs"
    __table_args__ = (
        UniqueConstraint("user_id", "assigned_date", name="quest_logs_user_day_key"),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    quest_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("quests.id"), nullable=False)
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False)
    assigned_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    assigned_date: Mapped[date] = mapped_column(Date, nullable=False)
    is_golden: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reflection_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    xp_awarded: Mapped[int | None] = mapped_column(Integer, nullable=True)

    quest: Mapped[Quest] = relationship("Quest", lazy="joined")


# ---------------------------------------------------------------------------
# XP + Badges
# ---------------------------------------------------------------------------


class XPLedger(Base):
    """Immutable XP transaction log with idempotency key."""

    __tablename__ = "xp_ledger"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    source: Mapped[str] = mapped_column(String(32), nullable=False)
    source_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    description: Mapped[str | None] = mapped_column(String(256), nullable=True)
    idempotency_key: Mapped[str] = mapped_column(String(256), unique=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class BadgeDefinition(Base):
    """Badge catalogue."""

    __tablename__ = "badge_definitions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    slug: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    category: Mapped[str] = mapped_column(String(32), nullable=False, default="general")
    requirement_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    is_premium_only: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())
    xp_reward: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")


class UserBadge(Base):
    """Badges earned by users; UNIQUE(user_id, badge_id) prevents duplicates."""

    __tablename__ = "user_badges"
    __table_args__ = (
        UniqueConstraint("user_id", "badge_id", name="user_badges_user_id_badge_id_key"),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False)
    badge_id: Mapped[int] = mapped_column(Integer, ForeignKey("badge_definitions.id"), nullable=False)
    earned_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    source: Mapped[str | None] = mapped_column(String(32), nullable=True)

    badge: Mapped[BadgeDefinition] = relationship("BadgeDefinition", lazy="joined")


# ---------------------------------------------------------------------------
# Power-ups
# ---------------------------------------------------------------------------


class PowerUp(Base):
    """Power-up catalogue. effect_value is a duration in hours."""

    __tablename__ = "power_ups"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    slug: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    effect_type: Mapped[str] = mapped_column(String(32), nullable=False)
    effect_value: Mapped[int] = mapped_column(Integer, nullable=False, default=24)
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0"))


class UserPowerUp(Base):
    """One inventory unit; used_at is stamped when consumed."""

    __tablename__ = "user_power_ups"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False)
    power_up_id: Mapped[int] = mapped_column(Integer, ForeignKey("power_ups.id"), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    source: Mapped[str] = mapped_column(String(32), nullable=False, default="purchase")
    purchased_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    power_up: Mapped[PowerUp] = relationship("PowerUp", lazy="joined")


# ---------------------------------------------------------------------------
# Social: teams, friends
# ---------------------------------------------------------------------------

DUO_MAX_MEMBERS = 2


class Team(Base):
    """A team or a duo. Duos always hold exactly two seats."""

    __tablename__ = "teams"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(64), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    team_type: Mapped[str] = mapped_column(String(16), nullable=False, default="team")
    max_members: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    creator_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False)
    xp: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, server_default="0")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


def clamp_team_capacity(team: Team) -> None:
    """Force duo capacity to two seats whatever the caller asked for."""
    if team.team_type == "duo":
        team.max_members = DUO_MAX_MEMBERS


@event.listens_for(Team, "before_insert")
@event.listens_for(Team, "before_update")
def _clamp_team_on_write(_mapper: Any, _connection: Any, target: Team) -> None:
    clamp_team_capacity(target)


# Writers that bypass the ORM get the same clamp from the database.
DUO_CAPACITY_TRIGGERS: dict[str, list[str]] = {
    "postgresql": [
        "CREATE OR REPLACE FUNCTION teams_clamp_duo_capacity() RETURNS trigger AS $$ "
        "BEGIN IF NEW.team_type = 'duo' THEN NEW.max_members := 2; END IF; RETURN NEW; END; "
        "$$ LANGUAGE plpgsql",
        "CREATE TRIGGER teams_duo_capacity BEFORE INSERT OR UPDATE ON teams "
        "FOR EACH ROW EXECUTE FUNCTION teams_clamp_duo_capacity()",
    ],
    # SQLite cannot assign NEW; fix the stored row right after the write.
    "sqlite": [
        "CREATE TRIGGER teams_duo_capacity_insert AFTER INSERT ON teams "
        "FOR EACH ROW WHEN NEW.team_type = 'duo' AND NEW.max_members <> 2 "
        "BEGIN UPDATE teams SET max_members = 2 WHERE id = NEW.id; END",
        "CREATE TRIGGER teams_duo_capacity_update AFTER UPDATE OF team_type, max_members ON teams "
        "FOR EACH ROW WHEN NEW.team_type = 'duo' AND NEW.max_members <> 2 "
        "BEGIN UPDATE teams SET max_members = 2 WHERE id = NEW.id; END",
    ],
}

for _dialect, _statements in DUO_CAPACITY_TRIGGERS.items():
    for _statement in _statements:
        event.listen(Team.__table__, "after_create", DDL(_statement).execute_if(dialect=_dialect))


class TeamMember(Base):
    __tablename__ = "team_members"
    __table_args__ = (
        UniqueConstraint("team_id", "user_id", name="team_members_team_user_key"),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    team_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("teams.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False)
    role: Mapped[str] = mapped_column(String(16), nullable=False, default="member")
    joined_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class Friendship(Base):
    """Directed friend request; status becomes 'accepted' once the addressee agrees."""

    __tablename__ = "friendships"
    __table_args__ = (
        UniqueConstraint("user_id", "friend_id", name="friendships_user_friend_key"),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False)
    friend_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


# ---------------------------------------------------------------------------
# Challenges
# ---------------------------------------------------------------------------


class Challenge(Base):
    """Solo or duo challenge measured against a target counter."""

    __tablename__ = "challenges"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(String(128), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    challenge_type: Mapped[str] = mapped_column(String(16), nullable=False, default="solo")
    target_type: Mapped[str] = mapped_column(String(16), nullable=False)
    target_value: Mapped[int] = mapped_column(Integer, nullable=False)
    reward_xp: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    reward_badge_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("badge_definitions.id"), nullable=True)
    starts_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    ends_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class ChallengeParticipant(Base):
    """Snapshot-based progress tracker for one user in one challenge."""

    __tablename__ = "challenge_participants"
    __table_args__ = (
        UniqueConstraint("challenge_id", "user_id", name="challenge_participants_challenge_user_key"),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    challenge_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("challenges.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False)
    duo_partner_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("profiles.id"), nullable=True)
    baseline_quests: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    baseline_xp: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    baseline_streak: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    current_progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    joined_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class TeamChallenge(Base):
    """Team-level challenge. reward_policy: 'team' (one team reward) or 'members'."""

    __tablename__ = "team_challenges"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(String(128), nullable=False)
    target_type: Mapped[str] = mapped_column(String(16), nullable=False)
    target_value: Mapped[int] = mapped_column(Integer, nullable=False)
    reward_xp: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    reward_badge_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("badge_definitions.id"), nullable=True)
    reward_policy: Mapped[str] = mapped_column(String(16), nullable=False, default="team")
    starts_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    ends_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class TeamChallengeProgress(Base):
    """Team progress; baseline_data maps str(member_id) -> {quests, xp, streak}."""

    __tablename__ = "team_challenge_progress"
    __table_args__ = (
        UniqueConstraint("team_id", "team_challenge_id", name="team_challenge_progress_team_challenge_key"),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    team_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("teams.id", ondelete="CASCADE"), nullable=False)
    team_challenge_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("team_challenges.id", ondelete="CASCADE"), nullable=False
    )
    baseline_data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    current_progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    joined_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class ChallengeReward(Base):
    """Reward audit row. The unique idempotency_key makes issuance insert-or-skip."""

    __tablename__ = "challenge_rewards"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    idempotency_key: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    challenge_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("challenges.id"), nullable=True)
    team_challenge_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("team_challenges.id"), nullable=True)
    user_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("profiles.id"), nullable=True)
    team_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("teams.id"), nullable=True)
    xp_awarded: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    badge_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("badge_definitions.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------


class PaymentTransaction(Base):
    """Purchase intent. status: pending -> completed | rejected."""

    __tablename__ = "payment_transactions"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="INR")
    item_type: Mapped[str] = mapped_column(String(32), nullable=False)
    item_name: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class PaymentProof(Base):
    """User-submitted evidence of a UPI payment. status: pending -> approved | rejected."""

    __tablename__ = "payment_proofs"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    transaction_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("payment_transactions.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False)
    file_path: Mapped[str] = mapped_column(String(256), nullable=False)
    file_name: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    uploaded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reviewed_by: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("profiles.id"), nullable=True)
    admin_note: Mapped[str | None] = mapped_column(Text, nullable=True)


class Subscription(Base):
    """At most one subscription per user; approvals replace the expiry."""

    __tablename__ = "subscriptions"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("profiles.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    tier: Mapped[str] = mapped_column(String(16), nullable=False, default="premium")
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active")
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class AdminAuditLog(Base):
    __tablename__ = "admin_audit_logs"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    admin_user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("profiles.id"), nullable=False)
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    target_type: Mapped[str] = mapped_column(String(32), nullable=False)
    target_id: Mapped[str] = mapped_column(String(64), nullable=False)
    details: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


class Notification(Base):
    """Persisted user notifications."""

    __tablename__ = "notifications"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    subtype: Mapped[str] = mapped_column(String(64), nullable=False)
    title: Mapped[str] = mapped_column(String(256), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    action_url: Mapped[str | None] = mapped_column(String(256), nullable=True)
    read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
