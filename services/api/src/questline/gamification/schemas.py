"""Pydantic response models for gamification endpoints."""

from __future__ import annotations

from datetime import date, datetime

from pydantic import BaseModel, Field


# --- Level / XP ---


class LevelResponse(BaseModel):
    level: int
    title: str
    xp_into_level: int
    xp_for_level: int
    next_level: int
    next_title: str


class XPHistoryEntry(BaseModel):
    amount: int
    source: str
    description: str | None = None
    created_at: datetime


# --- Streak ---


class StreakResponse(BaseModel):
    streak: int
    longest_streak: int
    last_quest_date: date | None = None
    streak_lost_at: datetime | None = None
    last_streak_count: int | None = None
    streak_freeze_active: bool
    streak_freeze_expires_at: datetime | None = None


class RestoreStreakResponse(BaseModel):
    streak: int


class StreakOverrideRequest(BaseModel):
    user_id: int
    streak_count: int = Field(ge=0)
    reason: str = Field(min_length=3, max_length=500)


class StreakOverrideResponse(BaseModel):
    user_id: int
    streak: int
    clamped: bool
    audit_logged: bool


# --- Power-ups ---


class InventoryItem(BaseModel):
    id: int
    slug: str
    name: str
    effect_type: str
    purchased_at: datetime


class ActivationResponse(BaseModel):
    power_up: str
    effect_type: str
    expires_at: datetime


# --- Badges ---


class EarnedBadgeResponse(BaseModel):
    slug: str
    name: str
    earned_at: datetime


# --- Summary ---


class ProgressSummaryResponse(BaseModel):
    user_id: int
    username: str
    xp: int
    level: LevelResponse
    total_quests_completed: int
    streak: StreakResponse
    premium_status: bool
    xp_booster_active: bool
    xp_booster_expires_at: datetime | None = None
    badges: list[EarnedBadgeResponse]
    power_ups: list[InventoryItem]
    recent_xp: list[XPHistoryEntry]
