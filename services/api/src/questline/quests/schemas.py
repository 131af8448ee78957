"""Pydantic models for quest endpoints."""

from __future__ import annotations

from datetime import date, datetime

from pydantic import BaseModel, Field


class CompleteQuestRequest(BaseModel):
    reflection_text: str = Field(max_length=2000)
    is_golden_quest: bool = False


class CompleteQuestResponse(BaseModel):
    xp_awarded: int
    streak: int
    level: int
    total_xp: int
    xp_booster_applied: bool
    streak_freeze_used: bool
    streak_lost: bool


class QuestLogResponse(BaseModel):
    log_id: int
    quest_id: int
    title: str
    content: str
    assigned_date: date
    is_golden: bool
    completed_at: datetime | None = None
    xp_awarded: int | None = None
