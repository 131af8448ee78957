"""Pydantic models for team and friend endpoints."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class CreateTeamRequest(BaseModel):
    name: str = Field(min_length=2, max_length=64)
    team_type: str = Field(default="team", pattern="^(team|duo)$")
    max_members: int = Field(default=5, ge=2)
    description: str | None = Field(default=None, max_length=500)


class TeamResponse(BaseModel):
    id: int
    name: str
    team_type: str
    max_members: int
    creator_id: int
    xp: int


class TeamMemberResponse(BaseModel):
    team_id: int
    user_id: int
    role: str
    joined_at: datetime


class FriendshipResponse(BaseModel):
    user_id: int
    friend_id: int
    status: str
