"""Pydantic models for challenge endpoints."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class RewardResponse(BaseModel):
    xp: int
    badge: str | None = None


class ProgressUpdateResponse(BaseModel):
    challenge_id: int
    kind: str
    progress: int
    completed: bool
    reward: RewardResponse | None = None


class SyncResponse(BaseModel):
    updates: list[ProgressUpdateResponse]


class JoinDuoRequest(BaseModel):
    partner_id: int


class JoinTeamChallengeRequest(BaseModel):
    team_id: int


class ParticipantResponse(BaseModel):
    challenge_id: int
    user_id: int
    duo_partner_id: int | None = None
    current_progress: int
    completed: bool
    joined_at: datetime


class TeamChallengeProgressResponse(BaseModel):
    team_challenge_id: int
    team_id: int
    current_progress: int
    completed: bool
    members: int
