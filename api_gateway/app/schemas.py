from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field


CanonicalStatus = Literal["SCHEDULED", "LIVE", "PAUSED", "FINISHED", "POSTPONED", "SUSPENDED", "CANCELLED", "AWARDED", "NO_PLAY"]


class UserPrediction(BaseModel):
    pred_home: int
    pred_away: int


class MatchOut(BaseModel):
    id: int
    ext_id: str
    stage: str
    group: str | None = None
    matchday: int | None = None
    home_team: str
    away_team: str
    kickoff_at: datetime
    status: str
    score_home: int | None = None
    score_away: int | None = None
    is_live: bool
    is_finished: bool
    is_scheduled: bool
    is_bettable: bool
    user_prediction: UserPrediction | None = None


class MatchesResponse(BaseModel):
    generated_at_utc: datetime
    matches: list[MatchOut]


class LeaderboardEntry(BaseModel):
    rank: int
    user_id: str
    display_name: str | None = None
    points_total: int
    exact_count: int
    diff_count: int
    outcome_count: int
    bonus_points: int
    first_pred_at: datetime | None = None


class LeaderboardResponse(BaseModel):
    leaderboard: list[LeaderboardEntry]


class PredictionRequest(BaseModel):
    match_id: int = Field(ge=1)
    pred_home: int
    pred_away: int


class PredictionOut(BaseModel):
    user_id: str
    match_id: int
    pred_home: int
    pred_away: int
    created_at: datetime
    updated_at: datetime | None = None


class UserPredictionsResponse(BaseModel):
    user_id: str
    predictions: list[PredictionOut]


class PredictionHistoryEntryOut(BaseModel):
    pred_home: int
    pred_away: int
    archived_at: datetime


class PredictionHistoryResponse(BaseModel):
    user_id: str
    match_id: int
    history: list[PredictionHistoryEntryOut]


class SyncResponse(BaseModel):
    ok: bool
    season: int
    count: int
    results_changed: list[int] = Field(default_factory=list)
    synced_at_utc: datetime | None = None


class RefreshCacheResponse(BaseModel):
    ok: bool
    matches: int
    leaderboard: int


class CacheEntryStats(BaseModel):
    age: int
    ttl: int
    expired: bool


class CircuitStats(BaseModel):
    state: str
    failures: int


class CacheStatsResponse(BaseModel):
    cache: dict[str, CacheEntryStats]
    circuits: dict[str, CircuitStats] = Field(default_factory=dict)


class RecalcResponse(BaseModel):
    ok: bool
    updated: int
    matches: int


class MatchResultUpdate(BaseModel):
    score_home: int = Field(ge=0)
    score_away: int = Field(ge=0)
    status: CanonicalStatus = "FINISHED"


class MatchResultResponse(BaseModel):
    match: MatchOut
    updated: int


class BonusRequest(BaseModel):
    points: int


class BonusResponse(BaseModel):
    user_id: str
    bonus_points: int
    points_total: int
