from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime

from prediction_core.match_status import SETTLED_STATUSES


@dataclass(frozen=True)
class Scoreline:
    home: int
    away: int


@dataclass(frozen=True)
class MatchFields:
    stage: str
    group: str | None
    matchday: int | None
    home_team: str
    away_team: str
    kickoff_at: datetime
    status: str
    score_home: int | None = None
    score_away: int | None = None


@dataclass(frozen=True)
class Match:
    id: int
    ext_id: str
    stage: str
    group: str | None
    matchday: int | None
    home_team: str
    away_team: str
    kickoff_at: datetime
    status: str
    score_home: int | None = None
    score_away: int | None = None

    @property
    def has_partial_score(self) -> bool:
        return (self.score_home is None) != (self.score_away is None)

    @property
    def result(self) -> Scoreline | None:
        if self.score_home is None or self.score_away is None:
            return None
        return Scoreline(home=int(self.score_home), away=int(self.score_away))

    @property
    def settleable_result(self) -> Scoreline | None:
        """Final result that counts towards the standings, if the match has one."""
        if self.status not in SETTLED_STATUSES:
            return None
        return self.result


@dataclass(frozen=True)
class Prediction:
    user_id: str
    match_id: int
    pred_home: int
    pred_away: int
    created_at: datetime
    updated_at: datetime | None = None


@dataclass(frozen=True)
class PredictionHistoryEntry:
    user_id: str
    match_id: int
    pred_home: int
    pred_away: int
    archived_at: datetime


@dataclass(frozen=True)
class Settlement:
    user_id: str
    match_id: int
    points: int
    exact: int
    diff: int
    outcome: int


@dataclass(frozen=True)
class ScoreRow:
    user_id: str
    points_total: int = 0
    exact_count: int = 0
    diff_count: int = 0
    outcome_count: int = 0
    bonus_points: int = 0
    first_pred_at: datetime | None = None

    def merged(self, *, points: int, exact: int, diff: int, outcome: int) -> "ScoreRow":
        return replace(
            self,
            points_total=int(self.points_total) + int(points),
            exact_count=int(self.exact_count) + int(exact),
            diff_count=int(self.diff_count) + int(diff),
            outcome_count=int(self.outcome_count) + int(outcome),
        )


@dataclass(frozen=True)
class RankedUser:
    rank: int
    user_id: str
    display_name: str | None
    points_total: int
    exact_count: int
    diff_count: int
    outcome_count: int
    bonus_points: int
    first_pred_at: datetime | None
