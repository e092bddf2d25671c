from __future__ import annotations

from contextlib import AbstractContextManager
from datetime import datetime
from typing import Protocol

from prediction_core.models import Match, MatchFields, Prediction, PredictionHistoryEntry, ScoreRow, Scoreline, Settlement


class Datastore(Protocol):
    """Read/write contract the core consumes.

    Each call is atomic on its own. ``transaction()`` groups calls made on the
    same thread into one atomic unit and may be nested.
    """

    def transaction(self) -> AbstractContextManager[None]: ...

    def upsert_match(self, ext_id: str, fields: MatchFields) -> tuple[Match, bool]: ...

    def get_match(self, match_id: int) -> Match | None: ...

    def list_matches(self) -> list[Match]: ...

    def set_match_result(self, match_id: int, *, score_home: int, score_away: int, status: str) -> Match | None: ...

    def find_finished_matches(self) -> list[Match]: ...

    def find_predictions(self, match_id: int) -> list[Prediction]: ...

    def find_prediction(self, user_id: str, match_id: int) -> Prediction | None: ...

    def find_user_predictions(self, user_id: str) -> list[Prediction]: ...

    def save_prediction(self, user_id: str, match_id: int, *, pred_home: int, pred_away: int, now: datetime) -> Prediction: ...

    def delete_prediction(self, user_id: str, match_id: int) -> bool: ...

    def earliest_prediction_times(self) -> dict[str, datetime]: ...

    def append_prediction_history(self, user_id: str, match_id: int, old_prediction: Prediction, *, archived_at: datetime) -> None: ...

    def prediction_history(self, user_id: str, match_id: int) -> list[PredictionHistoryEntry]: ...

    def get_score(self, user_id: str) -> ScoreRow | None: ...

    def list_scores(self) -> list[ScoreRow]: ...

    def upsert_score(self, user_id: str, aggregate: ScoreRow) -> None: ...

    def reset_scores(self) -> None: ...

    def find_settlements(self, match_id: int) -> list[Settlement]: ...

    def replace_settlements(self, match_id: int, settlements: list[Settlement], *, settled_result: Scoreline | None) -> None: ...

    def clear_settlements(self) -> None: ...

    def mark_unsettled(self, match_id: int) -> None: ...

    def find_unsettled_matches(self) -> list[Match]: ...

    def upsert_user(self, user_id: str, display_name: str | None) -> None: ...

    def user_names(self) -> dict[str, str | None]: ...
