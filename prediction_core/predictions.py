from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable

from prediction_core.cache.cache_keys import LEADERBOARD_KEY
from prediction_core.cache.ttl_cache import TTLCache
from prediction_core.datastore.base import Datastore
from prediction_core.errors import InvalidPrediction, MatchNotFound, PredictionLocked
from prediction_core.match_status import resolve_status
from prediction_core.models import Prediction, PredictionHistoryEntry, ScoreRow
from prediction_core.recalc import RecalcEngine


logger = logging.getLogger(__name__)

MAX_GOALS = 99


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _goals(value: Any, field: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidPrediction(f"{field}_must_be_int")
    if value < 0 or value > MAX_GOALS:
        raise InvalidPrediction(f"{field}_out_of_range")
    return value


class PredictionBook:
    def __init__(
        self,
        *,
        store: Datastore,
        recalc: RecalcEngine | None = None,
        cache: TTLCache | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._recalc = recalc
        self._cache = cache
        self._clock = clock

    def place_prediction(
        self,
        user_id: str,
        match_id: int,
        pred_home: int,
        pred_away: int,
        now: datetime | None = None,
        *,
        enforce_lock: bool = True,
    ) -> Prediction:
        """Create or replace a prediction, archiving the one it replaces.

        ``enforce_lock=False`` is the admin path: it writes past kickoff and
        re-settles the match when it already has a final result.
        """
        uid = str(user_id or "").strip()
        if not uid:
            raise InvalidPrediction("user_id_required")
        home = _goals(pred_home, "pred_home")
        away = _goals(pred_away, "pred_away")
        ts = now or self._clock()

        first_pred_set = False
        with self._store.transaction():
            match = self._store.get_match(int(match_id))
            if match is None:
                raise MatchNotFound(f"match_not_found:{match_id}")
            resolution = resolve_status(match.status, match.kickoff_at, ts, match.score_home, match.score_away)
            if enforce_lock and not resolution.is_bettable:
                raise PredictionLocked(f"prediction_locked:{match.id}:{resolution.canonical}")

            existing = self._store.find_prediction(uid, match.id)
            if existing is not None:
                self._store.append_prediction_history(uid, match.id, existing, archived_at=ts)
            saved = self._store.save_prediction(uid, match.id, pred_home=home, pred_away=away, now=ts)
            if match.settleable_result is not None:
                self._store.mark_unsettled(match.id)

            row = self._store.get_score(uid)
            if row is None:
                self._store.upsert_score(uid, ScoreRow(user_id=uid, first_pred_at=saved.created_at))
                first_pred_set = True
            elif row.first_pred_at is None or saved.created_at < row.first_pred_at:
                self._store.upsert_score(uid, replace(row, first_pred_at=saved.created_at))
                first_pred_set = True

        logger.info(
            "prediction_saved user_id=%s match_id=%s pred=%s:%s replaced=%s locked_override=%s",
            uid, match.id, home, away, existing is not None, not enforce_lock,
        )
        if self._recalc is not None and match.settleable_result is not None:
            self._recalc.recalc_for_match(match.id)
        elif first_pred_set and self._cache is not None:
            self._cache.invalidate(LEADERBOARD_KEY)
        return saved

    def delete_prediction(self, user_id: str, match_id: int, now: datetime | None = None) -> bool:
        uid = str(user_id or "").strip()
        ts = now or self._clock()
        with self._store.transaction():
            existing = self._store.find_prediction(uid, int(match_id))
            if existing is None:
                return False
            self._store.append_prediction_history(uid, int(match_id), existing, archived_at=ts)
            self._store.delete_prediction(uid, int(match_id))
            match = self._store.get_match(int(match_id))
            if match is not None and match.settleable_result is not None:
                self._store.mark_unsettled(match.id)
        logger.info("prediction_deleted user_id=%s match_id=%s", uid, int(match_id))

        if self._recalc is not None and match is not None and match.settleable_result is not None:
            self._recalc.recalc_for_match(match.id)
        elif self._cache is not None:
            self._cache.invalidate(LEADERBOARD_KEY)
        return True

    def history(self, user_id: str, match_id: int) -> list[PredictionHistoryEntry]:
        return self._store.prediction_history(str(user_id), int(match_id))

    def for_user(self, user_id: str) -> list[Prediction]:
        return self._store.find_user_predictions(str(user_id))
