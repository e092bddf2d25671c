from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable, TypeVar

from prediction_core.cache.cache_keys import LEADERBOARD_KEY
from prediction_core.cache.ttl_cache import TTLCache
from prediction_core.config import recalc_max_retries
from prediction_core.datastore.base import Datastore
from prediction_core.errors import ConcurrentRecalcConflict, DataIntegrityError, DatastoreBusyError, MatchNotFound
from prediction_core.models import Match, ScoreRow, Scoreline, Settlement
from prediction_core.scoring import hit_counts, score_prediction


logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RecalcResult:
    updated: int
    matches: int = 1


class RecalcEngine:
    """Turns final scores into per-user aggregates.

    Each settled match leaves one settlement row per prediction. Settling a
    match again applies only the difference between the new and the stored
    settlement, so results merge across matches and repeated runs are no-ops.
    Recalculations are serialized in-process and each runs in one datastore
    transaction.
    """

    def __init__(
        self,
        *,
        store: Datastore,
        cache: TTLCache | None = None,
        max_retries: int | None = None,
        backoff_sec: float = 0.05,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._store = store
        self._cache = cache
        self._max_retries = int(max_retries if max_retries is not None else recalc_max_retries())
        self._backoff_sec = float(backoff_sec)
        self._sleep = sleep
        self._lock = threading.Lock()

    def recalc_for_match(self, match_id: int) -> RecalcResult:
        result = self._serialized(lambda: self._settle_match(int(match_id)), op=f"match:{int(match_id)}")
        if result.matches:
            self._invalidate_leaderboard()
        return result

    def recalc_all(self) -> RecalcResult:
        result = self._serialized(self._rebuild, op="all")
        self._invalidate_leaderboard()
        return result

    def award_bonus(self, user_id: str, points: int) -> ScoreRow:
        uid = str(user_id or "").strip()
        if not uid:
            raise ValueError("user_id_required")
        if isinstance(points, bool) or not isinstance(points, int):
            raise ValueError("bonus_points_must_be_int")

        def _apply() -> ScoreRow:
            row = self._store.get_score(uid)
            if row is None:
                row = ScoreRow(user_id=uid, first_pred_at=self._store.earliest_prediction_times().get(uid))
            updated = replace(row, points_total=row.points_total + points, bonus_points=row.bonus_points + points)
            self._store.upsert_score(uid, updated)
            return updated

        row = self._serialized(_apply, op=f"bonus:{uid}")
        logger.info("bonus_awarded user_id=%s points=%s bonus_total=%s", uid, points, row.bonus_points)
        self._invalidate_leaderboard()
        return row

    def _invalidate_leaderboard(self) -> None:
        if self._cache is not None:
            self._cache.invalidate(LEADERBOARD_KEY)

    def _serialized(self, fn: Callable[[], T], *, op: str) -> T:
        attempt = 0
        with self._lock:
            while True:
                try:
                    with self._store.transaction():
                        return fn()
                except DatastoreBusyError as e:
                    attempt += 1
                    if attempt > self._max_retries:
                        raise ConcurrentRecalcConflict(f"recalc_conflict:{op}") from e
                    delay = self._backoff_sec * (2 ** (attempt - 1))
                    logger.warning("recalc_busy op=%s attempt=%s retry_in_sec=%.3f", op, attempt, delay)
                    self._sleep(delay)

    def _settle_match(self, match_id: int) -> RecalcResult:
        match = self._store.get_match(match_id)
        if match is None:
            raise MatchNotFound(f"match_not_found:{match_id}")
        return self._settle(match, first_pred_at=None)

    def _settle(self, match: Match, *, first_pred_at: dict[str, datetime] | None) -> RecalcResult:
        actual = match.settleable_result
        previous = {s.user_id: s for s in self._store.find_settlements(match.id)}
        fresh: dict[str, Settlement] = {}
        if actual is None:
            if match.has_partial_score:
                logger.warning("recalc_skipped match_id=%s", match.id, exc_info=DataIntegrityError(f"partial_score:{match.id}"))
            if not previous:
                self._store.replace_settlements(match.id, [], settled_result=None)
                return RecalcResult(updated=0, matches=0)
            logger.info("recalc_unsettle match_id=%s status=%s predictions=%s", match.id, match.status, len(previous))
        else:
            for p in self._store.find_predictions(match.id):
                points = score_prediction(Scoreline(home=int(p.pred_home), away=int(p.pred_away)), actual)
                exact, diff, outcome = hit_counts(points)
                fresh[p.user_id] = Settlement(user_id=p.user_id, match_id=match.id, points=points, exact=exact, diff=diff, outcome=outcome)

        for user_id in sorted(set(fresh) | set(previous)):
            new = fresh.get(user_id)
            old = previous.get(user_id)
            if new == old:
                continue
            row = self._store.get_score(user_id)
            if row is None:
                if first_pred_at is None:
                    first_pred_at = self._store.earliest_prediction_times()
                row = ScoreRow(user_id=user_id, first_pred_at=first_pred_at.get(user_id))
            self._store.upsert_score(
                user_id,
                row.merged(
                    points=(new.points if new else 0) - (old.points if old else 0),
                    exact=(new.exact if new else 0) - (old.exact if old else 0),
                    diff=(new.diff if new else 0) - (old.diff if old else 0),
                    outcome=(new.outcome if new else 0) - (old.outcome if old else 0),
                ),
            )
        self._store.replace_settlements(match.id, [fresh[u] for u in sorted(fresh)], settled_result=actual)
        if actual is None:
            return RecalcResult(updated=len(previous))
        logger.info("recalc_match match_id=%s result=%s:%s predictions=%s", match.id, actual.home, actual.away, len(fresh))
        return RecalcResult(updated=len(fresh))

    def _rebuild(self) -> RecalcResult:
        self._store.reset_scores()
        self._store.clear_settlements()
        firsts = self._store.earliest_prediction_times()
        rows = {r.user_id: r for r in self._store.list_scores()}
        for user_id in sorted(set(rows) | set(firsts)):
            row = rows.get(user_id) or ScoreRow(user_id=user_id)
            self._store.upsert_score(
                user_id,
                ScoreRow(user_id=user_id, points_total=row.bonus_points, bonus_points=row.bonus_points, first_pred_at=firsts.get(user_id)),
            )

        updated = 0
        finished = self._store.find_finished_matches()
        for match in finished:
            updated += self._settle(match, first_pred_at=firsts).updated
        logger.info("recalc_all matches=%s predictions=%s users=%s", len(finished), updated, len(set(rows) | set(firsts)))
        return RecalcResult(updated=updated, matches=len(finished))
