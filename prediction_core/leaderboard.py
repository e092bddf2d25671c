from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from prediction_core.cache.cache_keys import LEADERBOARD_KEY, MATCHES_KEY
from prediction_core.cache.ttl_cache import TTLCache
from prediction_core.config import leaderboard_ttl_ms, matches_ttl_ms
from prediction_core.datastore.base import Datastore
from prediction_core.models import Match, RankedUser, ScoreRow


logger = logging.getLogger(__name__)

_LAST_INSTANT = datetime.max.replace(tzinfo=timezone.utc)


def ranking_key(row: ScoreRow) -> tuple:
    first = row.first_pred_at
    return (
        -int(row.points_total),
        -int(row.exact_count),
        -int(row.diff_count),
        -int(row.outcome_count),
        first is None,
        first or _LAST_INSTANT,
        row.user_id,
    )


def rank_scores(rows: list[ScoreRow], names: dict[str, str | None], *, limit: int | None = None) -> list[RankedUser]:
    ordered = sorted(rows, key=ranking_key)
    if limit is not None:
        ordered = ordered[: max(0, int(limit))]
    return [
        RankedUser(
            rank=i,
            user_id=r.user_id,
            display_name=names.get(r.user_id),
            points_total=r.points_total,
            exact_count=r.exact_count,
            diff_count=r.diff_count,
            outcome_count=r.outcome_count,
            bonus_points=r.bonus_points,
            first_pred_at=r.first_pred_at,
        )
        for i, r in enumerate(ordered, start=1)
    ]


class LeaderboardBuilder:
    def __init__(
        self,
        *,
        store: Datastore,
        cache: TTLCache,
        matches_ttl: int | None = None,
        leaderboard_ttl: int | None = None,
        limit: int = 100,
    ) -> None:
        self._store = store
        self._cache = cache
        self._matches_ttl = int(matches_ttl if matches_ttl is not None else matches_ttl_ms())
        self._leaderboard_ttl = int(leaderboard_ttl if leaderboard_ttl is not None else leaderboard_ttl_ms())
        self._limit = int(limit)

    def get_matches(self) -> list[Match]:
        return self._cache.get(MATCHES_KEY, self._store.list_matches, self._matches_ttl)

    def get_leaderboard(self) -> list[RankedUser]:
        return self._cache.get(LEADERBOARD_KEY, self._build_leaderboard, self._leaderboard_ttl)

    def get_cache_stats(self) -> dict[str, dict[str, Any]]:
        return self._cache.stats()

    def refresh_all(self) -> dict[str, int]:
        self._cache.invalidate(MATCHES_KEY)
        self._cache.invalidate(LEADERBOARD_KEY)
        matches = self.get_matches()
        leaderboard = self.get_leaderboard()
        logger.info("cache_refresh_all matches=%s leaderboard=%s", len(matches), len(leaderboard))
        return {"matches": len(matches), "leaderboard": len(leaderboard)}

    def _build_leaderboard(self) -> list[RankedUser]:
        return rank_scores(self._store.list_scores(), self._store.user_names(), limit=self._limit)
