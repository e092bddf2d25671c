from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Iterable

from prediction_core.cache.cache_keys import LEADERBOARD_KEY, MATCHES_KEY, sync_key
from prediction_core.cache.ttl_cache import TTLCache
from prediction_core.config import sync_ttl_ms
from prediction_core.datastore.base import Datastore
from prediction_core.errors import LeagueError, MatchNotFound
from prediction_core.feed.football_data import MatchFeed
from prediction_core.leaderboard import LeaderboardBuilder
from prediction_core.match_status import CANONICAL_STATUSES, FINISHED
from prediction_core.models import Match
from prediction_core.predictions import PredictionBook
from prediction_core.recalc import RecalcEngine, RecalcResult
from prediction_core.sync import SyncOrchestrator, SyncResult


logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class League:
    """Wires the datastore, the cache and the feed into the league operations."""

    def __init__(
        self,
        *,
        store: Datastore,
        cache: TTLCache,
        feed: MatchFeed,
        clock: Callable[[], datetime] = _utcnow,
        sync_ttl: int | None = None,
        recalc_backoff_sec: float = 0.05,
    ) -> None:
        self.store = store
        self.cache = cache
        self.clock = clock
        self._sync_ttl = int(sync_ttl if sync_ttl is not None else sync_ttl_ms())
        self.recalc = RecalcEngine(store=store, cache=cache, backoff_sec=recalc_backoff_sec)
        self.orchestrator = SyncOrchestrator(feed=feed, store=store, clock=clock)
        self.leaderboard = LeaderboardBuilder(store=store, cache=cache)
        self.predictions = PredictionBook(store=store, recalc=self.recalc, cache=cache, clock=clock)

    def sync_matches(self, season: int) -> SyncResult:
        s = int(season)
        return self.cache.get(sync_key(s), lambda: self._sync_and_settle(s), self._sync_ttl)

    def _sync_and_settle(self, season: int) -> SyncResult:
        result = self.orchestrator.sync(season)
        self.cache.invalidate(MATCHES_KEY)
        self.cache.invalidate(LEADERBOARD_KEY)
        self.settle_pending(result.results_changed)
        return result

    def settle_pending(self, match_ids: Iterable[int] = ()) -> list[int]:
        """Settle the given matches plus every match whose settlement is stale.

        A match that fails to settle keeps its stale marker and is picked up
        again by the next call. Returns the ids that are still pending.
        """
        pending = list(dict.fromkeys(int(m) for m in match_ids))
        pending += [m.id for m in self.store.find_unsettled_matches() if m.id not in pending]
        failed: list[int] = []
        for match_id in pending:
            try:
                self.recalc.recalc_for_match(match_id)
            except LeagueError:
                logger.warning("sync_settle_failed match_id=%s", match_id, exc_info=True)
                failed.append(match_id)
        if failed:
            logger.warning("sync_settle_deferred match_ids=%s", failed)
        return failed

    def override_result(self, match_id: int, score_home: int, score_away: int, status: str | None = None) -> tuple[Match, RecalcResult]:
        for field, v in (("score_home", score_home), ("score_away", score_away)):
            if isinstance(v, bool) or not isinstance(v, int) or v < 0:
                raise ValueError(f"{field}_invalid")
        canonical = str(status or FINISHED).strip().upper()
        if canonical not in CANONICAL_STATUSES:
            raise ValueError("status_invalid")

        match = self.store.set_match_result(int(match_id), score_home=score_home, score_away=score_away, status=canonical)
        if match is None:
            raise MatchNotFound(f"match_not_found:{match_id}")
        logger.info("match_result_override match_id=%s result=%s:%s status=%s", match.id, score_home, score_away, canonical)
        self.cache.invalidate(MATCHES_KEY)
        self.cache.invalidate(LEADERBOARD_KEY)
        return match, self.recalc.recalc_for_match(match.id)

    def refresh_all(self) -> dict[str, int]:
        return self.leaderboard.refresh_all()

    def upsert_user(self, user_id: str, display_name: str | None = None) -> None:
        uid = str(user_id or "").strip()
        if not uid:
            raise ValueError("user_id_required")
        self.store.upsert_user(uid, display_name)
        self.cache.invalidate(LEADERBOARD_KEY)

    def close(self) -> None:
        self.cache.close()
