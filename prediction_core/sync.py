from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from prediction_core.datastore.base import Datastore
from prediction_core.feed.football_data import FeedMatch, MatchFeed
from prediction_core.match_status import resolve_status
from prediction_core.models import MatchFields


logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class SyncResult:
    count: int
    results_changed: tuple[int, ...] = ()
    synced_at: datetime | None = None


def feed_match_fields(record: FeedMatch, *, now: datetime) -> MatchFields:
    resolution = resolve_status(record.raw_status, record.kickoff_at, now, record.score_home, record.score_away)
    return MatchFields(
        stage=record.stage,
        group=record.group,
        matchday=record.matchday,
        home_team=record.home_team,
        away_team=record.away_team,
        kickoff_at=record.kickoff_at,
        status=resolution.canonical,
        score_home=record.score_home,
        score_away=record.score_away,
    )


class SyncOrchestrator:
    def __init__(self, *, feed: MatchFeed, store: Datastore, clock: Callable[[], datetime] = _utcnow) -> None:
        self._feed = feed
        self._store = store
        self._clock = clock

    def sync(self, season: int) -> SyncResult:
        records = self._feed.fetch_season_matches(int(season))
        now = self._clock()
        changed: list[int] = []
        with self._store.transaction():
            for record in records:
                match, result_changed = self._store.upsert_match(record.external_id, feed_match_fields(record, now=now))
                if result_changed:
                    changed.append(int(match.id))
        logger.info("sync_done season=%s count=%s results_changed=%s", int(season), len(records), len(changed))
        return SyncResult(count=len(records), results_changed=tuple(changed), synced_at=now)
