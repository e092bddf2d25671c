from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from prediction_core.cache.ttl_cache import TTLCache
from prediction_core.errors import ConcurrentRecalcConflict, MatchNotFound, TransientUpstreamError
from prediction_core.feed.football_data import FeedMatch
from prediction_core.league import League


KICKOFF = datetime(2025, 10, 1, 19, 0, tzinfo=timezone.utc)


class FlakyFeed:
    def __init__(self) -> None:
        self.calls = 0
        self.fail = False
        self.result: tuple[int, int] | None = None

    def fetch_season_matches(self, season: int) -> list[FeedMatch]:
        self.calls += 1
        if self.fail:
            raise TransientUpstreamError("football_data_http_503")
        sh, sa = self.result if self.result else (None, None)
        return [
            FeedMatch(
                external_id="900",
                home_team="Napoli",
                away_team="Benfica",
                kickoff_at=KICKOFF,
                raw_status="FINISHED" if self.result else "TIMED",
                score_home=sh,
                score_away=sa,
            )
        ]


@pytest.fixture()
def feed() -> FlakyFeed:
    return FlakyFeed()


@pytest.fixture()
def clock() -> dict:
    return {"now": KICKOFF - timedelta(days=1)}


@pytest.fixture()
def league(store, feed, clock):
    lg = League(store=store, cache=TTLCache(auto_refresh=False), feed=feed, clock=lambda: clock["now"], sync_ttl=60_000)
    yield lg
    lg.close()


def test_sync_is_rate_limited_by_cache(league, feed) -> None:
    first = league.sync_matches(2025)
    second = league.sync_matches(2025)
    assert first is second
    assert feed.calls == 1
    assert "api_sync_2025" in league.cache.stats()


def test_sync_failure_without_cached_result_propagates(league, feed) -> None:
    first = league.sync_matches(2025)
    league.cache.invalidate("api_sync_2025")
    feed.fail = True
    with pytest.raises(TransientUpstreamError):
        league.sync_matches(2025)
    assert first.count == 1


def test_sync_settles_changed_results(league, store, feed, clock) -> None:
    league.sync_matches(2025)
    [m] = store.list_matches()
    clock["now"] = KICKOFF - timedelta(hours=1)
    league.predictions.place_prediction("u1", m.id, 1, 0)

    clock["now"] = KICKOFF + timedelta(hours=3)
    feed.result = (1, 0)
    league.cache.invalidate("api_sync_2025")
    result = league.sync_matches(2025)

    assert result.results_changed == (m.id,)
    assert store.get_score("u1").points_total == 5
    [row] = league.leaderboard.get_leaderboard()
    assert (row.user_id, row.points_total, row.rank) == ("u1", 5, 1)


def test_override_result_recalculates_and_invalidates(league, store) -> None:
    league.sync_matches(2025)
    [m] = store.list_matches()
    league.predictions.place_prediction("u1", m.id, 2, 2)
    assert league.leaderboard.get_leaderboard()[0].points_total == 0

    match, result = league.override_result(m.id, 1, 1)
    assert match.status == "FINISHED"
    assert result.updated == 1
    assert league.leaderboard.get_leaderboard()[0].points_total == 3
    assert league.leaderboard.get_matches()[0].score_home == 1


def test_override_result_validates_input(league) -> None:
    with pytest.raises(ValueError):
        league.override_result(1, -1, 0)
    with pytest.raises(ValueError):
        league.override_result(1, 1, 0, "OVER")
    with pytest.raises(MatchNotFound):
        league.override_result(12345, 1, 0)


def test_upsert_user_names_appear_on_leaderboard(league, store) -> None:
    league.sync_matches(2025)
    [m] = store.list_matches()
    league.predictions.place_prediction("u1", m.id, 0, 0)
    league.upsert_user("u1", "Marta")
    assert league.leaderboard.get_leaderboard()[0].display_name == "Marta"


def test_failed_settlement_is_retried_by_next_sync(league, store, feed, clock, monkeypatch) -> None:
    league.sync_matches(2025)
    [m] = store.list_matches()
    league.predictions.place_prediction("u1", m.id, 1, 0)

    settle = league.recalc.recalc_for_match
    calls = {"n": 0}

    def conflict_once(match_id: int):
        calls["n"] += 1
        if calls["n"] == 1:
            raise ConcurrentRecalcConflict(f"recalc_conflict:match:{match_id}")
        return settle(match_id)

    monkeypatch.setattr(league.recalc, "recalc_for_match", conflict_once)
    clock["now"] = KICKOFF + timedelta(hours=3)
    feed.result = (1, 0)
    league.cache.invalidate("api_sync_2025")
    first = league.sync_matches(2025)
    assert first.results_changed == (m.id,)
    assert store.get_score("u1").points_total == 0
    assert [p.id for p in store.find_unsettled_matches()] == [m.id]

    league.cache.invalidate("api_sync_2025")
    second = league.sync_matches(2025)
    assert second.results_changed == ()
    assert store.get_score("u1").points_total == 5
    assert store.find_unsettled_matches() == []


@pytest.mark.parametrize("status", ["CANCELLED", "LIVE"])
def test_override_to_non_final_status_agrees_with_rebuild(league, store, status) -> None:
    league.sync_matches(2025)
    [m] = store.list_matches()
    league.predictions.place_prediction("u1", m.id, 1, 0)

    league.override_result(m.id, 1, 0)
    assert store.get_score("u1").points_total == 5

    league.override_result(m.id, 1, 0, status)
    incremental = store.get_score("u1").points_total
    league.recalc.recalc_all()
    assert incremental == store.get_score("u1").points_total == 0
