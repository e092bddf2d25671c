from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from prediction_core.cache.ttl_cache import TTLCache
from prediction_core.errors import ConcurrentRecalcConflict, DatastoreBusyError, MatchNotFound
from prediction_core.recalc import RecalcEngine


KICKOFF = datetime(2025, 10, 1, 19, 0, tzinfo=timezone.utc)
BEFORE = KICKOFF - timedelta(days=1)


def _predict(store, user_id: str, match_id: int, home: int, away: int, *, at=BEFORE) -> None:
    store.save_prediction(user_id, match_id, pred_home=home, pred_away=away, now=at)


def _rows(store) -> list[tuple]:
    return [(r.user_id, r.points_total, r.exact_count, r.diff_count, r.outcome_count, r.bonus_points, r.first_pred_at) for r in store.list_scores()]


def test_exact_prediction_earns_five_points(store, add_match) -> None:
    m = add_match("1", status="FINISHED", score=(2, 1))
    other = add_match("2", status="FINISHED", score=(0, 0), kickoff_at=KICKOFF + timedelta(days=1))
    _predict(store, "u", m.id, 2, 1)
    _predict(store, "v", other.id, 0, 0)
    engine = RecalcEngine(store=store)

    engine.recalc_for_match(other.id)
    before_v = store.get_score("v")
    result = engine.recalc_for_match(m.id)

    assert result.updated == 1
    u = store.get_score("u")
    assert (u.points_total, u.exact_count, u.diff_count, u.outcome_count) == (5, 1, 0, 0)
    assert store.get_score("v") == before_v


def test_recalc_for_match_merges_across_matches(store, add_match) -> None:
    m1 = add_match("1", status="FINISHED", score=(2, 1))
    m2 = add_match("2", status="FINISHED", score=(1, 1), kickoff_at=KICKOFF + timedelta(days=1))
    _predict(store, "u", m1.id, 3, 2)
    _predict(store, "u", m2.id, 0, 0)
    engine = RecalcEngine(store=store)

    engine.recalc_for_match(m1.id)
    engine.recalc_for_match(m2.id)

    u = store.get_score("u")
    assert (u.points_total, u.exact_count, u.diff_count, u.outcome_count) == (6, 0, 2, 0)


def test_recalc_for_match_twice_is_a_no_op(store, add_match) -> None:
    m = add_match("1", status="FINISHED", score=(1, 0))
    _predict(store, "u", m.id, 2, 0)
    engine = RecalcEngine(store=store)
    engine.recalc_for_match(m.id)
    once = _rows(store)
    engine.recalc_for_match(m.id)
    assert _rows(store) == once


def test_corrected_result_replaces_previous_contribution(store, add_match) -> None:
    m = add_match("1", status="FINISHED", score=(1, 0))
    _predict(store, "u", m.id, 1, 0)
    engine = RecalcEngine(store=store)
    engine.recalc_for_match(m.id)
    assert store.get_score("u").points_total == 5

    store.set_match_result(m.id, score_home=2, score_away=0, status="FINISHED")
    engine.recalc_for_match(m.id)
    u = store.get_score("u")
    assert (u.points_total, u.exact_count, u.outcome_count) == (2, 0, 1)


def test_recalc_for_match_without_result_updates_nothing(store, add_match) -> None:
    m = add_match("1", status="SCHEDULED")
    _predict(store, "u", m.id, 1, 0)
    result = RecalcEngine(store=store).recalc_for_match(m.id)
    assert result.updated == 0
    assert store.list_scores() == []


def test_recalc_for_unknown_match_raises(store) -> None:
    with pytest.raises(MatchNotFound):
        RecalcEngine(store=store).recalc_for_match(404)


def test_recalc_all_is_idempotent_and_matches_incremental(store, add_match) -> None:
    m1 = add_match("1", status="FINISHED", score=(2, 1))
    m2 = add_match("2", status="AWARDED", score=(3, 0), kickoff_at=KICKOFF + timedelta(days=1))
    m3 = add_match("3", status="SCHEDULED", kickoff_at=KICKOFF + timedelta(days=2))
    _predict(store, "a", m1.id, 2, 1)
    _predict(store, "a", m2.id, 1, 0, at=BEFORE - timedelta(hours=1))
    _predict(store, "b", m1.id, 0, 1)
    _predict(store, "c", m3.id, 1, 1)
    engine = RecalcEngine(store=store)

    engine.recalc_for_match(m1.id)
    engine.recalc_for_match(m2.id)
    incremental = [r[:5] for r in _rows(store)]

    engine.recalc_all()
    first = _rows(store)
    engine.recalc_all()
    assert _rows(store) == first
    assert [r[:5] for r in first if r[0] in {"a", "b"}] == incremental

    a = store.get_score("a")
    assert (a.points_total, a.exact_count, a.outcome_count) == (7, 1, 1)
    assert a.first_pred_at == BEFORE - timedelta(hours=1)
    assert store.get_score("c").points_total == 0


def test_recalc_all_preserves_bonus_points(store, add_match) -> None:
    m = add_match("1", status="FINISHED", score=(0, 0))
    _predict(store, "u", m.id, 1, 1)
    engine = RecalcEngine(store=store)
    engine.award_bonus("u", 4)
    engine.recalc_all()
    u = store.get_score("u")
    assert (u.points_total, u.bonus_points, u.diff_count) == (7, 4, 1)


def test_recalc_invalidates_leaderboard_cache(store, add_match) -> None:
    cache = TTLCache(auto_refresh=False)
    cache.get("leaderboard", lambda: ["stale"], 60_000)
    m = add_match("1", status="FINISHED", score=(1, 2))
    RecalcEngine(store=store, cache=cache).recalc_for_match(m.id)
    assert "leaderboard" not in cache.stats()


def test_busy_datastore_is_retried_then_reported(store, add_match, monkeypatch) -> None:
    m = add_match("1", status="FINISHED", score=(1, 0))
    sleeps: list[float] = []
    engine = RecalcEngine(store=store, max_retries=2, backoff_sec=0.01, sleep=sleeps.append)

    def busy():
        raise DatastoreBusyError("datastore_busy:database is locked")

    monkeypatch.setattr(store, "transaction", busy)
    with pytest.raises(ConcurrentRecalcConflict):
        engine.recalc_for_match(m.id)
    assert sleeps == [0.01, 0.02]


def test_match_leaving_final_status_gives_its_points_back(store, add_match) -> None:
    m = add_match("1", status="FINISHED", score=(1, 0))
    _predict(store, "u", m.id, 1, 0)
    engine = RecalcEngine(store=store)
    engine.recalc_for_match(m.id)
    assert store.get_score("u").points_total == 5

    store.set_match_result(m.id, score_home=1, score_away=0, status="CANCELLED")
    result = engine.recalc_for_match(m.id)

    assert result.updated == 1
    u = store.get_score("u")
    assert (u.points_total, u.exact_count) == (0, 0)
    assert store.find_settlements(m.id) == []
    assert store.find_unsettled_matches() == []
    engine.recalc_all()
    assert store.get_score("u").points_total == 0


@pytest.mark.parametrize("status", ["CANCELLED", "LIVE", "PAUSED"])
def test_scored_match_outside_final_status_is_not_settled(store, add_match, status) -> None:
    m = add_match("1", status=status, score=(1, 0))
    _predict(store, "u", m.id, 1, 0)
    engine = RecalcEngine(store=store)

    result = engine.recalc_for_match(m.id)
    assert result.updated == 0
    assert store.list_scores() == []

    engine.recalc_all()
    assert store.get_score("u").points_total == 0
