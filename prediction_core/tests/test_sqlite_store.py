from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from prediction_core.models import MatchFields, ScoreRow, Scoreline, Settlement


KICKOFF = datetime(2025, 10, 1, 19, 0, tzinfo=timezone.utc)


def _fields(**kw) -> MatchFields:
    base = MatchFields(
        stage="LEAGUE_STAGE",
        group=None,
        matchday=3,
        home_team="Real Madrid",
        away_team="Liverpool",
        kickoff_at=KICKOFF,
        status="SCHEDULED",
    )
    return replace(base, **kw)


def test_upsert_match_inserts_then_updates_by_ext_id(store) -> None:
    m1, changed1 = store.upsert_match("5001", _fields())
    assert changed1 is False
    assert m1.status == "SCHEDULED"
    assert m1.kickoff_at == KICKOFF

    m2, changed2 = store.upsert_match("5001", _fields(status="FINISHED", score_home=2, score_away=1))
    assert m2.id == m1.id
    assert changed2 is True
    assert (m2.score_home, m2.score_away) == (2, 1)
    assert len(store.list_matches()) == 1


def test_upsert_without_score_keeps_stored_result(store) -> None:
    store.upsert_match("5002", _fields(status="FINISHED", score_home=0, score_away=0))
    m, changed = store.upsert_match("5002", _fields(status="FINISHED"))
    assert changed is False
    assert (m.score_home, m.score_away) == (0, 0)


def test_upsert_same_result_is_not_a_change(store) -> None:
    store.upsert_match("5003", _fields(status="FINISHED", score_home=1, score_away=3))
    _, changed = store.upsert_match("5003", _fields(status="FINISHED", score_home=1, score_away=3))
    assert changed is False


def test_half_score_is_stored_as_absent(store) -> None:
    m, _ = store.upsert_match("5004", _fields(status="LIVE", score_home=1))
    assert m.score_home is None and m.score_away is None


def test_find_finished_matches_requires_status_and_both_scores(store) -> None:
    store.upsert_match("a", _fields(status="FINISHED", score_home=1, score_away=0))
    store.upsert_match("b", _fields(status="AWARDED", score_home=3, score_away=0, kickoff_at=KICKOFF + timedelta(hours=1)))
    store.upsert_match("c", _fields(status="FINISHED"))
    store.upsert_match("d", _fields(status="LIVE", score_home=1, score_away=1))
    assert [m.ext_id for m in store.find_finished_matches()] == ["a", "b"]


def test_transaction_rolls_back_every_write_on_error(store) -> None:
    with pytest.raises(RuntimeError):
        with store.transaction():
            store.upsert_match("6001", _fields())
            store.upsert_score("u1", ScoreRow(user_id="u1", points_total=5))
            raise RuntimeError("boom")
    assert store.list_matches() == []
    assert store.get_score("u1") is None


def test_nested_transactions_commit_once(store) -> None:
    with store.transaction():
        with store.transaction():
            store.upsert_match("6002", _fields())
        store.upsert_user("u1", "Ana")
    assert len(store.list_matches()) == 1
    assert store.user_names() == {"u1": "Ana"}


def test_prediction_save_preserves_created_at(store) -> None:
    m, _ = store.upsert_match("7001", _fields())
    t0 = KICKOFF - timedelta(days=2)
    first = store.save_prediction("u1", m.id, pred_home=1, pred_away=0, now=t0)
    second = store.save_prediction("u1", m.id, pred_home=2, pred_away=2, now=t0 + timedelta(hours=1))
    assert second.created_at == first.created_at == t0
    assert second.updated_at == t0 + timedelta(hours=1)
    assert (second.pred_home, second.pred_away) == (2, 2)
    assert store.earliest_prediction_times() == {"u1": t0}


def test_history_is_append_only_and_ordered(store) -> None:
    m, _ = store.upsert_match("7002", _fields())
    t0 = KICKOFF - timedelta(days=1)
    p = store.save_prediction("u1", m.id, pred_home=1, pred_away=1, now=t0)
    store.append_prediction_history("u1", m.id, p, archived_at=t0 + timedelta(minutes=1))
    p2 = store.save_prediction("u1", m.id, pred_home=2, pred_away=1, now=t0 + timedelta(minutes=1))
    store.append_prediction_history("u1", m.id, p2, archived_at=t0 + timedelta(minutes=2))
    hist = store.prediction_history("u1", m.id)
    assert [(h.pred_home, h.pred_away) for h in hist] == [(1, 1), (2, 1)]


def test_reset_scores_keeps_bonus_only(store) -> None:
    store.upsert_score("u1", ScoreRow(user_id="u1", points_total=12, exact_count=1, diff_count=2, outcome_count=1, bonus_points=3))
    store.reset_scores()
    row = store.get_score("u1")
    assert (row.points_total, row.exact_count, row.diff_count, row.outcome_count, row.bonus_points) == (3, 0, 0, 0, 3)


def test_settlements_replace_per_match(store) -> None:
    store.replace_settlements(1, [Settlement(user_id="u1", match_id=1, points=5, exact=1, diff=0, outcome=0)], settled_result=Scoreline(1, 0))
    store.replace_settlements(1, [Settlement(user_id="u2", match_id=1, points=2, exact=0, diff=0, outcome=1)], settled_result=Scoreline(2, 0))
    assert [s.user_id for s in store.find_settlements(1)] == ["u2"]
    store.clear_settlements()
    assert store.find_settlements(1) == []


def test_unsettled_matches_track_result_and_status(store) -> None:
    a, _ = store.upsert_match("a", _fields(status="FINISHED", score_home=1, score_away=0))
    b, _ = store.upsert_match("b", _fields(status="FINISHED", score_home=2, score_away=2, kickoff_at=KICKOFF + timedelta(hours=1)))
    store.upsert_match("c", _fields(status="LIVE", score_home=0, score_away=0, kickoff_at=KICKOFF + timedelta(hours=2)))
    assert [m.ext_id for m in store.find_unsettled_matches()] == ["a", "b"]

    store.replace_settlements(a.id, [], settled_result=Scoreline(1, 0))
    store.replace_settlements(b.id, [], settled_result=Scoreline(1, 1))
    assert [m.ext_id for m in store.find_unsettled_matches()] == ["b"]

    store.set_match_result(a.id, score_home=1, score_away=0, status="CANCELLED")
    store.replace_settlements(b.id, [], settled_result=Scoreline(2, 2))
    assert [m.ext_id for m in store.find_unsettled_matches()] == ["a"]

    store.replace_settlements(a.id, [], settled_result=None)
    assert store.find_unsettled_matches() == []


def test_reads_do_not_wait_for_an_open_write_transaction(store) -> None:
    store.upsert_match("8001", _fields())
    writing = threading.Event()
    release = threading.Event()

    def hold_write_lock() -> None:
        with store.transaction():
            store.upsert_match("8002", _fields())
            writing.set()
            release.wait(5)

    with ThreadPoolExecutor(max_workers=2) as pool:
        writer = pool.submit(hold_write_lock)
        assert writing.wait(5)
        try:
            seen = pool.submit(lambda: [m.ext_id for m in store.list_matches()]).result(timeout=5)
        finally:
            release.set()
        writer.result(timeout=5)
    assert seen == ["8001"]
    assert len(store.list_matches()) == 2
