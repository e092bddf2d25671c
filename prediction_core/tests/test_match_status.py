from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from prediction_core.match_status import resolve_status


KO = datetime(2025, 10, 1, 19, 0, tzinfo=timezone.utc)


def test_timed_past_kickoff_without_score_is_live() -> None:
    res = resolve_status("TIMED", KO, KO + timedelta(minutes=10))
    assert res.canonical == "LIVE"
    assert res.is_live is True
    assert res.is_bettable is False


def test_paused_long_after_kickoff_with_score_is_finished() -> None:
    res = resolve_status("PAUSED", KO, KO + timedelta(minutes=200), 1, 0)
    assert res.canonical == "FINISHED"
    assert res.is_finished is True
    assert res.is_live is False


def test_scheduled_before_kickoff_is_bettable() -> None:
    res = resolve_status("SCHEDULED", KO, KO - timedelta(hours=2))
    assert res.canonical == "SCHEDULED"
    assert res.is_scheduled is True
    assert res.is_bettable is True


@pytest.mark.parametrize(
    "raw,minutes,score,expected",
    [
        ("IN_PLAY", 30, None, "LIVE"),
        ("LIVE", 30, None, "LIVE"),
        ("IN_PLAY", 30, (1, 0), "FINISHED"),
        ("SCHEDULED", 30, (1, 0), "LIVE"),
        ("PAUSED", 50, None, "PAUSED"),
        ("PAUSED", 140, None, "PAUSED"),
        ("PAUSED", 155, None, "FINISHED"),
        ("FINISHED", 100, None, "FINISHED"),
        ("IN_PLAY", 240, None, "FINISHED"),
        ("TIMED", 181, (2, 2), "FINISHED"),
        ("TIMED", 179, (2, 2), "LIVE"),
        ("SUSPENDED", 30, None, "SUSPENDED"),
        ("CANCELED", -60, None, "CANCELLED"),
        ("POSTPONED", -60, None, "POSTPONED"),
        ("AWARDED", 30, (3, 0), "FINISHED"),
        ("SOMETHING_NEW", -10, None, "SCHEDULED"),
        ("SOMETHING_NEW", 10, None, "LIVE"),
        (None, -10, None, "SCHEDULED"),
    ],
)
def test_resolution_table(raw, minutes, score, expected) -> None:
    sh, sa = score if score else (None, None)
    res = resolve_status(raw, KO, KO + timedelta(minutes=minutes), sh, sa)
    assert res.canonical == expected


def test_half_score_counts_as_absent() -> None:
    res = resolve_status("IN_PLAY", KO, KO + timedelta(minutes=30), 1, None)
    assert res.canonical == "LIVE"


@pytest.mark.parametrize("raw", ["POSTPONED", "CANCELLED", "SUSPENDED", "AWARDED", "NO_PLAY"])
def test_blocked_statuses_are_never_bettable(raw) -> None:
    res = resolve_status(raw, KO, KO - timedelta(days=1))
    assert res.is_bettable is False


@pytest.mark.parametrize("raw", ["SCHEDULED", "TIMED", "IN_PLAY", "PAUSED", "FINISHED", "POSTPONED", "garbage"])
def test_nothing_is_bettable_after_kickoff(raw) -> None:
    for minutes in (0, 1, 90, 300):
        assert resolve_status(raw, KO, KO + timedelta(minutes=minutes)).is_bettable is False


def test_unknown_kickoff_is_not_started_and_not_bettable() -> None:
    res = resolve_status("SCHEDULED", None, KO)
    assert res.canonical == "SCHEDULED"
    assert res.is_bettable is False


def test_naive_datetimes_are_treated_as_utc() -> None:
    naive_ko = KO.replace(tzinfo=None)
    assert resolve_status("TIMED", naive_ko, KO + timedelta(minutes=5)).canonical == "LIVE"


def test_resolution_is_deterministic() -> None:
    now = KO + timedelta(minutes=95)
    first = resolve_status("PAUSED", KO, now, 2, 1)
    for _ in range(5):
        assert resolve_status("PAUSED", KO, now, 2, 1) == first
