from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone


SCHEDULED = "SCHEDULED"
LIVE = "LIVE"
PAUSED = "PAUSED"
FINISHED = "FINISHED"
POSTPONED = "POSTPONED"
SUSPENDED = "SUSPENDED"
CANCELLED = "CANCELLED"
AWARDED = "AWARDED"
NO_PLAY = "NO_PLAY"

CANONICAL_STATUSES = frozenset({SCHEDULED, LIVE, PAUSED, FINISHED, POSTPONED, SUSPENDED, CANCELLED, AWARDED, NO_PLAY})

PRE_KICKOFF_RAW = frozenset({"SCHEDULED", "TIMED"})
LIVE_RAW = frozenset({"IN_PLAY", "LIVE"})
SETTLED_STATUSES = frozenset({FINISHED, AWARDED})
BETTING_BLOCKED = frozenset({CANCELLED, POSTPONED, SUSPENDED, AWARDED, NO_PLAY})
_RAW_ALIASES = {"CANCELED": CANCELLED, "NO-PLAY": NO_PLAY, "NOPLAY": NO_PLAY}

FINISH_MINUTES_MAX = 240
FINISH_MINUTES_WITH_SCORE = 180
PAUSED_FINISH_MINUTES = 155
PAUSED_FINISH_MINUTES_WITH_SCORE = 135


@dataclass(frozen=True)
class StatusResolution:
    canonical: str
    is_live: bool
    is_finished: bool
    is_scheduled: bool
    is_bettable: bool


def _as_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _normalize_raw(raw_status: object) -> str:
    try:
        s = str(raw_status or "").strip().upper().replace(" ", "_")
    except Exception:
        return ""
    return _RAW_ALIASES.get(s, s)


def _is_score(v: object) -> bool:
    return isinstance(v, int) and not isinstance(v, bool)


def _canonical(raw: str, *, started: bool, elapsed_min: int, has_score: bool) -> str:
    if has_score and started and raw not in PRE_KICKOFF_RAW:
        return FINISHED
    if elapsed_min >= FINISH_MINUTES_MAX:
        return FINISHED
    if elapsed_min >= FINISH_MINUTES_WITH_SCORE and has_score:
        return FINISHED

    if raw in PRE_KICKOFF_RAW:
        return LIVE if started else SCHEDULED
    if raw in LIVE_RAW:
        return LIVE
    if raw == PAUSED:
        if elapsed_min >= PAUSED_FINISH_MINUTES or (has_score and elapsed_min >= PAUSED_FINISH_MINUTES_WITH_SCORE):
            return FINISHED
        return PAUSED
    if raw == FINISHED:
        return FINISHED
    if raw in BETTING_BLOCKED:
        return raw

    if has_score and started:
        return FINISHED
    return LIVE if started else SCHEDULED


def resolve_status(
    raw_status: str | None,
    kickoff_at: datetime | None,
    now: datetime,
    score_home: int | None = None,
    score_away: int | None = None,
) -> StatusResolution:
    """Canonical status and flags for one match at instant ``now``.

    Shared by the betting lock and the read model, so both reach the same
    answer. Never raises; a half-present score counts as no score and an
    unknown kickoff is treated as not yet started and not bettable.
    """
    raw = _normalize_raw(raw_status)
    has_score = _is_score(score_home) and _is_score(score_away)

    if isinstance(kickoff_at, datetime) and isinstance(now, datetime):
        ko = _as_utc(kickoff_at)
        cur = _as_utc(now)
        started = cur >= ko
        elapsed_min = max(0, int((cur - ko).total_seconds() // 60))
        kickoff_known = True
    else:
        started = False
        elapsed_min = 0
        kickoff_known = False

    canonical = _canonical(raw, started=started, elapsed_min=elapsed_min, has_score=has_score)
    return StatusResolution(
        canonical=canonical,
        is_live=canonical in {LIVE, PAUSED},
        is_finished=canonical in SETTLED_STATUSES,
        is_scheduled=canonical in {SCHEDULED, POSTPONED},
        is_bettable=bool(kickoff_known and not started and canonical not in BETTING_BLOCKED),
    )
