from __future__ import annotations


class LeagueError(Exception):
    pass


class TransientUpstreamError(LeagueError):
    """Feed unreachable, rate limited or timed out. Served stale when the cache has data."""

    def __init__(self, reason: str, *, retry_after_sec: int | None = None) -> None:
        super().__init__(reason)
        self.reason = str(reason)
        self.retry_after_sec = retry_after_sec


class UpstreamResponseError(LeagueError):
    pass


class FeedConfigError(LeagueError):
    pass


class DataIntegrityError(LeagueError):
    """A match carries exactly one of score_home/score_away."""


class DatastoreBusyError(LeagueError):
    pass


class ConcurrentRecalcConflict(LeagueError):
    pass


class InvalidPrediction(LeagueError):
    pass


class MatchNotFound(LeagueError):
    pass


class PredictionLocked(LeagueError):
    pass
