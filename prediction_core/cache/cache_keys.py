from __future__ import annotations


MATCHES_KEY = "matches"
LEADERBOARD_KEY = "leaderboard"


def sync_key(season: int) -> str:
    return f"api_sync_{int(season)}"
