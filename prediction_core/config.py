from __future__ import annotations

import os
from pathlib import Path


def _env_int(name: str, default: int, *, lo: int, hi: int) -> int:
    try:
        v = int(str(os.getenv(name, str(default)) or "").strip())
    except Exception:
        v = default
    if v < lo:
        v = lo
    if v > hi:
        v = hi
    return v


def data_dir() -> Path:
    return Path(os.getenv("LEAGUE_DATA_DIR", "data")).resolve()


def league_db_path() -> Path:
    return Path(os.getenv("LEAGUE_DB_PATH", str(data_dir() / "league.sqlite3"))).resolve()


def sqlite_busy_timeout_ms() -> int:
    return _env_int("LEAGUE_SQLITE_BUSY_TIMEOUT_MS", 1000, lo=100, hi=10_000)


def cache_refresh_floor_ms() -> int:
    return _env_int("LEAGUE_CACHE_REFRESH_FLOOR_MS", 30_000, lo=0, hi=3_600_000)


def cache_refresh_retry_ms() -> int:
    return _env_int("LEAGUE_CACHE_REFRESH_RETRY_MS", 10_000, lo=100, hi=3_600_000)


def cache_fetch_timeout_ms() -> int:
    return _env_int("LEAGUE_CACHE_FETCH_TIMEOUT_MS", 15_000, lo=100, hi=300_000)


def matches_ttl_ms() -> int:
    return _env_int("LEAGUE_MATCHES_TTL_MS", 60_000, lo=1_000, hi=86_400_000)


def leaderboard_ttl_ms() -> int:
    return _env_int("LEAGUE_LEADERBOARD_TTL_MS", 60_000, lo=1_000, hi=86_400_000)


def sync_ttl_ms() -> int:
    return _env_int("LEAGUE_SYNC_TTL_MS", 60_000, lo=1_000, hi=86_400_000)


def recalc_max_retries() -> int:
    return _env_int("LEAGUE_RECALC_MAX_RETRIES", 3, lo=0, hi=20)
