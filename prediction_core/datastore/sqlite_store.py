from __future__ import annotations

import contextlib
import sqlite3
import threading
from collections.abc import Iterator
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from prediction_core.config import sqlite_busy_timeout_ms
from prediction_core.errors import DatastoreBusyError
from prediction_core.match_status import SETTLED_STATUSES
from prediction_core.models import Match, MatchFields, Prediction, PredictionHistoryEntry, ScoreRow, Scoreline, Settlement


_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

_MATCH_COLUMNS = "id, ext_id, stage, grp, matchday, home_team, away_team, kickoff_at, status, score_home, score_away"
_SCORE_COLUMNS = "user_id, points_total, exact_count, diff_count, outcome_count, bonus_points, first_pred_at"
_SETTLED_STATUS_SQL = ", ".join(f"'{s}'" for s in sorted(SETTLED_STATUSES))


def _ts(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime(_TS_FORMAT)


def _parse_ts(raw: Any) -> datetime | None:
    if raw is None:
        return None
    s = str(raw)
    try:
        return datetime.strptime(s, _TS_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
        return dt if dt.tzinfo is not None else dt.replace(tzinfo=timezone.utc)


def _is_busy(exc: sqlite3.OperationalError) -> bool:
    msg = str(exc).lower()
    return "locked" in msg or "busy" in msg


class SqliteDatastore:
    def __init__(self, *, db_path: Path) -> None:
        self._db_path = Path(db_path)
        self._local = threading.local()
        self._ensure_schema()

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        busy_ms = int(sqlite_busy_timeout_ms())
        conn = sqlite3.connect(str(self._db_path), timeout=busy_ms / 1000.0, isolation_level=None)
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        conn.execute("PRAGMA foreign_keys=ON;")
        conn.execute(f"PRAGMA busy_timeout={busy_ms};")
        return conn

    def _ensure_schema(self) -> None:
        conn = self._connect()
        try:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS matches (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    ext_id TEXT NOT NULL UNIQUE,
                    stage TEXT NOT NULL,
                    grp TEXT,
                    matchday INTEGER,
                    home_team TEXT NOT NULL,
                    away_team TEXT NOT NULL,
                    kickoff_at TEXT NOT NULL,
                    status TEXT NOT NULL,
                    score_home INTEGER,
                    score_away INTEGER,
                    updated_at TEXT NOT NULL,
                    CHECK ((score_home IS NULL) = (score_away IS NULL))
                );
                CREATE INDEX IF NOT EXISTS idx_matches_kickoff ON matches(kickoff_at);
                CREATE INDEX IF NOT EXISTS idx_matches_status ON matches(status);

                CREATE TABLE IF NOT EXISTS users (
                    user_id TEXT PRIMARY KEY,
                    display_name TEXT,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS predictions (
                    user_id TEXT NOT NULL,
                    match_id INTEGER NOT NULL REFERENCES matches(id) ON DELETE RESTRICT,
                    pred_home INTEGER NOT NULL CHECK (pred_home >= 0),
                    pred_away INTEGER NOT NULL CHECK (pred_away >= 0),
                    created_at TEXT NOT NULL,
                    updated_at TEXT,
                    PRIMARY KEY (user_id, match_id)
                );
                CREATE INDEX IF NOT EXISTS idx_predictions_match ON predictions(match_id);

                CREATE TABLE IF NOT EXISTS prediction_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    match_id INTEGER NOT NULL,
                    pred_home INTEGER NOT NULL,
                    pred_away INTEGER NOT NULL,
                    archived_at TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_prediction_history_user_match ON prediction_history(user_id, match_id);

                CREATE TABLE IF NOT EXISTS scores (
                    user_id TEXT PRIMARY KEY,
                    points_total INTEGER NOT NULL DEFAULT 0,
                    exact_count INTEGER NOT NULL DEFAULT 0,
                    diff_count INTEGER NOT NULL DEFAULT 0,
                    outcome_count INTEGER NOT NULL DEFAULT 0,
                    bonus_points INTEGER NOT NULL DEFAULT 0,
                    first_pred_at TEXT
                );

                CREATE TABLE IF NOT EXISTS settlements (
                    user_id TEXT NOT NULL,
                    match_id INTEGER NOT NULL,
                    points INTEGER NOT NULL,
                    exact INTEGER NOT NULL,
                    diff INTEGER NOT NULL,
                    outcome INTEGER NOT NULL,
                    PRIMARY KEY (user_id, match_id)
                );
                CREATE INDEX IF NOT EXISTS idx_settlements_match ON settlements(match_id);

                CREATE TABLE IF NOT EXISTS settled_results (
                    match_id INTEGER PRIMARY KEY,
                    score_home INTEGER NOT NULL,
                    score_away INTEGER NOT NULL
                );
                """
            )
        finally:
            conn.close()

    @contextlib.contextmanager
    def transaction(self) -> Iterator[None]:
        with self._scope(write=True):
            yield

    @contextlib.contextmanager
    def _read(self) -> Iterator[None]:
        # Deferred BEGIN: reads run on a WAL snapshot without the write lock.
        with self._scope(write=False):
            yield

    @contextlib.contextmanager
    def _scope(self, *, write: bool) -> Iterator[None]:
        state = self._local
        if getattr(state, "conn", None) is not None:
            if write and not state.write:
                raise RuntimeError("write_inside_read_transaction")
            state.depth += 1
            try:
                yield
            finally:
                state.depth -= 1
            return

        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE;" if write else "BEGIN;")
        except sqlite3.OperationalError as e:
            conn.close()
            if _is_busy(e):
                raise DatastoreBusyError(f"datastore_busy:{e}") from e
            raise
        state.conn = conn
        state.depth = 1
        state.write = write
        try:
            yield
        except BaseException:
            with contextlib.suppress(sqlite3.Error):
                conn.execute("ROLLBACK;")
            raise
        else:
            conn.execute("COMMIT;")
        finally:
            state.conn = None
            state.depth = 0
            state.write = False
            conn.close()

    def _conn(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            raise RuntimeError("no_active_transaction")
        return conn

    def _row_to_match(self, row: tuple) -> Match:
        mid, ext_id, stage, grp, matchday, home, away, kickoff, status, sh, sa = row
        return Match(
            id=int(mid),
            ext_id=str(ext_id),
            stage=str(stage),
            group=str(grp) if grp is not None else None,
            matchday=int(matchday) if matchday is not None else None,
            home_team=str(home),
            away_team=str(away),
            kickoff_at=_parse_ts(kickoff) or datetime.fromtimestamp(0, tz=timezone.utc),
            status=str(status),
            score_home=int(sh) if sh is not None else None,
            score_away=int(sa) if sa is not None else None,
        )

    def _row_to_score(self, row: tuple) -> ScoreRow:
        user_id, total, exact, diff, outcome, bonus, first = row
        return ScoreRow(
            user_id=str(user_id),
            points_total=int(total),
            exact_count=int(exact),
            diff_count=int(diff),
            outcome_count=int(outcome),
            bonus_points=int(bonus),
            first_pred_at=_parse_ts(first),
        )

    def _row_to_prediction(self, row: tuple) -> Prediction:
        user_id, match_id, ph, pa, created, updated = row
        return Prediction(
            user_id=str(user_id),
            match_id=int(match_id),
            pred_home=int(ph),
            pred_away=int(pa),
            created_at=_parse_ts(created) or datetime.fromtimestamp(0, tz=timezone.utc),
            updated_at=_parse_ts(updated),
        )

    def upsert_match(self, ext_id: str, fields: MatchFields) -> tuple[Match, bool]:
        sh, sa = fields.score_home, fields.score_away
        if sh is None or sa is None:
            sh, sa = None, None
        now = _ts(datetime.now(timezone.utc))
        with self.transaction():
            conn = self._conn()
            prev = conn.execute("SELECT score_home, score_away FROM matches WHERE ext_id = ?", (str(ext_id),)).fetchone()
            conn.execute(
                """
                INSERT INTO matches (
                    ext_id, stage, grp, matchday, home_team, away_team, kickoff_at, status, score_home, score_away, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(ext_id) DO UPDATE SET
                    stage = excluded.stage,
                    grp = excluded.grp,
                    matchday = excluded.matchday,
                    home_team = excluded.home_team,
                    away_team = excluded.away_team,
                    kickoff_at = excluded.kickoff_at,
                    status = excluded.status,
                    score_home = COALESCE(excluded.score_home, matches.score_home),
                    score_away = COALESCE(excluded.score_away, matches.score_away),
                    updated_at = excluded.updated_at
                """,
                (
                    str(ext_id),
                    str(fields.stage),
                    fields.group,
                    fields.matchday,
                    str(fields.home_team),
                    str(fields.away_team),
                    _ts(fields.kickoff_at),
                    str(fields.status),
                    sh,
                    sa,
                    now,
                ),
            )
            row = conn.execute(f"SELECT {_MATCH_COLUMNS} FROM matches WHERE ext_id = ?", (str(ext_id),)).fetchone()
        match = self._row_to_match(row)
        if prev is None:
            changed = match.result is not None
        else:
            changed = (prev[0], prev[1]) != (match.score_home, match.score_away)
        return match, changed

    def get_match(self, match_id: int) -> Match | None:
        with self._read():
            row = self._conn().execute(f"SELECT {_MATCH_COLUMNS} FROM matches WHERE id = ?", (int(match_id),)).fetchone()
        return self._row_to_match(row) if row else None

    def list_matches(self) -> list[Match]:
        with self._read():
            rows = self._conn().execute(f"SELECT {_MATCH_COLUMNS} FROM matches ORDER BY kickoff_at ASC, id ASC").fetchall()
        return [self._row_to_match(r) for r in rows]

    def set_match_result(self, match_id: int, *, score_home: int, score_away: int, status: str) -> Match | None:
        with self.transaction():
            conn = self._conn()
            conn.execute(
                "UPDATE matches SET score_home = ?, score_away = ?, status = ?, updated_at = ? WHERE id = ?",
                (int(score_home), int(score_away), str(status), _ts(datetime.now(timezone.utc)), int(match_id)),
            )
            row = conn.execute(f"SELECT {_MATCH_COLUMNS} FROM matches WHERE id = ?", (int(match_id),)).fetchone()
        return self._row_to_match(row) if row else None

    def find_finished_matches(self) -> list[Match]:
        with self._read():
            rows = self._conn().execute(
                f"""
                SELECT {_MATCH_COLUMNS} FROM matches
                WHERE status IN ({_SETTLED_STATUS_SQL}) AND score_home IS NOT NULL AND score_away IS NOT NULL
                ORDER BY kickoff_at ASC, id ASC
                """
            ).fetchall()
        return [self._row_to_match(r) for r in rows]

    def find_predictions(self, match_id: int) -> list[Prediction]:
        with self._read():
            rows = self._conn().execute(
                """
                SELECT user_id, match_id, pred_home, pred_away, created_at, updated_at
                FROM predictions WHERE match_id = ? ORDER BY user_id ASC
                """,
                (int(match_id),),
            ).fetchall()
        return [self._row_to_prediction(r) for r in rows]

    def find_prediction(self, user_id: str, match_id: int) -> Prediction | None:
        with self._read():
            row = self._conn().execute(
                """
                SELECT user_id, match_id, pred_home, pred_away, created_at, updated_at
                FROM predictions WHERE user_id = ? AND match_id = ?
                """,
                (str(user_id), int(match_id)),
            ).fetchone()
        return self._row_to_prediction(row) if row else None

    def find_user_predictions(self, user_id: str) -> list[Prediction]:
        with self._read():
            rows = self._conn().execute(
                """
                SELECT p.user_id, p.match_id, p.pred_home, p.pred_away, p.created_at, p.updated_at
                FROM predictions p JOIN matches m ON m.id = p.match_id
                WHERE p.user_id = ? ORDER BY m.kickoff_at ASC, m.id ASC
                """,
                (str(user_id),),
            ).fetchall()
        return [self._row_to_prediction(r) for r in rows]

    def save_prediction(self, user_id: str, match_id: int, *, pred_home: int, pred_away: int, now: datetime) -> Prediction:
        ts = _ts(now)
        with self.transaction():
            self._conn().execute(
                """
                INSERT INTO predictions (user_id, match_id, pred_home, pred_away, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, NULL)
                ON CONFLICT(user_id, match_id) DO UPDATE SET
                    pred_home = excluded.pred_home,
                    pred_away = excluded.pred_away,
                    updated_at = ?
                """,
                (str(user_id), int(match_id), int(pred_home), int(pred_away), ts, ts),
            )
            saved = self.find_prediction(user_id, match_id)
        if saved is None:
            raise RuntimeError("prediction_not_saved")
        return saved

    def delete_prediction(self, user_id: str, match_id: int) -> bool:
        with self.transaction():
            cur = self._conn().execute("DELETE FROM predictions WHERE user_id = ? AND match_id = ?", (str(user_id), int(match_id)))
            return int(cur.rowcount or 0) > 0

    def earliest_prediction_times(self) -> dict[str, datetime]:
        with self._read():
            rows = self._conn().execute("SELECT user_id, MIN(created_at) FROM predictions GROUP BY user_id").fetchall()
        out: dict[str, datetime] = {}
        for user_id, first in rows:
            dt = _parse_ts(first)
            if dt is not None:
                out[str(user_id)] = dt
        return out

    def append_prediction_history(self, user_id: str, match_id: int, old_prediction: Prediction, *, archived_at: datetime) -> None:
        with self.transaction():
            self._conn().execute(
                "INSERT INTO prediction_history (user_id, match_id, pred_home, pred_away, archived_at) VALUES (?, ?, ?, ?, ?)",
                (str(user_id), int(match_id), int(old_prediction.pred_home), int(old_prediction.pred_away), _ts(archived_at)),
            )

    def prediction_history(self, user_id: str, match_id: int) -> list[PredictionHistoryEntry]:
        with self._read():
            rows = self._conn().execute(
                """
                SELECT user_id, match_id, pred_home, pred_away, archived_at
                FROM prediction_history WHERE user_id = ? AND match_id = ? ORDER BY id ASC
                """,
                (str(user_id), int(match_id)),
            ).fetchall()
        return [
            PredictionHistoryEntry(
                user_id=str(r[0]),
                match_id=int(r[1]),
                pred_home=int(r[2]),
                pred_away=int(r[3]),
                archived_at=_parse_ts(r[4]) or datetime.fromtimestamp(0, tz=timezone.utc),
            )
            for r in rows
        ]

    def get_score(self, user_id: str) -> ScoreRow | None:
        with self._read():
            row = self._conn().execute(f"SELECT {_SCORE_COLUMNS} FROM scores WHERE user_id = ?", (str(user_id),)).fetchone()
        return self._row_to_score(row) if row else None

    def list_scores(self) -> list[ScoreRow]:
        with self._read():
            rows = self._conn().execute(f"SELECT {_SCORE_COLUMNS} FROM scores ORDER BY user_id ASC").fetchall()
        return [self._row_to_score(r) for r in rows]

    def upsert_score(self, user_id: str, aggregate: ScoreRow) -> None:
        first = _ts(aggregate.first_pred_at) if aggregate.first_pred_at is not None else None
        with self.transaction():
            self._conn().execute(
                f"""
                INSERT INTO scores ({_SCORE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    points_total = excluded.points_total,
                    exact_count = excluded.exact_count,
                    diff_count = excluded.diff_count,
                    outcome_count = excluded.outcome_count,
                    bonus_points = excluded.bonus_points,
                    first_pred_at = excluded.first_pred_at
                """,
                (
                    str(user_id),
                    int(aggregate.points_total),
                    int(aggregate.exact_count),
                    int(aggregate.diff_count),
                    int(aggregate.outcome_count),
                    int(aggregate.bonus_points),
                    first,
                ),
            )

    def reset_scores(self) -> None:
        with self.transaction():
            self._conn().execute(
                "UPDATE scores SET points_total = bonus_points, exact_count = 0, diff_count = 0, outcome_count = 0"
            )

    def find_settlements(self, match_id: int) -> list[Settlement]:
        with self._read():
            rows = self._conn().execute(
                "SELECT user_id, match_id, points, exact, diff, outcome FROM settlements WHERE match_id = ? ORDER BY user_id ASC",
                (int(match_id),),
            ).fetchall()
        return [
            Settlement(user_id=str(r[0]), match_id=int(r[1]), points=int(r[2]), exact=int(r[3]), diff=int(r[4]), outcome=int(r[5]))
            for r in rows
        ]

    def replace_settlements(self, match_id: int, settlements: list[Settlement], *, settled_result: Scoreline | None) -> None:
        with self.transaction():
            conn = self._conn()
            conn.execute("DELETE FROM settlements WHERE match_id = ?", (int(match_id),))
            conn.executemany(
                "INSERT INTO settlements (user_id, match_id, points, exact, diff, outcome) VALUES (?, ?, ?, ?, ?, ?)",
                [(str(s.user_id), int(match_id), int(s.points), int(s.exact), int(s.diff), int(s.outcome)) for s in settlements],
            )
            if settled_result is None:
                conn.execute("DELETE FROM settled_results WHERE match_id = ?", (int(match_id),))
            else:
                conn.execute(
                    """
                    INSERT INTO settled_results (match_id, score_home, score_away) VALUES (?, ?, ?)
                    ON CONFLICT(match_id) DO UPDATE SET score_home = excluded.score_home, score_away = excluded.score_away
                    """,
                    (int(match_id), int(settled_result.home), int(settled_result.away)),
                )

    def clear_settlements(self) -> None:
        with self.transaction():
            conn = self._conn()
            conn.execute("DELETE FROM settlements")
            conn.execute("DELETE FROM settled_results")

    def mark_unsettled(self, match_id: int) -> None:
        with self.transaction():
            self._conn().execute("DELETE FROM settled_results WHERE match_id = ?", (int(match_id),))

    def find_unsettled_matches(self) -> list[Match]:
        """Matches whose standings contribution disagrees with their current result.

        Covers settleable matches never settled or settled against another
        score, and settled matches that are no longer settleable.
        """
        settleable = f"(m.status IN ({_SETTLED_STATUS_SQL}) AND m.score_home IS NOT NULL AND m.score_away IS NOT NULL)"
        cols = ", ".join(f"m.{c.strip()}" for c in _MATCH_COLUMNS.split(","))
        with self._read():
            rows = self._conn().execute(
                f"""
                SELECT {cols} FROM matches m
                LEFT JOIN settled_results s ON s.match_id = m.id
                WHERE ({settleable} AND (s.match_id IS NULL OR s.score_home != m.score_home OR s.score_away != m.score_away))
                   OR (s.match_id IS NOT NULL AND NOT {settleable})
                ORDER BY m.kickoff_at ASC, m.id ASC
                """
            ).fetchall()
        return [self._row_to_match(r) for r in rows]

    def upsert_user(self, user_id: str, display_name: str | None) -> None:
        with self.transaction():
            self._conn().execute(
                """
                INSERT INTO users (user_id, display_name, created_at) VALUES (?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET display_name = COALESCE(excluded.display_name, users.display_name)
                """,
                (str(user_id), display_name, _ts(datetime.now(timezone.utc))),
            )

    def user_names(self) -> dict[str, str | None]:
        with self._read():
            rows = self._conn().execute("SELECT user_id, display_name FROM users").fetchall()
        return {str(r[0]): (str(r[1]) if r[1] is not None else None) for r in rows}
