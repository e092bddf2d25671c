from __future__ import annotations

from datetime import datetime, timezone

import pytest

from prediction_core.datastore.sqlite_store import SqliteDatastore
from prediction_core.models import Match, MatchFields


KICKOFF = datetime(2025, 10, 1, 19, 0, tzinfo=timezone.utc)


@pytest.fixture()
def store(tmp_path) -> SqliteDatastore:
    return SqliteDatastore(db_path=tmp_path / "league.sqlite3")


@pytest.fixture()
def add_match(store):
    def _add(
        ext_id: str,
        *,
        kickoff_at: datetime = KICKOFF,
        status: str = "SCHEDULED",
        score: tuple[int, int] | None = None,
        home: str = "Inter",
        away: str = "Arsenal",
    ) -> Match:
        fields = MatchFields(
            stage="LEAGUE_STAGE",
            group=None,
            matchday=1,
            home_team=home,
            away_team=away,
            kickoff_at=kickoff_at,
            status=status,
            score_home=score[0] if score else None,
            score_away=score[1] if score else None,
        )
        match, _ = store.upsert_match(ext_id, fields)
        return match

    return _add
