from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

from fastapi import HTTPException, Request

from api_gateway.app.schemas import MatchOut, PredictionOut, UserPrediction
from api_gateway.app.settings import Settings, settings
from prediction_core.cache.ttl_cache import TTLCache
from prediction_core.datastore.sqlite_store import SqliteDatastore
from prediction_core.feed.football_data import FootballDataClient
from prediction_core.league import League
from prediction_core.match_status import resolve_status
from prediction_core.models import Match, Prediction


def build_league(cfg: Settings) -> League:
    store = SqliteDatastore(db_path=Path(cfg.db_path))
    feed = FootballDataClient(
        api_key=cfg.football_data_key,
        base_url=cfg.football_data_base_url,
        competition_code=cfg.football_data_competition_code,
        timeout_sec=float(cfg.football_data_timeout_seconds),
        user_agent=str(cfg.app_name),
    )
    return League(store=store, cache=TTLCache(), feed=feed)


def get_league(request: Request) -> League:
    if not hasattr(request.app.state, "league"):
        request.app.state.league = build_league(settings)
    return request.app.state.league


def require_admin(request: Request) -> None:
    token = str(getattr(settings, "admin_token", "") or "").strip()
    if not token:
        raise HTTPException(status_code=403, detail="admin_token_not_configured")
    provided = request.headers.get("x-admin-token")
    if not isinstance(provided, str) or provided.strip() != token:
        raise HTTPException(status_code=403, detail="admin_forbidden")


def optional_user_id(request: Request) -> str | None:
    uid = request.headers.get("x-user-id")
    if not isinstance(uid, str) or not uid.strip():
        return None
    return uid.strip()


def require_user_id(request: Request) -> str:
    uid = optional_user_id(request)
    if uid is None:
        raise HTTPException(status_code=401, detail="user_required")
    return uid


def match_out(match: Match, *, now: datetime | None = None, prediction: Prediction | None = None) -> MatchOut:
    res = resolve_status(match.status, match.kickoff_at, now or datetime.now(timezone.utc), match.score_home, match.score_away)
    return MatchOut(
        id=match.id,
        ext_id=match.ext_id,
        stage=match.stage,
        group=match.group,
        matchday=match.matchday,
        home_team=match.home_team,
        away_team=match.away_team,
        kickoff_at=match.kickoff_at,
        status=res.canonical,
        score_home=match.score_home,
        score_away=match.score_away,
        is_live=res.is_live,
        is_finished=res.is_finished,
        is_scheduled=res.is_scheduled,
        is_bettable=res.is_bettable,
        user_prediction=UserPrediction(pred_home=prediction.pred_home, pred_away=prediction.pred_away) if prediction else None,
    )


def prediction_out(p: Prediction) -> PredictionOut:
    return PredictionOut(
        user_id=p.user_id,
        match_id=p.match_id,
        pred_home=p.pred_home,
        pred_away=p.pred_away,
        created_at=p.created_at,
        updated_at=p.updated_at,
    )
