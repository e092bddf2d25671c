from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Request

from api_gateway.app.schemas import (
    BonusRequest,
    BonusResponse,
    CacheEntryStats,
    CacheStatsResponse,
    CircuitStats,
    MatchResultResponse,
    MatchResultUpdate,
    PredictionHistoryEntryOut,
    PredictionHistoryResponse,
    PredictionOut,
    PredictionRequest,
    RecalcResponse,
    RefreshCacheResponse,
    SyncResponse,
    UserPredictionsResponse,
)
from api_gateway.app.services import get_league, match_out, prediction_out, require_admin
from api_gateway.app.settings import settings
from prediction_core.errors import ConcurrentRecalcConflict, FeedConfigError, InvalidPrediction, LeagueError, MatchNotFound
from prediction_core.resilience.bulkheads import run_io
from prediction_core.resilience.circuit_breaker import breaker_snapshots


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin")


@router.post("/sync", response_model=SyncResponse)
async def sync_matches(request: Request, season: int | None = None) -> SyncResponse:
    require_admin(request)
    league = get_league(request)
    s = int(season if season is not None else settings.season)
    try:
        result = await run_io(league.sync_matches, s)
    except FeedConfigError as e:
        raise HTTPException(status_code=503, detail="football_data_key_missing") from e
    except LeagueError as e:
        logger.warning("admin_sync_failed season=%s", s, exc_info=True)
        raise HTTPException(status_code=502, detail="sync_failed") from e
    return SyncResponse(ok=True, season=s, count=result.count, results_changed=list(result.results_changed), synced_at_utc=result.synced_at)


@router.post("/refresh-cache", response_model=RefreshCacheResponse)
async def refresh_cache(request: Request) -> RefreshCacheResponse:
    require_admin(request)
    league = get_league(request)
    sizes = await run_io(league.refresh_all)
    return RefreshCacheResponse(ok=True, matches=int(sizes.get("matches", 0)), leaderboard=int(sizes.get("leaderboard", 0)))


@router.get("/cache-stats", response_model=CacheStatsResponse)
async def cache_stats(request: Request) -> CacheStatsResponse:
    require_admin(request)
    league = get_league(request)
    stats = league.leaderboard.get_cache_stats()
    return CacheStatsResponse(
        cache={k: CacheEntryStats(**v) for k, v in stats.items()},
        circuits={k: CircuitStats(state=s.state, failures=s.failures) for k, s in breaker_snapshots().items()},
    )


@router.post("/recalc/{match_id}", response_model=RecalcResponse)
async def recalc_match(match_id: int, request: Request) -> RecalcResponse:
    require_admin(request)
    league = get_league(request)
    try:
        result = await run_io(league.recalc.recalc_for_match, match_id)
    except MatchNotFound as e:
        raise HTTPException(status_code=404, detail="match_not_found") from e
    except ConcurrentRecalcConflict as e:
        raise HTTPException(status_code=409, detail="recalc_conflict") from e
    return RecalcResponse(ok=True, updated=result.updated, matches=result.matches)


@router.post("/recalc-all", response_model=RecalcResponse)
async def recalc_all(request: Request) -> RecalcResponse:
    require_admin(request)
    league = get_league(request)
    try:
        result = await run_io(league.recalc.recalc_all)
    except ConcurrentRecalcConflict as e:
        raise HTTPException(status_code=409, detail="recalc_conflict") from e
    return RecalcResponse(ok=True, updated=result.updated, matches=result.matches)


@router.patch("/matches/{match_id}", response_model=MatchResultResponse)
async def override_match_result(match_id: int, req: MatchResultUpdate, request: Request) -> MatchResultResponse:
    require_admin(request)
    league = get_league(request)
    try:
        match, result = await run_io(league.override_result, match_id, req.score_home, req.score_away, req.status)
    except MatchNotFound as e:
        raise HTTPException(status_code=404, detail="match_not_found") from e
    except ConcurrentRecalcConflict as e:
        raise HTTPException(status_code=409, detail="recalc_conflict") from e
    return MatchResultResponse(match=match_out(match, now=league.clock()), updated=result.updated)


@router.post("/users/{user_id}/bonus", response_model=BonusResponse)
async def award_bonus(user_id: str, req: BonusRequest, request: Request) -> BonusResponse:
    require_admin(request)
    league = get_league(request)
    try:
        row = await run_io(league.recalc.award_bonus, user_id, req.points)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    except ConcurrentRecalcConflict as e:
        raise HTTPException(status_code=409, detail="recalc_conflict") from e
    return BonusResponse(user_id=row.user_id, bonus_points=row.bonus_points, points_total=row.points_total)


@router.delete("/users/{user_id}/predictions/{match_id}")
async def delete_prediction(user_id: str, match_id: int, request: Request) -> dict[str, bool]:
    require_admin(request)
    league = get_league(request)
    deleted = await run_io(league.predictions.delete_prediction, user_id, match_id)
    if not deleted:
        raise HTTPException(status_code=404, detail="prediction_not_found")
    return {"ok": True}


@router.get("/users/{user_id}/predictions", response_model=UserPredictionsResponse)
async def list_user_predictions(user_id: str, request: Request) -> UserPredictionsResponse:
    require_admin(request)
    league = get_league(request)
    preds = await run_io(league.predictions.for_user, user_id)
    return UserPredictionsResponse(user_id=user_id, predictions=[prediction_out(p) for p in preds])


@router.post("/users/{user_id}/predictions", response_model=PredictionOut)
async def upsert_user_prediction(user_id: str, req: PredictionRequest, request: Request) -> PredictionOut:
    require_admin(request)
    league = get_league(request)
    try:
        saved = await run_io(
            league.predictions.place_prediction, user_id, req.match_id, req.pred_home, req.pred_away, enforce_lock=False
        )
    except InvalidPrediction as e:
        raise HTTPException(status_code=400, detail="invalid_prediction") from e
    except MatchNotFound as e:
        raise HTTPException(status_code=404, detail="match_not_found") from e
    except ConcurrentRecalcConflict as e:
        raise HTTPException(status_code=409, detail="recalc_conflict") from e
    return prediction_out(saved)


@router.get("/users/{user_id}/predictions/{match_id}/history", response_model=PredictionHistoryResponse)
async def prediction_history(user_id: str, match_id: int, request: Request) -> PredictionHistoryResponse:
    require_admin(request)
    league = get_league(request)
    entries = await run_io(league.predictions.history, user_id, match_id)
    return PredictionHistoryResponse(
        user_id=user_id,
        match_id=match_id,
        history=[PredictionHistoryEntryOut(pred_home=h.pred_home, pred_away=h.pred_away, archived_at=h.archived_at) for h in entries],
    )
