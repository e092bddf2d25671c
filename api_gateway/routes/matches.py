from __future__ import annotations

from fastapi import APIRouter, Request, Response

from api_gateway.app.schemas import LeaderboardEntry, LeaderboardResponse, MatchesResponse
from api_gateway.app.services import get_league, match_out, optional_user_id
from prediction_core.resilience.bulkheads import run_io


router = APIRouter()


@router.get("/api/matches", response_model=MatchesResponse)
async def list_matches(request: Request, response: Response) -> MatchesResponse:
    league = get_league(request)
    matches = await run_io(league.leaderboard.get_matches)
    user_id = optional_user_id(request)
    mine = {}
    if user_id is not None:
        mine = {p.match_id: p for p in await run_io(league.predictions.for_user, user_id)}
    now = league.clock()
    response.headers["Cache-Control"] = "no-store"
    return MatchesResponse(generated_at_utc=now, matches=[match_out(m, now=now, prediction=mine.get(m.id)) for m in matches])


@router.get("/api/leaderboard", response_model=LeaderboardResponse)
async def leaderboard(request: Request) -> LeaderboardResponse:
    league = get_league(request)
    rows = await run_io(league.leaderboard.get_leaderboard)
    return LeaderboardResponse(
        leaderboard=[
            LeaderboardEntry(
                rank=r.rank,
                user_id=r.user_id,
                display_name=r.display_name,
                points_total=r.points_total,
                exact_count=r.exact_count,
                diff_count=r.diff_count,
                outcome_count=r.outcome_count,
                bonus_points=r.bonus_points,
                first_pred_at=r.first_pred_at,
            )
            for r in rows
        ]
    )
