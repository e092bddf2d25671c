from __future__ import annotations

from fastapi import APIRouter, HTTPException, Request

from api_gateway.app.schemas import PredictionOut, PredictionRequest
from api_gateway.app.services import get_league, prediction_out, require_user_id
from prediction_core.errors import InvalidPrediction, MatchNotFound, PredictionLocked
from prediction_core.resilience.bulkheads import run_io


router = APIRouter()


@router.post("/api/predictions", response_model=PredictionOut)
async def place_prediction(req: PredictionRequest, request: Request) -> PredictionOut:
    user_id = require_user_id(request)
    league = get_league(request)
    try:
        saved = await run_io(league.predictions.place_prediction, user_id, req.match_id, req.pred_home, req.pred_away)
    except InvalidPrediction as e:
        raise HTTPException(status_code=400, detail="invalid_prediction") from e
    except MatchNotFound as e:
        raise HTTPException(status_code=404, detail="match_not_found") from e
    except PredictionLocked as e:
        raise HTTPException(status_code=403, detail="prediction_locked") from e
    return prediction_out(saved)
