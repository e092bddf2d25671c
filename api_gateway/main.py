from __future__ import annotations

import asyncio
import contextlib
import logging
from datetime import datetime, timezone

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api_gateway.app.services import build_league
from api_gateway.app.settings import settings
from api_gateway.routes import admin, matches, predictions
from prediction_core.errors import LeagueError
from prediction_core.league import League
from prediction_core.resilience.bulkheads import run_io


logger = logging.getLogger(__name__)

app = FastAPI(title=settings.app_name)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allow_origins,
    allow_origin_regex=settings.cors_allow_origin_regex,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(matches.router)
app.include_router(predictions.router)
app.include_router(admin.router)


async def _sync_scheduler(league: League) -> None:
    interval = float(settings.background_sync_interval_seconds)
    while True:
        try:
            result = await run_io(league.sync_matches, int(settings.season))
            logger.info("background_sync season=%s count=%s", int(settings.season), result.count)
        except LeagueError:
            logger.warning("background_sync_failed season=%s", int(settings.season), exc_info=True)
        except Exception:
            logger.exception("background_sync_crashed season=%s", int(settings.season))
        await asyncio.sleep(interval)


@app.on_event("startup")
async def startup() -> None:
    if not hasattr(app.state, "league"):
        app.state.league = build_league(settings)
    if settings.background_sync_enabled and settings.football_data_key:
        app.state.sync_task = asyncio.create_task(_sync_scheduler(app.state.league))


@app.on_event("shutdown")
async def shutdown() -> None:
    task = getattr(app.state, "sync_task", None)
    if task is not None:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
    league = getattr(app.state, "league", None)
    if league is not None:
        league.close()


@app.get("/health")
async def health() -> dict[str, object]:
    return {"ok": True, "time_utc": datetime.now(timezone.utc).isoformat()}
