from __future__ import annotations

import json
import logging
import ssl
from datetime import datetime
from http.client import HTTPException
from typing import Any, Protocol
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

import certifi
from pydantic import BaseModel, Field, ValidationError

from prediction_core.errors import DataIntegrityError, FeedConfigError, TransientUpstreamError, UpstreamResponseError
from prediction_core.resilience.circuit_breaker import CircuitBreaker, get_breaker


logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.football-data.org/v4"


class FeedMatch(BaseModel):
    external_id: str = Field(min_length=1)
    home_team: str = "Home"
    away_team: str = "Away"
    kickoff_at: datetime
    raw_status: str = "SCHEDULED"
    stage: str = "UNKNOWN"
    group: str | None = None
    matchday: int | None = None
    score_home: int | None = Field(default=None, ge=0)
    score_away: int | None = Field(default=None, ge=0)


class MatchFeed(Protocol):
    def fetch_season_matches(self, season: int) -> list[FeedMatch]: ...


def _score(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value if value >= 0 else None


def _name(team: Any, default: str) -> str:
    if isinstance(team, dict):
        name = team.get("name")
        if isinstance(name, str) and name.strip():
            return name.strip()
    return default


def parse_feed_match(item: Any) -> FeedMatch | None:
    if not isinstance(item, dict) or item.get("id") is None:
        logger.warning("feed_item_skipped reason=missing_id")
        return None
    ext_id = str(item.get("id"))
    score = item.get("score") if isinstance(item.get("score"), dict) else {}
    full = score.get("fullTime") if isinstance(score.get("fullTime"), dict) else {}
    sh, sa = _score(full.get("home")), _score(full.get("away"))
    if (sh is None) != (sa is None):
        err = DataIntegrityError(f"partial_score:{ext_id}")
        logger.warning("feed_partial_score ext_id=%s home=%s away=%s", ext_id, sh, sa, exc_info=err)
        sh, sa = None, None
    try:
        return FeedMatch(
            external_id=ext_id,
            home_team=_name(item.get("homeTeam"), "Home"),
            away_team=_name(item.get("awayTeam"), "Away"),
            kickoff_at=item.get("utcDate"),
            raw_status=str(item.get("status") or "SCHEDULED"),
            stage=str(item.get("stage") or "UNKNOWN"),
            group=str(item["group"]) if item.get("group") else None,
            matchday=item.get("matchday") if isinstance(item.get("matchday"), int) else None,
            score_home=sh,
            score_away=sa,
        )
    except ValidationError as e:
        logger.warning("feed_item_skipped ext_id=%s errors=%s", ext_id, e.error_count())
        return None


def parse_feed_matches(payload: Any) -> list[FeedMatch]:
    if not isinstance(payload, dict):
        raise UpstreamResponseError("football_data_invalid_payload")
    items = payload.get("matches")
    if not isinstance(items, list):
        msg = payload.get("message") or payload.get("error")
        raise UpstreamResponseError(f"football_data_error:{msg}" if msg else "football_data_invalid_payload")
    out: list[FeedMatch] = []
    for item in items:
        parsed = parse_feed_match(item)
        if parsed is not None:
            out.append(parsed)
    return out


def _ssl_context(url: str) -> ssl.SSLContext | None:
    if not str(url).lower().startswith("https://"):
        return None
    return ssl.create_default_context(cafile=certifi.where())


def _retry_after(e: HTTPError) -> int | None:
    headers = getattr(e, "headers", None)
    raw = headers.get("Retry-After") if headers is not None else None
    if raw is None:
        return None
    try:
        return max(0, int(str(raw).strip()))
    except ValueError:
        return None


class FootballDataClient:
    def __init__(
        self,
        *,
        api_key: str | None,
        base_url: str = DEFAULT_BASE_URL,
        competition_code: str = "CL",
        timeout_sec: float = 30.0,
        user_agent: str = "Prediction League API",
        breaker: CircuitBreaker | None = None,
    ) -> None:
        self._api_key = str(api_key or "").strip()
        self._base_url = str(base_url or DEFAULT_BASE_URL).rstrip("/")
        self._competition_code = str(competition_code or "CL").strip().upper()
        self._timeout_sec = float(timeout_sec)
        self._user_agent = str(user_agent)
        self._breaker = breaker or get_breaker("football_data")

    def season_url(self, season: int) -> str:
        qs = urlencode({"season": int(season)})
        return f"{self._base_url}/competitions/{self._competition_code}/matches?{qs}"

    def fetch_season_matches(self, season: int) -> list[FeedMatch]:
        if not self._api_key:
            raise FeedConfigError("football_data_key_missing")
        payload = self._breaker.call(self._get_json, self.season_url(season))
        matches = parse_feed_matches(payload)
        logger.info("football_data_fetched season=%s matches=%s", int(season), len(matches))
        return matches

    def _get_json(self, url: str) -> Any:
        headers = {"X-Auth-Token": self._api_key, "Accept": "application/json", "User-Agent": self._user_agent}
        req = Request(url, headers=headers, method="GET")
        try:
            with urlopen(req, timeout=self._timeout_sec, context=_ssl_context(url)) as resp:
                raw = resp.read()
        except HTTPError as e:
            code = int(getattr(e, "code", 0) or 0)
            if code == 429:
                raise TransientUpstreamError("football_data_http_429:rate_limited", retry_after_sec=_retry_after(e)) from e
            if code >= 500:
                raise TransientUpstreamError(f"football_data_http_{code}") from e
            if code in (401, 403):
                raise FeedConfigError(f"football_data_http_{code}:unauthorized") from e
            raise UpstreamResponseError(f"football_data_http_{code}") from e
        except (URLError, OSError, HTTPException) as e:
            raise TransientUpstreamError(f"football_data_network_error:{type(e).__name__}") from e
        try:
            return json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise UpstreamResponseError("football_data_invalid_json") from e
