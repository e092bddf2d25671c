import json
from typing import Annotated

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from prediction_core.config import league_db_path


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="LEAGUE_", env_file=".env", extra="ignore")

    app_name: str = "Prediction League API"
    admin_token: str | None = None
    cors_allow_origins: Annotated[list[str], NoDecode] = ["http://localhost:3000", "http://localhost:5173"]
    cors_allow_origin_regex: str | None = None
    db_path: str = str(league_db_path())

    football_data_key: str | None = None
    football_data_base_url: str = "https://api.football-data.org/v4"
    football_data_competition_code: str = "CL"
    football_data_timeout_seconds: float = 30.0
    season: int = 2025

    background_sync_enabled: bool = False
    background_sync_interval_seconds: int = 60

    @field_validator("football_data_competition_code", mode="before")
    @classmethod
    def _normalize_competition_code(cls, v: object) -> object:
        if v is None:
            return v
        return str(v).strip().upper()

    @field_validator("background_sync_interval_seconds", mode="after")
    @classmethod
    def _clamp_sync_interval(cls, v: int) -> int:
        return max(10, min(int(v), 86400))

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _parse_cors_allow_origins(cls, v: object) -> object:
        if v is None:
            return v
        if isinstance(v, list):
            return [str(x).strip() for x in v if str(x).strip()]
        if isinstance(v, str):
            s = v.strip()
            if not s:
                return []
            try:
                parsed = json.loads(s)
            except ValueError:
                parsed = None
            if isinstance(parsed, list):
                return [str(x).strip() for x in parsed if str(x).strip()]
            if isinstance(parsed, str):
                s = parsed.strip()
            parts = [p.strip() for p in s.split(",")]
            return [p for p in parts if p]
        return v


settings = Settings()
