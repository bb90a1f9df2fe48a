from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_data_dir() -> Path:
    # Keep ingested thermal/land-cover snapshots in backend/data by default.
    return Path(__file__).resolve().parents[1] / "data"


class Settings(BaseSettings):
    """Validated settings (env-driven), keeping config out of code for easy extension."""

    model_config = SettingsConfigDict(
        # Support both "repo root/.env" and "backend/.env" (local dev)
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    out_dir: str = Field(default="out", alias="OUT_DIR")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    overpass_url: str = Field(
        default="https://overpass-api.de/api/interpreter",
        alias="OVERPASS_URL",
    )
    overpass_timeout_s: float = Field(default=30.0, ge=1.0, le=180.0, alias="OVERPASS_TIMEOUT_S")
    overpass_max_retries: int = Field(default=3, ge=1, le=10, alias="OVERPASS_MAX_RETRIES")
    overpass_highway_filter: str = Field(
        default="primary|secondary|tertiary|residential|unclassified|footway|pedestrian|path",
        alias="OVERPASS_HIGHWAY_FILTER",
    )
    # ~1 km around the start/end box.
    route_bbox_padding_deg: float = Field(default=0.01, ge=0.0, le=1.0, alias="ROUTE_BBOX_PADDING_DEG")

    thermal_data_path: str = Field(
        default_factory=lambda: str(_default_data_dir() / "thermal_observations.json"),
        alias="THERMAL_DATA_PATH",
    )
    land_cover_data_path: str = Field(
        default_factory=lambda: str(_default_data_dir() / "land_cover.geojson"),
        alias="LAND_COVER_DATA_PATH",
    )

    default_temperature_c: float = Field(default=25.0, alias="DEFAULT_TEMPERATURE_C")
    heat_penalty_per_degree: float = Field(default=0.0, ge=0.0, alias="HEAT_PENALTY_PER_DEGREE")
    heat_comfort_temperature_c: float = Field(default=25.0, alias="HEAT_COMFORT_TEMPERATURE_C")

    route_search_timeout_s: float = Field(default=20.0, gt=0.0, le=600.0, alias="ROUTE_SEARCH_TIMEOUT_S")
    route_search_max_expansions: int = Field(
        default=500_000,
        ge=1,
        alias="ROUTE_SEARCH_MAX_EXPANSIONS",
    )


settings = Settings()
