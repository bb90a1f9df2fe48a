from __future__ import annotations

import math
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _check_lat_lng(value: tuple[float, float]) -> tuple[float, float]:
    lat, lng = value
    if not (math.isfinite(lat) and math.isfinite(lng)):
        raise ValueError("coordinates must be finite")
    if not -90.0 <= lat <= 90.0:
        raise ValueError("latitude must be within [-90, 90]")
    if not -180.0 <= lng <= 180.0:
        raise ValueError("longitude must be within [-180, 180]")
    return (float(lat), float(lng))


class FindRouteRequest(BaseModel):
    """Points are ``[lat, lng]`` pairs; ``timestamp`` selects a day of observations."""

    start: tuple[float, float]
    end: tuple[float, float]
    timestamp: datetime | None = None

    @field_validator("start", "end")
    @classmethod
    def valid_lat_lng(cls, v: tuple[float, float]) -> tuple[float, float]:
        return _check_lat_lng(v)


class GeoJSONLineString(BaseModel):
    type: Literal["LineString"] = "LineString"
    # [lng, lat] per GeoJSON
    coordinates: list[tuple[float, float]]


class RouteProperties(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    temperature: float
    distance: float = Field(..., ge=0.0, description="metres")
    land_cover: str = Field(..., alias="landCover")


class RouteFeature(BaseModel):
    type: Literal["Feature"] = "Feature"
    geometry: GeoJSONLineString
    properties: RouteProperties


class ThermalPoint(BaseModel):
    lat: float
    lng: float
    temperature: float
    timestamp: datetime | None = None
    source: str | None = None


class ThermalDataResponse(BaseModel):
    data: list[ThermalPoint]
    timestamp: datetime
    bounds: str


class ErrorResponse(BaseModel):
    error: str
    reason_code: str | None = None
