from __future__ import annotations

import math
from dataclasses import dataclass

import numpy as np

EARTH_RADIUS_M = 6_371_000.0


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = phi2 - phi1
    dlambda = math.radians(lon2 - lon1)
    a = (
        math.sin(dphi / 2.0) ** 2
        + (math.cos(phi1) * math.cos(phi2) * (math.sin(dlambda / 2.0) ** 2))
    )
    return 2.0 * EARTH_RADIUS_M * math.asin(min(1.0, math.sqrt(max(0.0, a))))


def haversine_m_many(lat: float, lon: float, lats: np.ndarray, lons: np.ndarray) -> np.ndarray:
    """Vectorised `haversine_m` from one point to many."""
    phi1 = math.radians(lat)
    phi2 = np.radians(lats)
    dphi = phi2 - phi1
    dlambda = np.radians(lons - lon)
    a = np.sin(dphi / 2.0) ** 2 + math.cos(phi1) * np.cos(phi2) * np.sin(dlambda / 2.0) ** 2
    return 2.0 * EARTH_RADIUS_M * np.arcsin(np.minimum(1.0, np.sqrt(np.maximum(0.0, a))))


@dataclass(frozen=True)
class BoundingBox:
    south: float
    west: float
    north: float
    east: float

    def contains(self, lat: float, lon: float) -> bool:
        return self.south <= lat <= self.north and self.west <= lon <= self.east

    def overpass(self) -> str:
        # Overpass QL wants (south, west, north, east).
        return f"{self.south},{self.west},{self.north},{self.east}"


WORLD_BOUNDS = BoundingBox(south=-90.0, west=-180.0, north=90.0, east=180.0)


def bbox_for_od(
    start: tuple[float, float],
    end: tuple[float, float],
    *,
    padding_deg: float,
) -> BoundingBox:
    pad = max(0.0, float(padding_deg))
    return BoundingBox(
        south=max(-90.0, min(start[0], end[0]) - pad),
        west=max(-180.0, min(start[1], end[1]) - pad),
        north=min(90.0, max(start[0], end[0]) + pad),
        east=min(180.0, max(start[1], end[1]) + pad),
    )


def parse_bounds(raw: str) -> BoundingBox:
    """Parse ``"<swLat>:<swLng>,<neLat>:<neLng>"`` into a bounding box."""
    try:
        sw_raw, ne_raw = raw.split(",")
        sw_lat, sw_lng = (float(part) for part in sw_raw.split(":"))
        ne_lat, ne_lng = (float(part) for part in ne_raw.split(":"))
    except ValueError as exc:
        raise ValueError(f"malformed bounds {raw!r}") from exc
    if not all(math.isfinite(v) for v in (sw_lat, sw_lng, ne_lat, ne_lng)):
        raise ValueError(f"malformed bounds {raw!r}")
    if sw_lat > ne_lat or sw_lng > ne_lng:
        raise ValueError("bounds must be ordered south-west to north-east")
    return BoundingBox(south=sw_lat, west=sw_lng, north=ne_lat, east=ne_lng)
