from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime

import numpy as np
from shapely import STRtree
from shapely.geometry import Point, Polygon

from .geo import haversine_m_many


@dataclass(frozen=True)
class ThermalObservation:
    lat: float
    lon: float
    temperature_c: float
    timestamp: datetime | None = None
    source: str | None = None


@dataclass(frozen=True)
class LandCoverPolygon:
    # Closed ring of (lat, lon) vertices; the closing vertex may be omitted.
    ring: tuple[tuple[float, float], ...]
    label: str
    confidence: float = 0.0
    timestamp: datetime | None = None
    # Interior rings, (lat, lon) like `ring`; points inside a hole are not covered.
    holes: tuple[tuple[tuple[float, float], ...], ...] = ()


def _to_shape(poly: LandCoverPolygon) -> Polygon:
    shell = [(lon, lat) for lat, lon in poly.ring]
    holes = [[(lon, lat) for lat, lon in hole] for hole in poly.holes]
    return Polygon(shell, holes)


class SpatialIndex:
    """Read-only lookups over one request's thermal and land-cover snapshot.

    Nearest-observation queries are exact great-circle scans (vectorised).
    Polygon membership goes through an STR-tree and treats boundary points as
    inside; points within a hole are outside. When several polygons cover a
    point the one that appeared last in the input wins.
    """

    def __init__(
        self,
        observations: Sequence[ThermalObservation],
        polygons: Sequence[LandCoverPolygon],
        *,
        default_temperature_c: float = 25.0,
    ) -> None:
        self.observations = tuple(observations)
        self.polygons = tuple(polygons)
        self.default_temperature_c = float(default_temperature_c)
        self._obs_lats = np.fromiter((o.lat for o in self.observations), dtype=np.float64, count=len(self.observations))
        self._obs_lons = np.fromiter((o.lon for o in self.observations), dtype=np.float64, count=len(self.observations))
        self._shapes = [_to_shape(poly) for poly in self.polygons]
        self._tree = STRtree(self._shapes) if self._shapes else None

    def nearest_observation(self, lat: float, lon: float) -> ThermalObservation:
        if not self.observations:
            # Sparse regions still get a temperature; callers must not fail here.
            return ThermalObservation(
                lat=lat,
                lon=lon,
                temperature_c=self.default_temperature_c,
                source="default",
            )
        distances = haversine_m_many(lat, lon, self._obs_lats, self._obs_lons)
        # argmin keeps the first of equal minima, so ties resolve by input order.
        return self.observations[int(np.argmin(distances))]

    def containing_polygon(self, lat: float, lon: float) -> LandCoverPolygon | None:
        if self._tree is None:
            return None
        hits = self._tree.query(Point(lon, lat), predicate="covered_by")
        if len(hits) == 0:
            return None
        return self.polygons[int(np.max(hits))]
