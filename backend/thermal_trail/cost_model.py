from __future__ import annotations

from dataclasses import dataclass, field

from .spatial_index import SpatialIndex

# Degrees added to the nearest observation for the surface under the point.
LAND_COVER_CORRECTIONS_C: dict[str, float] = {
    "tree_canopy": -2.0,
    "water": -1.0,
    "asphalt": 3.0,
    "building": 2.0,
}

_LABEL_ALIASES: dict[str, str] = {
    "tree": "tree_canopy",
    "trees": "tree_canopy",
    "treecanopy": "tree_canopy",
    "tree canopy": "tree_canopy",
    "buildings": "building",
}

MIXED_LAND_COVER = "mixed"


def normalize_land_cover(label: str | None) -> str:
    text = str(label or "").strip().lower().replace("-", "_")
    if not text:
        return "unknown"
    return _LABEL_ALIASES.get(text, _LABEL_ALIASES.get(text.replace("_", " "), text))


def land_cover_correction_c(label: str | None) -> float:
    return LAND_COVER_CORRECTIONS_C.get(normalize_land_cover(label), 0.0)


@dataclass
class CostModel:
    """Adjusted temperature per point plus the heat multiplier used for edge costs.

    Results are memoised per (lat, lon) so repeated lookups during one search
    stay identical and cheap.
    """

    index: SpatialIndex
    heat_penalty_per_degree: float = 0.0
    comfort_temperature_c: float = 25.0
    _cache: dict[tuple[float, float], tuple[float, str | None]] = field(default_factory=dict, repr=False)

    def _sample(self, lat: float, lon: float) -> tuple[float, str | None]:
        key = (lat, lon)
        cached = self._cache.get(key)
        if cached is not None:
            return cached
        temperature = float(self.index.nearest_observation(lat, lon).temperature_c)
        polygon = self.index.containing_polygon(lat, lon)
        label = normalize_land_cover(polygon.label) if polygon is not None else None
        if label is not None:
            temperature += LAND_COVER_CORRECTIONS_C.get(label, 0.0)
        out = (temperature, label)
        self._cache[key] = out
        return out

    def adjusted_temperature(self, lat: float, lon: float) -> float:
        return self._sample(lat, lon)[0]

    def land_cover_at(self, lat: float, lon: float) -> str | None:
        return self._sample(lat, lon)[1]

    def heat_multiplier(self, lat: float, lon: float) -> float:
        # Never below 1.0: keeps the great-circle heuristic admissible.
        if self.heat_penalty_per_degree <= 0.0:
            return 1.0
        excess = max(0.0, self.adjusted_temperature(lat, lon) - self.comfort_temperature_c)
        return 1.0 + (self.heat_penalty_per_degree * excess)
