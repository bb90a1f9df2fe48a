from __future__ import annotations

import asyncio
import json
import logging
import math
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Final, Protocol

import httpx

from .errors import UpstreamDataError
from .geo import BoundingBox
from .logging_utils import log_event
from .road_graph import RoadNetworkData, parse_overpass_elements
from .settings import Settings, settings
from .spatial_index import LandCoverPolygon, ThermalObservation

_RETRYABLE_STATUS: Final[set[int]] = {408, 425, 429, 500, 502, 503, 504}


@dataclass(frozen=True)
class TimeWindow:
    start: datetime
    end: datetime

    def contains(self, ts: datetime | None) -> bool:
        if ts is None:
            return False
        return self.start <= _as_utc(ts) <= self.end


def _as_utc(ts: datetime) -> datetime:
    if ts.tzinfo is None:
        return ts.replace(tzinfo=UTC)
    return ts.astimezone(UTC)


def day_window(ts: datetime) -> TimeWindow:
    """The calendar day containing ``ts``, in ``ts``'s own zone (UTC if naive)."""
    local = ts if ts.tzinfo is not None else ts.replace(tzinfo=UTC)
    start = local.replace(hour=0, minute=0, second=0, microsecond=0)
    end = local.replace(hour=23, minute=59, second=59, microsecond=999_000)
    return TimeWindow(start=_as_utc(start), end=_as_utc(end))


class RoadNetworkProvider(Protocol):
    async def fetch_road_network(self, bbox: BoundingBox) -> RoadNetworkData: ...


class ThermalObservationStore(Protocol):
    async def fetch_observations(
        self, bbox: BoundingBox, window: TimeWindow | None = None
    ) -> list[ThermalObservation]: ...


class LandCoverStore(Protocol):
    async def fetch_polygons(
        self, bbox: BoundingBox, window: TimeWindow | None = None
    ) -> list[LandCoverPolygon]: ...


def _format_http_error(resp: httpx.Response) -> str:
    body = (resp.text or "").strip().replace("\n", " ")
    if len(body) > 240:
        body = body[:240] + "..."
    if body:
        return f"Overpass {resp.status_code}: {body}"
    return f"Overpass HTTP {resp.status_code}"


class OverpassRoadProvider:
    def __init__(
        self,
        *,
        base_url: str,
        highway_filter: str,
        timeout_s: float = 30.0,
        max_retries: int = 3,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url
        self.highway_filter = highway_filter
        self.timeout_s = float(timeout_s)
        self.max_retries = max(1, int(max_retries))
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout_s, connect=5.0),
            headers={"accept": "application/json"},
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def build_query(self, bbox: BoundingBox) -> str:
        server_timeout = max(1, int(math.ceil(self.timeout_s)))
        return (
            f"[out:json][timeout:{server_timeout}];"
            f'(way["highway"~"{self.highway_filter}"]({bbox.overpass()});>;);'
            "out body;"
        )

    async def fetch_road_network(self, bbox: BoundingBox) -> RoadNetworkData:
        query = self.build_query(bbox)
        last_err: Exception | None = None
        for attempt in range(self.max_retries):
            try:
                resp = await self._client.post(self.base_url, data={"data": query})
            except (httpx.TimeoutException, httpx.TransportError) as e:
                last_err = e
            else:
                if resp.status_code in _RETRYABLE_STATUS:
                    last_err = UpstreamDataError(_format_http_error(resp))
                elif resp.status_code >= 400:
                    # Most 4xx are query errors; retrying cannot help.
                    raise UpstreamDataError(_format_http_error(resp))
                else:
                    try:
                        payload = resp.json()
                    except ValueError as e:
                        raise UpstreamDataError(
                            "road network response is not valid JSON",
                            reason_code="upstream_data_malformed",
                        ) from e
                    return parse_overpass_elements(payload)

            if attempt < self.max_retries - 1:
                delay_s = min(0.25 * (2**attempt), 2.0)
                log_event(
                    "overpass_retry",
                    level=logging.WARNING,
                    attempt=attempt + 1,
                    max_retries=self.max_retries,
                    delay_s=delay_s,
                    error=type(last_err).__name__,
                )
                await asyncio.sleep(delay_s)

        msg = str(last_err).strip() if last_err is not None else ""
        detail = f"{type(last_err).__name__}: {msg}" if msg else type(last_err).__name__
        raise UpstreamDataError(
            f"road network request failed after {self.max_retries} attempts: {detail}",
            details={"base_url": self.base_url},
        )


def _read_json(path: Path, *, what: str) -> Any:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise UpstreamDataError(f"{what} unavailable: {path}") from exc
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise UpstreamDataError(f"{what} is not valid JSON: {path}", reason_code="upstream_data_malformed") from exc


def _parse_timestamp(raw: object, *, what: str) -> datetime | None:
    if raw is None or raw == "":
        return None
    if not isinstance(raw, str):
        raise UpstreamDataError(f"{what} has a non-string timestamp", reason_code="upstream_data_malformed")
    try:
        return datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError as exc:
        raise UpstreamDataError(f"{what} has a malformed timestamp {raw!r}", reason_code="upstream_data_malformed") from exc


def _finite(raw: object) -> float | None:
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        return None
    value = float(raw)
    return value if math.isfinite(value) else None


def parse_thermal_records(payload: Any) -> list[ThermalObservation]:
    """Accept a bare list or a ``{"data": [...]}`` envelope of point records."""
    records = payload.get("data") if isinstance(payload, dict) else payload
    if not isinstance(records, list):
        raise UpstreamDataError("thermal data must be a list of records", reason_code="upstream_data_malformed")
    out: list[ThermalObservation] = []
    for idx, rec in enumerate(records):
        if not isinstance(rec, dict):
            raise UpstreamDataError(f"thermal record {idx} is not an object", reason_code="upstream_data_malformed")
        lat = _finite(rec.get("lat"))
        lon = _finite(rec.get("lng", rec.get("lon")))
        temperature = _finite(rec.get("temperature"))
        if lat is None or lon is None or temperature is None:
            raise UpstreamDataError(
                f"thermal record {idx} is missing lat/lng/temperature",
                reason_code="upstream_data_malformed",
            )
        out.append(
            ThermalObservation(
                lat=lat,
                lon=lon,
                temperature_c=temperature,
                timestamp=_parse_timestamp(rec.get("timestamp"), what=f"thermal record {idx}"),
                source=str(rec["source"]) if rec.get("source") is not None else None,
            )
        )
    return out


def _parse_ring(raw: object) -> tuple[tuple[float, float], ...] | None:
    """GeoJSON ``[lng, lat]`` positions to (lat, lon); None if unusable."""
    if not isinstance(raw, list):
        return None
    ring: list[tuple[float, float]] = []
    for pt in raw:
        if not isinstance(pt, list) or len(pt) < 2:
            return None
        lng, lat = _finite(pt[0]), _finite(pt[1])
        if lat is None or lng is None:
            return None
        ring.append((lat, lng))
    if len(set(ring)) < 3:
        return None
    return tuple(ring)


def parse_land_cover_features(payload: Any) -> list[LandCoverPolygon]:
    """Read Polygon features (shell plus holes) from a FeatureCollection or list."""
    features = payload.get("features") if isinstance(payload, dict) else payload
    if not isinstance(features, list):
        raise UpstreamDataError("land cover data must be a list of features", reason_code="upstream_data_malformed")
    out: list[LandCoverPolygon] = []
    for idx, feature in enumerate(features):
        geometry = feature.get("geometry") if isinstance(feature, dict) else None
        props = feature.get("properties") if isinstance(feature, dict) else None
        if not isinstance(geometry, dict) or geometry.get("type") != "Polygon":
            raise UpstreamDataError(f"land cover feature {idx} is not a Polygon", reason_code="upstream_data_malformed")
        rings = geometry.get("coordinates")
        parsed = [_parse_ring(raw) for raw in rings] if isinstance(rings, list) else []
        usable = [ring for ring in parsed if ring is not None]
        if not parsed or len(usable) != len(parsed):
            raise UpstreamDataError(
                f"land cover feature {idx} has a ring with fewer than three distinct vertices",
                reason_code="upstream_data_malformed",
            )
        props = props if isinstance(props, dict) else {}
        out.append(
            LandCoverPolygon(
                ring=usable[0],
                holes=tuple(usable[1:]),
                label=str(props.get("landCover") or "unknown"),
                confidence=_finite(props.get("confidence")) or 0.0,
                timestamp=_parse_timestamp(props.get("timestamp"), what=f"land cover feature {idx}"),
            )
        )
    return out


def _ring_intersects(ring: tuple[tuple[float, float], ...], bbox: BoundingBox) -> bool:
    lats = [lat for lat, _ in ring]
    lons = [lon for _, lon in ring]
    return not (
        max(lats) < bbox.south or min(lats) > bbox.north or max(lons) < bbox.west or min(lons) > bbox.east
    )


class JsonThermalStore:
    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def _load(self) -> list[ThermalObservation]:
        return parse_thermal_records(_read_json(self.path, what="thermal data"))

    async def fetch_observations(
        self, bbox: BoundingBox, window: TimeWindow | None = None
    ) -> list[ThermalObservation]:
        observations = await asyncio.to_thread(self._load)
        return [
            obs
            for obs in observations
            if bbox.contains(obs.lat, obs.lon) and (window is None or window.contains(obs.timestamp))
        ]


class JsonLandCoverStore:
    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def _load(self) -> list[LandCoverPolygon]:
        return parse_land_cover_features(_read_json(self.path, what="land cover data"))

    async def fetch_polygons(
        self, bbox: BoundingBox, window: TimeWindow | None = None
    ) -> list[LandCoverPolygon]:
        polygons = await asyncio.to_thread(self._load)
        return [
            poly
            for poly in polygons
            if _ring_intersects(poly.ring, bbox) and (window is None or window.contains(poly.timestamp))
        ]


@dataclass
class RouteDataSources:
    roads: RoadNetworkProvider
    thermal: ThermalObservationStore
    land_cover: LandCoverStore

    async def aclose(self) -> None:
        for source in (self.roads, self.thermal, self.land_cover):
            closer = getattr(source, "aclose", None)
            if closer is not None:
                await closer()


@asynccontextmanager
async def open_route_data_sources(cfg: Settings | None = None) -> AsyncIterator[RouteDataSources]:
    """Per-request collaborators; every connection is released on exit."""
    cfg = cfg or settings
    sources = RouteDataSources(
        roads=OverpassRoadProvider(
            base_url=cfg.overpass_url,
            highway_filter=cfg.overpass_highway_filter,
            timeout_s=cfg.overpass_timeout_s,
            max_retries=cfg.overpass_max_retries,
        ),
        thermal=JsonThermalStore(cfg.thermal_data_path),
        land_cover=JsonLandCoverStore(cfg.land_cover_data_path),
    )
    try:
        yield sources
    finally:
        await sources.aclose()
