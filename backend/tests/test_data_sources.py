from __future__ import annotations

import asyncio
import json
from datetime import UTC, datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import httpx
import pytest

import thermal_trail.data_sources as data_sources
from thermal_trail.data_sources import (
    JsonLandCoverStore,
    JsonThermalStore,
    OverpassRoadProvider,
    TimeWindow,
    day_window,
    open_route_data_sources,
    parse_land_cover_features,
    parse_thermal_records,
)
from thermal_trail.errors import UpstreamDataError
from thermal_trail.geo import BoundingBox
from thermal_trail.settings import settings

BBOX = BoundingBox(south=33.44, west=-112.08, north=33.46, east=-112.06)


def _feature(ring: list[list[float]], label: str, timestamp: str | None = None) -> dict[str, Any]:
    props: dict[str, Any] = {"landCover": label, "confidence": 0.7}
    if timestamp:
        props["timestamp"] = timestamp
    return {"type": "Feature", "geometry": {"type": "Polygon", "coordinates": [ring]}, "properties": props}


def test_day_window_spans_calendar_day_in_timestamp_zone() -> None:
    mst = timezone(timedelta(hours=-7))
    window = day_window(datetime(2025, 7, 14, 15, 30, tzinfo=mst))
    assert window.start == datetime(2025, 7, 14, 7, 0, tzinfo=UTC)
    assert window.end == datetime(2025, 7, 15, 6, 59, 59, 999_000, tzinfo=UTC)


def test_time_window_treats_naive_timestamps_as_utc_and_skips_missing() -> None:
    window = day_window(datetime(2025, 7, 14, 12, 0))
    assert window.contains(datetime(2025, 7, 14, 23, 0))
    assert not window.contains(datetime(2025, 7, 15, 0, 0, tzinfo=UTC))
    assert not window.contains(None)


def test_parse_thermal_records_accepts_envelope_and_lon_alias() -> None:
    records = parse_thermal_records(
        {"data": [{"lat": 33.45, "lon": -112.07, "temperature": 41, "timestamp": "2025-07-14T21:00:00Z"}]}
    )
    assert len(records) == 1
    assert records[0].lon == -112.07
    assert records[0].temperature_c == 41.0
    assert records[0].timestamp == datetime(2025, 7, 14, 21, 0, tzinfo=UTC)


@pytest.mark.parametrize(
    "payload",
    [
        {"data": "nope"},
        [{"lat": 33.45, "lng": -112.07}],
        [{"lat": "33.45", "lng": -112.07, "temperature": 40}],
        [{"lat": 33.45, "lng": -112.07, "temperature": 40, "timestamp": "yesterday"}],
        ["row"],
    ],
)
def test_parse_thermal_records_rejects_malformed(payload: Any) -> None:
    with pytest.raises(UpstreamDataError):
        parse_thermal_records(payload)


def test_parse_land_cover_features_reads_outer_ring_as_lat_lon() -> None:
    polygons = parse_land_cover_features(
        {"type": "FeatureCollection", "features": [_feature([[-112.07, 33.45], [-112.06, 33.45], [-112.06, 33.46], [-112.07, 33.45]], "tree")]}
    )
    assert polygons[0].ring[0] == (33.45, -112.07)
    assert polygons[0].label == "tree"
    assert polygons[0].confidence == 0.7
    assert polygons[0].holes == ()


def test_parse_land_cover_features_keeps_interior_rings_as_holes() -> None:
    shell = [[0.0, 0.0], [4.0, 0.0], [4.0, 4.0], [0.0, 4.0], [0.0, 0.0]]
    courtyard = [[1.0, 1.0], [3.0, 1.0], [3.0, 3.0], [1.0, 3.0], [1.0, 1.0]]
    feature = {
        "type": "Feature",
        "geometry": {"type": "Polygon", "coordinates": [shell, courtyard]},
        "properties": {"landCover": "building"},
    }
    polygon = parse_land_cover_features([feature])[0]
    assert len(polygon.ring) == 5
    assert polygon.holes == (((1.0, 1.0), (1.0, 3.0), (3.0, 3.0), (3.0, 1.0), (1.0, 1.0)),)


@pytest.mark.parametrize(
    "feature",
    [
        {"type": "Feature", "geometry": {"type": "Point", "coordinates": [0, 0]}, "properties": {}},
        _feature([[0.0, 0.0], [1.0, 1.0], [0.0, 0.0]], "water"),
        _feature([[0.0, 0.0], ["x", 1.0], [1.0, 0.0], [0.0, 0.0]], "water"),
        {
            "type": "Feature",
            "geometry": {"type": "Polygon", "coordinates": [[[0, 0], [4, 0], [4, 4], [0, 0]], [[1, 1], [2, 2], [1, 1]]]},
            "properties": {},
        },
        {"type": "Feature", "geometry": {"type": "Polygon", "coordinates": []}, "properties": {}},
    ],
)
def test_parse_land_cover_features_rejects_malformed(feature: dict[str, Any]) -> None:
    with pytest.raises(UpstreamDataError):
        parse_land_cover_features([feature])


def test_json_thermal_store_filters_by_bbox_and_window(tmp_path: Path) -> None:
    path = tmp_path / "thermal.json"
    path.write_text(
        json.dumps(
            [
                {"lat": 33.45, "lng": -112.07, "temperature": 41, "timestamp": "2025-07-14T21:00:00Z"},
                {"lat": 33.45, "lng": -112.07, "temperature": 38, "timestamp": "2025-07-13T21:00:00Z"},
                {"lat": 33.45, "lng": -112.07, "temperature": 36},
                {"lat": 34.00, "lng": -112.07, "temperature": 45, "timestamp": "2025-07-14T21:00:00Z"},
            ]
        ),
        encoding="utf-8",
    )
    store = JsonThermalStore(path)
    everything = asyncio.run(store.fetch_observations(BBOX))
    assert [o.temperature_c for o in everything] == [41.0, 38.0, 36.0]

    window = day_window(datetime(2025, 7, 14, 9, 0, tzinfo=UTC))
    that_day = asyncio.run(store.fetch_observations(BBOX, window))
    assert [o.temperature_c for o in that_day] == [41.0]


def test_json_thermal_store_missing_file_is_upstream_error(tmp_path: Path) -> None:
    store = JsonThermalStore(tmp_path / "absent.json")
    with pytest.raises(UpstreamDataError):
        asyncio.run(store.fetch_observations(BBOX))


def test_json_thermal_store_invalid_json_is_upstream_error(tmp_path: Path) -> None:
    path = tmp_path / "thermal.json"
    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(UpstreamDataError) as info:
        asyncio.run(JsonThermalStore(path).fetch_observations(BBOX))
    assert info.value.reason_code == "upstream_data_malformed"


def test_json_land_cover_store_keeps_polygons_touching_bbox(tmp_path: Path) -> None:
    path = tmp_path / "land_cover.geojson"
    inside = _feature([[-112.075, 33.445], [-112.07, 33.445], [-112.07, 33.45], [-112.075, 33.445]], "water")
    far = _feature([[-111.0, 34.0], [-110.9, 34.0], [-110.9, 34.1], [-111.0, 34.0]], "asphalt")
    path.write_text(json.dumps({"type": "FeatureCollection", "features": [inside, far]}), encoding="utf-8")
    polygons = asyncio.run(JsonLandCoverStore(path).fetch_polygons(BBOX))
    assert [p.label for p in polygons] == ["water"]


def test_json_land_cover_store_window_excludes_undated(tmp_path: Path) -> None:
    path = tmp_path / "land_cover.geojson"
    ring = [[-112.075, 33.445], [-112.07, 33.445], [-112.07, 33.45], [-112.075, 33.445]]
    path.write_text(
        json.dumps([_feature(ring, "water", "2025-07-14T18:00:00Z"), _feature(ring, "asphalt")]),
        encoding="utf-8",
    )
    window = TimeWindow(
        start=datetime(2025, 7, 14, tzinfo=UTC),
        end=datetime(2025, 7, 14, 23, 59, 59, tzinfo=UTC),
    )
    polygons = asyncio.run(JsonLandCoverStore(path).fetch_polygons(BBOX, window))
    assert [p.label for p in polygons] == ["water"]


def _overpass_payload() -> dict[str, Any]:
    return {
        "elements": [
            {"type": "node", "id": 1, "lat": 33.45, "lon": -112.07},
            {"type": "node", "id": 2, "lat": 33.451, "lon": -112.07},
            {"type": "way", "id": 10, "nodes": [1, 2]},
        ]
    }


def test_overpass_query_uses_bbox_and_highway_filter() -> None:
    provider = OverpassRoadProvider(
        base_url="https://overpass.test/api/interpreter",
        highway_filter="residential|footway",
        client=httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200))),
    )
    query = provider.build_query(BBOX)
    assert query.startswith("[out:json][timeout:30];")
    assert 'way["highway"~"residential|footway"](33.44,-112.08,33.46,-112.06)' in query
    assert query.endswith("out body;")


def test_overpass_retries_transient_failures(monkeypatch) -> None:
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.content.decode("utf-8"))
        if len(calls) == 1:
            return httpx.Response(429, text="rate limited")
        if len(calls) == 2:
            raise httpx.ConnectError("boom", request=request)
        return httpx.Response(200, json=_overpass_payload())

    async def _no_sleep(_s: float) -> None:
        return None

    monkeypatch.setattr(data_sources.asyncio, "sleep", _no_sleep)

    async def run() -> Any:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            provider = OverpassRoadProvider(
                base_url="https://overpass.test/api/interpreter",
                highway_filter="residential",
                max_retries=3,
                client=client,
            )
            return await provider.fetch_road_network(BBOX)

    network = asyncio.run(run())
    assert len(calls) == 3
    assert calls[0].startswith("data=")
    assert dict(network.nodes) == {"1": (33.45, -112.07), "2": (33.451, -112.07)}
    assert list(network.ways) == [("1", "2")]


def test_overpass_exhausted_retries_raise_upstream_error(monkeypatch) -> None:
    async def _no_sleep(_s: float) -> None:
        return None

    monkeypatch.setattr(data_sources.asyncio, "sleep", _no_sleep)

    async def run() -> None:
        transport = httpx.MockTransport(lambda r: httpx.Response(503, text="busy"))
        async with httpx.AsyncClient(transport=transport) as client:
            provider = OverpassRoadProvider(
                base_url="https://overpass.test/api/interpreter",
                highway_filter="residential",
                max_retries=2,
                client=client,
            )
            await provider.fetch_road_network(BBOX)

    with pytest.raises(UpstreamDataError) as info:
        asyncio.run(run())
    assert "after 2 attempts" in str(info.value)


@pytest.mark.parametrize(
    ("response", "reason"),
    [
        (httpx.Response(400, text="parse error"), "upstream_data_unavailable"),
        (httpx.Response(200, text="<html>"), "upstream_data_malformed"),
    ],
)
def test_overpass_non_retryable_failures(response: httpx.Response, reason: str) -> None:
    calls = 0

    def handler(_request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return response

    async def run() -> None:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            provider = OverpassRoadProvider(
                base_url="https://overpass.test/api/interpreter",
                highway_filter="residential",
                client=client,
            )
            await provider.fetch_road_network(BBOX)

    with pytest.raises(UpstreamDataError) as info:
        asyncio.run(run())
    assert info.value.reason_code == reason
    assert calls == 1


def test_open_route_data_sources_releases_connections(monkeypatch, tmp_path: Path) -> None:
    closed: list[str] = []
    original = OverpassRoadProvider.aclose

    async def _tracking_aclose(self: OverpassRoadProvider) -> None:
        closed.append(self.base_url)
        await original(self)

    monkeypatch.setattr(OverpassRoadProvider, "aclose", _tracking_aclose)
    monkeypatch.setattr(settings, "thermal_data_path", str(tmp_path / "t.json"))
    monkeypatch.setattr(settings, "overpass_url", "https://overpass.test/api/interpreter")

    async def run() -> None:
        async with open_route_data_sources() as sources:
            assert isinstance(sources.thermal, JsonThermalStore)
            assert sources.thermal.path == tmp_path / "t.json"
            raise RuntimeError("request failed mid-flight")

    with pytest.raises(RuntimeError):
        asyncio.run(run())
    assert closed == ["https://overpass.test/api/interpreter"]
