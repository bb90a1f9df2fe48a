from __future__ import annotations

import asyncio
import logging
import threading
import time
import uuid
from collections.abc import Sequence
from enum import Enum
from typing import Any

import httpx
from pydantic import ValidationError

from .cost_model import CostModel
from .data_sources import RouteDataSources, day_window
from .errors import InvalidRequestError, NoGraphDataError, NoPathFoundError, RoutingError, UpstreamDataError
from .geo import bbox_for_od
from .logging_utils import log_event
from .models import FindRouteRequest, GeoJSONLineString, RouteFeature, RouteProperties
from .pathfinding import PathResult, find_coolest_path
from .road_graph import RoadNetworkData, build_road_graph
from .settings import Settings, settings
from .spatial_index import LandCoverPolygon, SpatialIndex, ThermalObservation


class RouteState(str, Enum):
    INIT = "init"
    GRAPH_BUILT = "graph_built"
    INDEX_BUILT = "index_built"
    SEARCHING = "searching"
    PATH_FOUND = "path_found"
    NO_PATH = "no_path"
    NO_GRAPH_DATA = "no_graph_data"


def _log_state(request_id: str, state: RouteState, **fields: Any) -> None:
    log_event("route_state", request_id=request_id, state=state.value, **fields)


def parse_route_request(payload: Any) -> FindRouteRequest:
    if not isinstance(payload, dict):
        raise InvalidRequestError("request body must be a JSON object")
    if payload.get("start") is None or payload.get("end") is None:
        raise InvalidRequestError("Missing start or end coordinates")
    try:
        return FindRouteRequest.model_validate(payload)
    except ValidationError as exc:
        first = exc.errors()[0] if exc.errors() else {}
        where = ".".join(str(p) for p in first.get("loc", ())) or "request"
        raise InvalidRequestError(f"invalid {where}: {first.get('msg', 'malformed value')}") from exc


def serialize_path(path: PathResult) -> RouteFeature:
    coords = [(lon, lat) for lat, lon in path.positions]
    if len(coords) == 1:
        # Start and end snapped to one node; a LineString needs two positions.
        coords = coords * 2
    return RouteFeature(
        geometry=GeoJSONLineString(coordinates=coords),
        properties=RouteProperties(
            temperature=round(path.temperature_c, 2),
            distance=round(path.distance_m, 2),
            land_cover=path.land_cover,
        ),
    )


def compute_route(
    *,
    network: RoadNetworkData,
    observations: Sequence[ThermalObservation],
    polygons: Sequence[LandCoverPolygon],
    start: tuple[float, float],
    end: tuple[float, float],
    cfg: Settings | None = None,
    request_id: str | None = None,
    cancel_event: threading.Event | None = None,
) -> PathResult:
    """Build graph and index for one request, then run the search.

    Blocking; callers on an event loop should run it in a worker thread.
    """
    cfg = cfg or settings
    request_id = request_id or str(uuid.uuid4())

    graph = build_road_graph(network)
    if len(graph) == 0:
        _log_state(request_id, RouteState.NO_GRAPH_DATA)
        raise NoGraphDataError("no road nodes in the queried area")
    _log_state(
        request_id,
        RouteState.GRAPH_BUILT,
        node_count=len(graph),
        edge_count=graph.edge_count,
        component_count=graph.component_count,
        dropped_refs=graph.dropped_refs,
    )

    index = SpatialIndex(observations, polygons, default_temperature_c=cfg.default_temperature_c)
    cost_model = CostModel(
        index=index,
        heat_penalty_per_degree=cfg.heat_penalty_per_degree,
        comfort_temperature_c=cfg.heat_comfort_temperature_c,
    )
    _log_state(
        request_id,
        RouteState.INDEX_BUILT,
        observation_count=len(index.observations),
        polygon_count=len(index.polygons),
    )

    _log_state(request_id, RouteState.SEARCHING, heat_penalty_per_degree=cfg.heat_penalty_per_degree)
    try:
        path = find_coolest_path(
            graph,
            cost_model,
            start,
            end,
            cancel_event=cancel_event,
            deadline_monotonic_s=time.monotonic() + float(cfg.route_search_timeout_s),
            max_expansions=cfg.route_search_max_expansions,
        )
    except NoPathFoundError as exc:
        _log_state(request_id, RouteState.NO_PATH, reason_code=exc.reason_code)
        raise
    _log_state(
        request_id,
        RouteState.PATH_FOUND,
        explored_nodes=path.explored_nodes,
        path_nodes=len(path.node_ids),
    )
    return path


class RouteService:
    """Facade: fetch collaborator data, run the engine, shape the wire response."""

    def __init__(self, sources: RouteDataSources, *, cfg: Settings | None = None) -> None:
        self.sources = sources
        self.cfg = cfg or settings

    async def _fetch_inputs(
        self, req: FindRouteRequest
    ) -> tuple[RoadNetworkData, list[ThermalObservation], list[LandCoverPolygon]]:
        bbox = bbox_for_od(req.start, req.end, padding_deg=self.cfg.route_bbox_padding_deg)
        window = day_window(req.timestamp) if req.timestamp is not None else None
        try:
            # The first failing read cancels the others before the group exits.
            async with asyncio.TaskGroup() as tg:
                network = tg.create_task(self.sources.roads.fetch_road_network(bbox))
                observations = tg.create_task(self.sources.thermal.fetch_observations(bbox, window))
                polygons = tg.create_task(self.sources.land_cover.fetch_polygons(bbox, window))
        except ExceptionGroup as group:
            exc = group.exceptions[0]
            if isinstance(exc, (httpx.HTTPError, OSError)):
                raise UpstreamDataError(f"upstream data source failed: {type(exc).__name__}: {exc}") from exc
            raise exc from None
        return network.result(), list(observations.result()), list(polygons.result())

    async def find_route(
        self,
        req: FindRouteRequest,
        *,
        cancel_event: threading.Event | None = None,
    ) -> RouteFeature:
        request_id = str(uuid.uuid4())
        t0 = time.perf_counter()
        cancel_event = cancel_event or threading.Event()
        _log_state(request_id, RouteState.INIT, start=list(req.start), end=list(req.end))

        try:
            network, observations, polygons = await self._fetch_inputs(req)
            try:
                path = await asyncio.to_thread(
                    compute_route,
                    network=network,
                    observations=observations,
                    polygons=polygons,
                    start=req.start,
                    end=req.end,
                    cfg=self.cfg,
                    request_id=request_id,
                    cancel_event=cancel_event,
                )
            except asyncio.CancelledError:
                # The worker thread polls this flag and stops expanding.
                cancel_event.set()
                raise
        except RoutingError as exc:
            log_event(
                "route_error",
                level=logging.WARNING,
                request_id=request_id,
                reason_code=exc.reason_code,
                error=exc.message,
                duration_ms=round((time.perf_counter() - t0) * 1000, 2),
            )
            raise

        log_event(
            "route_request",
            request_id=request_id,
            start=list(req.start),
            end=list(req.end),
            timestamp=req.timestamp.isoformat() if req.timestamp else None,
            path_nodes=len(path.node_ids),
            explored_nodes=path.explored_nodes,
            distance_m=round(path.distance_m, 2),
            temperature_c=round(path.temperature_c, 2),
            land_cover=path.land_cover,
            duration_ms=round((time.perf_counter() - t0) * 1000, 2),
        )
        return serialize_path(path)
