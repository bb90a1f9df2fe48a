from __future__ import annotations

import asyncio
import contextlib
import threading
from collections.abc import AsyncIterator
from datetime import UTC, datetime
from typing import Annotated, Any

from fastapi import Body, Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .data_sources import RouteDataSources, day_window, open_route_data_sources
from .errors import InvalidRequestError, RoutingError, error_payload
from .geo import WORLD_BOUNDS, parse_bounds
from .logging_utils import log_event
from .models import RouteFeature, ThermalDataResponse, ThermalPoint
from .route_service import RouteService, parse_route_request

DISCONNECT_POLL_S = 0.25

app = FastAPI(title="Thermal Trail Route Engine", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RoutingError)
async def routing_error_handler(_request: Request, exc: RoutingError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=error_payload(exc))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(_request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    first = errors[0] if errors else {}
    where = ".".join(str(p) for p in first.get("loc", ())) or "request"
    err = InvalidRequestError(f"invalid {where}: {first.get('msg', 'malformed value')}")
    return JSONResponse(status_code=err.status_code, content=error_payload(err))


async def route_data_sources() -> AsyncIterator[RouteDataSources]:
    async with open_route_data_sources() as sources:
        yield sources


SourcesDep = Annotated[RouteDataSources, Depends(route_data_sources)]


async def _watch_disconnect(request: Request, cancel_event: threading.Event) -> None:
    while not cancel_event.is_set():
        if await request.is_disconnected():
            log_event("route_client_disconnected", path=request.url.path)
            cancel_event.set()
            return
        await asyncio.sleep(DISCONNECT_POLL_S)


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/find-route", response_model=RouteFeature)
async def find_route(
    request: Request,
    sources: SourcesDep,
    payload: Annotated[Any, Body()] = None,
) -> RouteFeature:
    req = parse_route_request(payload)
    cancel_event = threading.Event()
    watcher = asyncio.create_task(_watch_disconnect(request, cancel_event))
    try:
        return await RouteService(sources).find_route(req, cancel_event=cancel_event)
    finally:
        watcher.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await watcher


@app.get("/thermal-data", response_model=ThermalDataResponse)
async def thermal_data(
    sources: SourcesDep,
    bounds: Annotated[str | None, Query(description="<swLat>:<swLng>,<neLat>:<neLng>")] = None,
    timestamp: Annotated[datetime | None, Query()] = None,
) -> ThermalDataResponse:
    bbox = WORLD_BOUNDS
    if bounds:
        try:
            bbox = parse_bounds(bounds)
        except ValueError as e:
            raise InvalidRequestError(str(e)) from e
    window = day_window(timestamp) if timestamp is not None else None
    observations = await sources.thermal.fetch_observations(bbox, window)
    return ThermalDataResponse(
        data=[
            ThermalPoint(
                lat=obs.lat,
                lng=obs.lon,
                temperature=obs.temperature_c,
                timestamp=obs.timestamp,
                source=obs.source,
            )
            for obs in observations
        ],
        timestamp=datetime.now(UTC),
        bounds=bounds or "default",
    )
