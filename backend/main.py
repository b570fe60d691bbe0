"""Ruta backend service.

Exposes endpoints for From/To waypoint management, driving route resolution
with provider fallback, reverse geocoding, and AI jeepney route suggestions.
"""

import asyncio
import contextlib
import logging
import os

from fastapi import FastAPI, HTTPException, Request, Response

from errors import (
    AlreadySetError,
    MalformedResponseError,
    MissingWaypointError,
    NoPinError,
    ProviderError,
)
from geocode_cache import DEFAULT_TTL_S, GeocodeCache
from geocoding import ReverseGeocoder
from models import (
    AddressLookup,
    GeoPoint,
    Location,
    ReverseGeocodeRequest,
    RoutePath,
    RouteRequest,
    SetWaypointRequest,
    SuggestRouteRequest,
    SuggestRouteResponse,
    Waypoint,
    WaypointPair,
)
from route_resolver import RouteResolver
from transit_suggestion import TransitSuggestionClient, default_generator, load_catalog
from waypoints import SessionRegistry, WaypointStore

logging.basicConfig(level=logging.INFO)
# httpx logs full request URLs at INFO, which would include provider API keys.
logging.getLogger("httpx").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)

# How often expired geocode entries and idle sessions are swept.
SWEEP_INTERVAL_S: float = 300.0


async def _sweep_periodically(cache: GeocodeCache, sessions: SessionRegistry) -> None:
    while True:
        await asyncio.sleep(SWEEP_INTERVAL_S)
        removed = cache.sweep()
        if removed:
            logger.info("Swept %d expired geocode entries", removed)
        sessions.evict_idle()


@contextlib.asynccontextmanager
async def lifespan(app: FastAPI):
    """Builds the process-wide collaborators and tears them down on exit."""
    cache = GeocodeCache(
        ttl_seconds=float(os.environ.get("GEOCODE_CACHE_TTL_S", DEFAULT_TTL_S))
    )
    geocoder = ReverseGeocoder(cache)
    app.state.geocode_cache = cache
    app.state.geocoder = geocoder
    sessions = SessionRegistry(geocoder.resolve_label)
    app.state.sessions = sessions
    app.state.resolver = RouteResolver()
    app.state.suggestions = TransitSuggestionClient(default_generator(), load_catalog())

    sweeper = asyncio.create_task(_sweep_periodically(cache, sessions))
    try:
        yield
    finally:
        sweeper.cancel()
        app.state.sessions.close_all()


app = FastAPI(
    title="Ruta Backend",
    description="Commuter routing with provider fallback and AI jeepney suggestions.",
    version="0.1.0",
    lifespan=lifespan,
)


def _store(request: Request, session_id: str) -> WaypointStore:
    return request.app.state.sessions.get(session_id)


def _pair(request: Request, session_id: str) -> WaypointPair:
    # Reads never create a session; an unknown id looks like an empty one.
    store = request.app.state.sessions.find(session_id)
    return store.pair() if store is not None else WaypointPair()


@app.get("/health")
async def health() -> dict[str, str]:
    """Health check endpoint used to verify the service is live."""
    return {"status": "ok"}


# ---------------------------------------------------------------------------
# Waypoints
# ---------------------------------------------------------------------------


@app.post("/sessions/{session_id}/from", response_model=Waypoint)
async def set_from(session_id: str, body: SetWaypointRequest, request: Request) -> Waypoint:
    """Sets the pinned location as the From point.

    The waypoint is returned immediately with the label hint (or "From
    Location"); its address label is filled in the background.

    Raises:
        HTTPException 400: If nothing is pinned.
        HTTPException 409: If From is already set; clear the route first.
    """
    return _assign(_store(request, session_id).set_from, body)


@app.post("/sessions/{session_id}/to", response_model=Waypoint)
async def set_to(session_id: str, body: SetWaypointRequest, request: Request) -> Waypoint:
    """Sets the pinned location as the To point. Mirrors ``set_from``."""
    return _assign(_store(request, session_id).set_to, body)


def _assign(setter, body: SetWaypointRequest) -> Waypoint:
    try:
        return setter(body.pin, body.label)
    except NoPinError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except AlreadySetError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc


@app.get("/sessions/{session_id}/waypoints", response_model=WaypointPair)
async def get_waypoints(session_id: str, request: Request) -> WaypointPair:
    """Returns the session's current From/To waypoints and route mode."""
    return _pair(request, session_id)


@app.delete("/sessions/{session_id}/waypoints", response_model=WaypointPair)
async def clear_waypoints(session_id: str, request: Request) -> WaypointPair:
    """Clears both waypoints so they can be set again."""
    store = request.app.state.sessions.find(session_id)
    if store is None:
        return WaypointPair()
    store.clear()
    return store.pair()


@app.delete("/sessions/{session_id}", status_code=204)
async def end_session(session_id: str, request: Request) -> Response:
    """Ends a session and cancels its pending background work."""
    request.app.state.sessions.end(session_id)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Routing
# ---------------------------------------------------------------------------


@app.post("/route", response_model=RoutePath)
async def route(body: RouteRequest, request: Request) -> RoutePath:
    """Resolves a driving path between two points.

    Never fails because of routing providers: when all of them are down the
    straight line is returned with ``is_fallback`` set.
    """
    return await request.app.state.resolver.resolve(body.origin, body.destination)


@app.post("/sessions/{session_id}/route", response_model=RoutePath)
async def session_route(session_id: str, request: Request) -> RoutePath:
    """Resolves a path between the session's From and To waypoints.

    Raises:
        HTTPException 400: If From or To is not set.
    """
    pair = _pair(request, session_id)
    if pair.from_ is None or pair.to is None:
        raise HTTPException(
            status_code=400,
            detail="Please set both From and To locations first.",
        )
    return await request.app.state.resolver.resolve(pair.from_.point, pair.to.point)


# ---------------------------------------------------------------------------
# Reverse geocoding
# ---------------------------------------------------------------------------


@app.post("/reverse-geocode", response_model=AddressLookup)
async def reverse_geocode(body: ReverseGeocodeRequest, request: Request) -> AddressLookup:
    """Converts coordinates to a short display address.

    Raises:
        HTTPException 502: If the geocoding provider fails.
    """
    point = GeoPoint(lat=body.lat, lng=body.lng)
    try:
        return await request.app.state.geocoder.lookup_address(point)
    except ProviderError as exc:
        logger.warning("reverse_geocode failed: %s", exc)
        raise HTTPException(
            status_code=502,
            detail="Failed to look up the address. Please try again.",
        ) from exc


# ---------------------------------------------------------------------------
# Transit suggestions
# ---------------------------------------------------------------------------


@app.post("/suggest-route", response_model=SuggestRouteResponse)
async def suggest_route(body: SuggestRouteRequest, request: Request) -> SuggestRouteResponse:
    """Suggests jeepney routes between two explicit locations.

    Raises:
        HTTPException 400: If either location or coordinate is missing.
        HTTPException 502: If the model call fails or answers malformed JSON.
    """
    return await _suggest(request, body.from_location, body.to_location)


@app.post("/sessions/{session_id}/suggest-route", response_model=SuggestRouteResponse)
async def session_suggest_route(session_id: str, request: Request) -> SuggestRouteResponse:
    """Suggests jeepney routes between the session's From and To waypoints."""
    pair = _pair(request, session_id)
    return await _suggest(request, pair.from_, pair.to)


async def _suggest(
    request: Request,
    from_location: Waypoint | Location | None,
    to_location: Waypoint | Location | None,
) -> SuggestRouteResponse:
    try:
        suggestion, usage = await request.app.state.suggestions.suggest_with_usage(
            from_location, to_location
        )
    except MissingWaypointError as exc:
        raise HTTPException(
            status_code=400,
            detail=f"Please set both From and To locations first. {exc}",
        ) from exc
    except (ProviderError, MalformedResponseError) as exc:
        logger.exception("suggest_route failed")
        raise HTTPException(
            status_code=502,
            detail="Failed to get route suggestion. Please try again.",
        ) from exc
    return SuggestRouteResponse(suggestion=suggestion, usage=usage)
