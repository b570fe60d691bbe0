"""Driving-path resolution over an ordered chain of routing providers.

Providers are tried one after another; the first usable answer wins and the
rest are never called. A provider failure of any kind (timeout, non-2xx,
malformed body, empty route list, undecodable polyline) is logged and the
next provider is tried. When every provider has failed the resolver returns
the two-point straight line, so ``resolve`` never raises for provider errors.

Default chain:
  1.  OSRM (free, GeoJSON coordinates in lng,lat order).
  2.  GraphHopper (encoded polyline), when ``GRAPHHOPPER_API_KEY`` is set.
  3.  Google Directions (encoded overview polyline), when
      ``GOOGLE_MAPS_API_KEY`` is set.
  4.  Straight line.
"""

import asyncio
import logging
import math
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass

import googlemaps
import httpx

import polyline_codec
from errors import DecodeError, ProviderError
from models import GeoPoint, RoutePath

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Routing rules: tuneable constants in one place.
# ---------------------------------------------------------------------------

# Per-provider request timeout.
ROUTE_TIMEOUT_S: float = 10.0
# Overall budget for the whole chain. None means only per-provider timeouts.
ROUTE_DEADLINE_S: float | None = 25.0
# Longest response body excerpt written to the log on failure.
LOG_BODY_CHARS: int = 200

DEFAULT_OSRM_URL: str = "https://router.project-osrm.org"
DEFAULT_GRAPHHOPPER_URL: str = "https://graphhopper.com/api/1"
USER_AGENT: str = "RutaApp/1.0"

STRAIGHT_LINE: str = "straight_line"


@dataclass(frozen=True)
class ProviderResponse:
    """What a provider adapter hands back to the resolver.

    Exactly one of ``coordinates`` (inline (lat, lng) pairs) or ``encoded``
    (a polyline string at ``precision``) is set.
    """

    coordinates: list[tuple[float, float]] | None = None
    encoded: str | None = None
    precision: int = polyline_codec.DEFAULT_PRECISION


class RoutingProvider(ABC):
    """A routing service adapter.

    Adapters own their wire format, including coordinate order, and raise on
    any failure. They never retry.
    """

    name: str = "provider"
    is_fallback: bool = False

    @abstractmethod
    async def fetch(
        self, client: httpx.AsyncClient, origin: GeoPoint, destination: GeoPoint
    ) -> ProviderResponse:
        """Requests a route from ``origin`` to ``destination``."""


def _check_status(name: str, response: httpx.Response) -> dict:
    if not response.is_success:
        logger.warning(
            "%s returned HTTP %s: %s",
            name,
            response.status_code,
            response.text[:LOG_BODY_CHARS],
        )
        raise ProviderError(name, "routing request failed", status=response.status_code)
    try:
        return response.json()
    except ValueError as exc:
        raise ProviderError(name, "response was not JSON", status=response.status_code) from exc


class OSRMProvider(RoutingProvider):
    """Open Source Routing Machine. Wire order is lng,lat both ways."""

    name = "osrm"

    def __init__(self, base_url: str | None = None, profile: str = "driving"):
        self.base_url = (
            base_url or os.environ.get("OSRM_BASE_URL", DEFAULT_OSRM_URL)
        ).rstrip("/")
        self.profile = profile

    async def fetch(self, client, origin, destination):
        coords = f"{origin.lng},{origin.lat};{destination.lng},{destination.lat}"
        url = f"{self.base_url}/route/v1/{self.profile}/{coords}"
        response = await client.get(
            url, params={"overview": "full", "geometries": "geojson"}
        )
        data = _check_status(self.name, response)

        routes = data.get("routes") or []
        if not routes:
            raise ProviderError(self.name, f"no routes found (code={data.get('code')!r})")
        raw = routes[0]["geometry"]["coordinates"]
        return ProviderResponse(coordinates=[(float(c[1]), float(c[0])) for c in raw])


class GraphHopperProvider(RoutingProvider):
    """GraphHopper Directions API. Returns an encoded polyline."""

    name = "graphhopper"

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str = DEFAULT_GRAPHHOPPER_URL,
        profile: str = "car",
    ):
        self.api_key = api_key or os.environ.get("GRAPHHOPPER_API_KEY", "")
        self.base_url = base_url.rstrip("/")
        self.profile = profile

    async def fetch(self, client, origin, destination):
        params = [
            ("point", f"{origin.lat},{origin.lng}"),
            ("point", f"{destination.lat},{destination.lng}"),
            ("profile", self.profile),
            ("points_encoded", "true"),
            ("key", self.api_key),
        ]
        response = await client.get(f"{self.base_url}/route", params=params)
        data = _check_status(self.name, response)

        paths = data.get("paths") or []
        if not paths:
            raise ProviderError(self.name, "no paths found in response")
        path = paths[0]
        precision = polyline_codec.DEFAULT_PRECISION
        multiplier = path.get("points_encoded_multiplier")
        if multiplier:
            precision = round(math.log10(float(multiplier)))
        return ProviderResponse(encoded=path["points"], precision=precision)


class GoogleDirectionsProvider(RoutingProvider):
    """Google Maps Directions API via the ``googlemaps`` client.

    The client is synchronous, so the call runs in a worker thread.
    """

    name = "google"

    def __init__(self, maps_client: googlemaps.Client | None = None):
        self._maps = maps_client or googlemaps.Client(
            key=os.environ.get("GOOGLE_MAPS_API_KEY", ""),
            timeout=ROUTE_TIMEOUT_S,
        )

    async def fetch(self, client, origin, destination):
        try:
            result = await asyncio.to_thread(
                self._maps.directions,
                origin=origin.as_tuple(),
                destination=destination.as_tuple(),
                mode="driving",
            )
        except googlemaps.exceptions.ApiError as exc:
            raise ProviderError(self.name, f"API error {exc.status}") from exc
        except googlemaps.exceptions.HTTPError as exc:
            raise ProviderError(self.name, "HTTP error", status=exc.status_code) from exc
        except (googlemaps.exceptions.Timeout, googlemaps.exceptions.TransportError) as exc:
            raise ProviderError(self.name, type(exc).__name__) from exc

        if not result:
            raise ProviderError(self.name, "Directions API returned no routes")
        return ProviderResponse(encoded=result[0]["overview_polyline"]["points"])


class StraightLineProvider(RoutingProvider):
    """Terminal provider: the direct segment between the two points."""

    name = STRAIGHT_LINE
    is_fallback = True

    async def fetch(self, client, origin, destination):
        return ProviderResponse(coordinates=[origin.as_tuple(), destination.as_tuple()])


def straight_line(origin: GeoPoint, destination: GeoPoint) -> RoutePath:
    return RoutePath(points=[origin, destination], provider=STRAIGHT_LINE, is_fallback=True)


def default_providers() -> list[RoutingProvider]:
    """Builds the provider chain from environment configuration."""
    providers: list[RoutingProvider] = [OSRMProvider()]
    if os.environ.get("GRAPHHOPPER_API_KEY"):
        providers.append(GraphHopperProvider())
    if os.environ.get("GOOGLE_MAPS_API_KEY"):
        providers.append(GoogleDirectionsProvider())
    providers.append(StraightLineProvider())
    return providers


class RouteResolver:
    """Resolves a ``RoutePath`` through an ordered provider chain.

    Args:
        providers: Default chain, tried in order.
        client: Optional shared ``httpx.AsyncClient``. When omitted a client is
            opened for the duration of each ``resolve`` call.
        timeout: Per-provider timeout in seconds.
        deadline: Overall time budget for one ``resolve`` call.
    """

    def __init__(
        self,
        providers: list[RoutingProvider] | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        timeout: float = ROUTE_TIMEOUT_S,
        deadline: float | None = ROUTE_DEADLINE_S,
    ):
        self.providers = list(providers) if providers is not None else default_providers()
        self._client = client
        self.timeout = timeout
        self.deadline = deadline

    async def resolve(
        self,
        origin: GeoPoint,
        destination: GeoPoint,
        providers: list[RoutingProvider] | None = None,
    ) -> RoutePath:
        """Returns a path from ``origin`` to ``destination``.

        The first point is always ``origin`` and the last is always
        ``destination``.
        """
        chain = self.providers if providers is None else providers
        logger.info(
            "Fetching route from %.6f,%.6f to %.6f,%.6f via %s",
            origin.lat, origin.lng, destination.lat, destination.lng,
            [p.name for p in chain],
        )
        try:
            path = await asyncio.wait_for(
                self._run_chain(chain, origin, destination), self.deadline
            )
        except asyncio.TimeoutError:
            logger.warning("Routing deadline of %ss exceeded", self.deadline)
            path = None

        if path is None:
            logger.info("Using fallback straight line")
            return straight_line(origin, destination)
        return path

    async def _run_chain(
        self,
        chain: list[RoutingProvider],
        origin: GeoPoint,
        destination: GeoPoint,
    ) -> RoutePath | None:
        if self._client is not None:
            return await self._try_each(self._client, chain, origin, destination)
        async with httpx.AsyncClient(
            timeout=self.timeout, headers={"User-Agent": USER_AGENT}
        ) as client:
            return await self._try_each(client, chain, origin, destination)

    async def _try_each(self, client, chain, origin, destination) -> RoutePath | None:
        for provider in chain:
            try:
                response = await asyncio.wait_for(
                    provider.fetch(client, origin, destination), self.timeout
                )
                path = self._to_path(provider, response, origin, destination)
            except asyncio.TimeoutError:
                logger.warning("%s timed out after %ss", provider.name, self.timeout)
                continue
            except Exception as exc:  # noqa: BLE001
                logger.warning("%s failed: %s", provider.name, _describe(exc))
                continue
            logger.info(
                "Route fetched successfully with %s (%d points)",
                provider.name, len(path.points),
            )
            return path
        return None

    def _to_path(
        self,
        provider: RoutingProvider,
        response: ProviderResponse,
        origin: GeoPoint,
        destination: GeoPoint,
    ) -> RoutePath:
        if response.encoded is not None:
            points = polyline_codec.decode(response.encoded, response.precision)
            tolerance = 10 ** -response.precision
        else:
            points = list(response.coordinates or [])
            tolerance = 10 ** -polyline_codec.DEFAULT_PRECISION

        if not points:
            raise ProviderError(provider.name, "empty route geometry")
        if not polyline_codec.within_bounds(points):
            raise DecodeError(f"{provider.name} geometry left the valid lat/lng range")

        # Roads rarely pass exactly through the pins; join them to the path.
        if not _close(points[0], origin.as_tuple(), tolerance):
            points.insert(0, origin.as_tuple())
        if not _close(points[-1], destination.as_tuple(), tolerance):
            points.append(destination.as_tuple())
        points[0] = origin.as_tuple()
        points[-1] = destination.as_tuple()
        if len(points) < 2:
            points.append(destination.as_tuple())

        return RoutePath(
            points=[GeoPoint(lat=lat, lng=lng) for lat, lng in points],
            provider=provider.name,
            is_fallback=provider.is_fallback,
        )


def _close(a: tuple[float, float], b: tuple[float, float], tolerance: float) -> bool:
    return abs(a[0] - b[0]) <= tolerance and abs(a[1] - b[1]) <= tolerance


def _describe(exc: Exception) -> str:
    if isinstance(exc, ProviderError):
        return str(exc)
    return f"{type(exc).__name__}: {str(exc)[:LOG_BODY_CHARS]}"
