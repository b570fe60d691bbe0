"""Reverse geocoding via Nominatim, memoised through a ``GeocodeCache``.

The raw ``display_name`` from Nominatim is shortened with ``format_address``.
The whole lookup (short address, display name and address components) is
cached, so a cache hit differs from a live answer only in ``source``.
"""

import logging
import os

import httpx

from address_formatter import format_address
from errors import ProviderError
from geocode_cache import GeocodeCache
from models import AddressLookup, GeoPoint

logger = logging.getLogger(__name__)

PROVIDER_NAME: str = "nominatim"
DEFAULT_NOMINATIM_URL: str = "https://nominatim.openstreetmap.org"
GEOCODE_TIMEOUT_S: float = 10.0
# Nominatim's usage policy requires an identifying User-Agent.
USER_AGENT: str = "RutaApp/1.0 (+https://github.com/ruta-app)"


class ReverseGeocoder:
    """Resolves coordinates to a short display address.

    Args:
        cache: Process-wide ``GeocodeCache``.
        client: Optional pre-constructed ``httpx.AsyncClient``. When omitted a
            short-lived client is opened for each live request.
        base_url: Nominatim base URL. Defaults to ``NOMINATIM_BASE_URL`` or
            the public instance.
    """

    def __init__(
        self,
        cache: GeocodeCache,
        *,
        client: httpx.AsyncClient | None = None,
        base_url: str | None = None,
        timeout: float = GEOCODE_TIMEOUT_S,
    ):
        self.cache = cache
        self._client = client
        self.base_url = (
            base_url or os.environ.get("NOMINATIM_BASE_URL", DEFAULT_NOMINATIM_URL)
        ).rstrip("/")
        self.timeout = timeout

    async def lookup_address(self, point: GeoPoint) -> AddressLookup:
        """Returns the formatted address for ``point``.

        Raises:
            ProviderError: On timeout, transport failure, non-2xx status, or
                a response without ``display_name``.
        """
        cached = self.cache.lookup(point)
        if cached is not None:
            logger.info("Reverse geocode cache hit for %.6f,%.6f", point.lat, point.lng)
            return cached.model_copy(update={"source": "cache"}, deep=True)

        display_name, raw_address = await self._fetch(point)
        lookup = AddressLookup(
            address=format_address(display_name) or display_name,
            display_name=display_name,
            source=PROVIDER_NAME,
            raw_address=raw_address,
        )
        self.cache.store(point, lookup)
        logger.info("Geocoded address: %s", lookup.address)
        return lookup

    async def resolve_label(self, point: GeoPoint) -> str | None:
        """Convenience wrapper used by ``WaypointStore`` for label upgrades."""
        return (await self.lookup_address(point)).address

    async def _fetch(self, point: GeoPoint) -> tuple[str, dict]:
        params = {
            "format": "jsonv2",
            "lat": point.lat,
            "lon": point.lng,
            "accept-language": "en",
        }
        headers = {"User-Agent": USER_AGENT, "Accept": "application/json"}
        url = f"{self.base_url}/reverse"

        try:
            if self._client is not None:
                response = await self._client.get(
                    url, params=params, headers=headers, timeout=self.timeout
                )
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.get(url, params=params, headers=headers)
        except httpx.TimeoutException as exc:
            logger.warning("Nominatim timed out for %s,%s", point.lat, point.lng)
            raise ProviderError(PROVIDER_NAME, "request timed out") from exc
        except httpx.HTTPError as exc:
            logger.warning("Nominatim request failed: %s", exc)
            raise ProviderError(PROVIDER_NAME, str(exc)) from exc

        if not response.is_success:
            logger.warning(
                "Nominatim returned HTTP %s: %s",
                response.status_code,
                response.text[:200],
            )
            raise ProviderError(
                PROVIDER_NAME, "nominatim error", status=response.status_code
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise ProviderError(
                PROVIDER_NAME, "response was not JSON", status=response.status_code
            ) from exc

        display_name = data.get("display_name") if isinstance(data, dict) else None
        if not display_name:
            logger.warning("Reverse geocode returned no display_name: %s", str(data)[:200])
            raise ProviderError(PROVIDER_NAME, "no display_name in response")
        raw_address = data.get("address")
        return display_name, raw_address if isinstance(raw_address, dict) else {}
