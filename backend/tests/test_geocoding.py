"""Tests for geocoding.py.

Nominatim is replaced with an ``httpx.MockTransport``; no network access
occurs.
"""

import httpx
import pytest

from errors import ProviderError
from geocode_cache import GeocodeCache
from geocoding import ReverseGeocoder
from models import GeoPoint

_POINT = GeoPoint(lat=10.2969, lng=123.8997)
_DISPLAY_NAME = (
    "123 Colon Street, Barangay Kalunasan, Cebu City, Cebu, "
    "Central Visayas, 6000, Philippines"
)


def _geocoder(handler, cache=None):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ReverseGeocoder(
        cache if cache is not None else GeocodeCache(),
        client=client,
        base_url="https://nominatim.test",
    )


@pytest.mark.asyncio
async def test_lookup_formats_and_caches_live_result():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={"display_name": _DISPLAY_NAME, "address": {}})

    cache = GeocodeCache()
    geocoder = _geocoder(handler, cache)

    result = await geocoder.lookup_address(_POINT)

    assert result.address == "123 Colon Street, Barangay Kalunasan, Cebu City"
    assert result.display_name == _DISPLAY_NAME
    assert result.source == "nominatim"
    assert cache.lookup(_POINT) == result
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_lookup_sends_expected_query():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = request.url
        seen["ua"] = request.headers.get("user-agent")
        return httpx.Response(200, json={"display_name": _DISPLAY_NAME})

    await _geocoder(handler).lookup_address(_POINT)

    assert seen["url"].path == "/reverse"
    assert seen["url"].params["format"] == "jsonv2"
    assert seen["url"].params["lat"] == "10.2969"
    assert seen["url"].params["lon"] == "123.8997"
    assert seen["url"].params["accept-language"] == "en"
    assert seen["ua"].startswith("RutaApp/")


@pytest.mark.asyncio
async def test_second_lookup_is_served_from_cache():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={"display_name": _DISPLAY_NAME})

    geocoder = _geocoder(handler)
    await geocoder.lookup_address(_POINT)
    cached = await geocoder.lookup_address(GeoPoint(lat=10.29690001, lng=123.8997))

    assert cached.source == "cache"
    assert cached.address == "123 Colon Street, Barangay Kalunasan, Cebu City"
    assert cached.display_name == _DISPLAY_NAME
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_non_success_status_raises_provider_error():
    geocoder = _geocoder(lambda request: httpx.Response(503, text="busy"))
    with pytest.raises(ProviderError) as excinfo:
        await geocoder.lookup_address(_POINT)
    assert excinfo.value.status == 503
    assert excinfo.value.provider == "nominatim"


@pytest.mark.asyncio
async def test_missing_display_name_raises_provider_error():
    geocoder = _geocoder(lambda request: httpx.Response(200, json={"error": "Unable to geocode"}))
    with pytest.raises(ProviderError, match="display_name"):
        await geocoder.lookup_address(_POINT)


@pytest.mark.asyncio
async def test_transport_error_raises_provider_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(ProviderError):
        await _geocoder(handler).lookup_address(_POINT)


@pytest.mark.asyncio
async def test_timeout_raises_provider_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(ProviderError, match="timed out"):
        await _geocoder(handler).lookup_address(_POINT)


@pytest.mark.asyncio
async def test_failed_lookup_is_not_cached():
    cache = GeocodeCache()
    geocoder = _geocoder(lambda request: httpx.Response(500), cache)
    with pytest.raises(ProviderError):
        await geocoder.lookup_address(_POINT)
    assert len(cache) == 0


@pytest.mark.asyncio
async def test_resolve_label_returns_formatted_address():
    geocoder = _geocoder(lambda request: httpx.Response(200, json={"display_name": _DISPLAY_NAME}))
    assert await geocoder.resolve_label(_POINT) == "123 Colon Street, Barangay Kalunasan, Cebu City"


@pytest.mark.asyncio
async def test_cache_hit_keeps_address_components():
    components = {"road": "Colon Street", "suburb": "Kalunasan", "city": "Cebu City"}
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={"display_name": _DISPLAY_NAME, "address": components})

    geocoder = _geocoder(handler)
    live = await geocoder.lookup_address(_POINT)
    cached = await geocoder.lookup_address(_POINT)

    assert live.raw_address == components
    assert cached.raw_address == components
    assert cached.model_dump(exclude={"source"}) == live.model_dump(exclude={"source"})
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_missing_address_components_default_to_empty():
    geocoder = _geocoder(lambda request: httpx.Response(200, json={"display_name": _DISPLAY_NAME}))
    assert (await geocoder.lookup_address(_POINT)).raw_address == {}
