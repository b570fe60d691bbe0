"""Tests for waypoints.py."""

import asyncio

import pytest

from errors import AlreadySetError, NoPinError
from models import GeoPoint, RouteMode
from waypoints import SessionRegistry, WaypointStore

_PIN_A = GeoPoint(lat=10.3173, lng=123.9057)
_PIN_B = GeoPoint(lat=10.3126, lng=123.9181)


class _GatedResolver:
    """Label resolver that waits until the test releases it."""

    def __init__(self, label="IT Park, Apas, Cebu City"):
        self.label = label
        self.release = asyncio.Event()
        self.calls = []

    async def __call__(self, point):
        self.calls.append(point)
        await self.release.wait()
        return self.label


# ---------------------------------------------------------------------------
# Set-once protection
# ---------------------------------------------------------------------------


def test_set_from_stores_waypoint_with_default_label():
    store = WaypointStore()
    waypoint = store.set_from(_PIN_A)

    assert waypoint.point == _PIN_A
    assert waypoint.label == "From Location"
    assert store.from_waypoint == waypoint
    assert store.mode is RouteMode.FROM


def test_set_to_uses_label_hint_and_sets_mode():
    store = WaypointStore()
    waypoint = store.set_to(_PIN_B, "SM City Cebu")

    assert waypoint.label == "SM City Cebu"
    assert store.mode is RouteMode.TO


def test_set_from_twice_raises_and_keeps_original():
    store = WaypointStore()
    original = store.set_from(_PIN_A)

    with pytest.raises(AlreadySetError) as excinfo:
        store.set_from(_PIN_B)

    assert excinfo.value.role == "from"
    assert store.from_waypoint == original


def test_set_to_twice_raises():
    store = WaypointStore()
    store.set_to(_PIN_B)
    with pytest.raises(AlreadySetError):
        store.set_to(_PIN_A)


def test_set_without_pin_raises_no_pin_error():
    store = WaypointStore()
    with pytest.raises(NoPinError):
        store.set_from(None)
    with pytest.raises(NoPinError):
        store.set_to(None)
    assert store.mode is RouteMode.NONE


def test_no_pin_takes_precedence_over_already_set():
    """A missing pin is reported even when the slot is occupied."""
    store = WaypointStore()
    store.set_from(_PIN_A)
    with pytest.raises(NoPinError):
        store.set_from(None)


def test_zero_coordinates_are_a_valid_pin():
    store = WaypointStore()
    waypoint = store.set_from(GeoPoint(lat=0.0, lng=0.0))
    assert waypoint.point.lat == 0.0


def test_clear_allows_reassignment():
    store = WaypointStore()
    store.set_from(_PIN_A)
    store.set_to(_PIN_B)

    store.clear()
    pair = store.pair()
    assert pair.from_ is None
    assert pair.to is None
    assert pair.mode is RouteMode.NONE

    assert store.set_from(_PIN_B).point == _PIN_B


def test_generations_increase_with_each_assignment():
    store = WaypointStore()
    first = store.set_from(_PIN_A)
    second = store.set_to(_PIN_B)
    assert second.generation > first.generation


def test_pair_serializes_from_key():
    store = WaypointStore()
    store.set_from(_PIN_A)
    dumped = store.pair().model_dump(by_alias=True)
    assert dumped["from"]["point"] == {"lat": 10.3173, "lng": 123.9057}
    assert dumped["to"] is None
    assert dumped["mode"] == "from"


# ---------------------------------------------------------------------------
# Background label upgrade
# ---------------------------------------------------------------------------


def test_set_without_running_loop_skips_upgrade():
    resolver = _GatedResolver()
    store = WaypointStore(resolver)
    store.set_from(_PIN_A)
    assert resolver.calls == []
    assert store.from_waypoint.label == "From Location"


@pytest.mark.asyncio
async def test_label_upgrade_does_not_block_and_applies_later():
    resolver = _GatedResolver("IT Park, Apas, Cebu City")
    store = WaypointStore(resolver)

    waypoint = store.set_from(_PIN_A)
    assert waypoint.label == "From Location"

    resolver.release.set()
    await store.drain()

    assert store.from_waypoint.label == "IT Park, Apas, Cebu City"
    assert store.from_waypoint.generation == waypoint.generation


@pytest.mark.asyncio
async def test_clear_cancels_pending_upgrade():
    resolver = _GatedResolver()
    store = WaypointStore(resolver)
    store.set_from(_PIN_A)
    await asyncio.sleep(0)  # let the upgrade task start

    store.clear()
    resolver.release.set()
    await store.drain()
    await asyncio.sleep(0)

    assert store.from_waypoint is None


@pytest.mark.asyncio
async def test_stale_label_does_not_clobber_reassigned_waypoint():
    """An upgrade started before clear must not land on the new waypoint."""
    release = asyncio.Event()
    labels = {_PIN_A: "Old Place", _PIN_B: "New Place"}

    async def resolver(point):
        await release.wait()
        return labels[point]

    store = WaypointStore(resolver)
    stale = store.set_from(_PIN_A)
    await asyncio.sleep(0)

    store.clear()
    fresh = store.set_from(_PIN_B, "Fresh Pick")
    release.set()

    # Simulate the old upgrade completing late, after the reassignment.
    await store._upgrade_label("from", stale)
    assert store.from_waypoint.label == "Fresh Pick"

    await store.drain()
    assert store.from_waypoint.point == _PIN_B
    assert store.from_waypoint.generation == fresh.generation
    assert store.from_waypoint.label == "New Place"


@pytest.mark.asyncio
async def test_upgrade_failure_keeps_initial_label():
    async def failing(point):
        raise RuntimeError("nominatim down")

    store = WaypointStore(failing)
    store.set_to(_PIN_B, "Destination")
    await store.drain()

    assert store.to_waypoint.label == "Destination"


@pytest.mark.asyncio
async def test_empty_label_result_keeps_initial_label():
    async def nothing(point):
        return None

    store = WaypointStore(nothing)
    store.set_to(_PIN_B)
    await store.drain()

    assert store.to_waypoint.label == "To Location"


# ---------------------------------------------------------------------------
# SessionRegistry
# ---------------------------------------------------------------------------


def test_registry_returns_same_store_per_session():
    registry = SessionRegistry()
    assert registry.get("abc") is registry.get("abc")
    assert registry.get("abc") is not registry.get("xyz")
    assert len(registry) == 2


def test_registry_sessions_are_isolated():
    registry = SessionRegistry()
    registry.get("one").set_from(_PIN_A)
    assert registry.get("two").from_waypoint is None


def test_registry_end_discards_session():
    registry = SessionRegistry()
    registry.get("abc").set_from(_PIN_A)
    registry.end("abc")
    assert len(registry) == 0
    assert registry.get("abc").from_waypoint is None


@pytest.mark.asyncio
async def test_registry_end_cancels_pending_upgrades():
    resolver = _GatedResolver()
    registry = SessionRegistry(resolver)
    store = registry.get("abc")
    store.set_from(_PIN_A)
    await asyncio.sleep(0)
    pending = list(store._tasks.values())

    registry.end("abc")
    await asyncio.gather(*pending, return_exceptions=True)

    assert all(task.cancelled() for task in pending)


class _FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_registry_find_does_not_create_sessions():
    registry = SessionRegistry()
    assert registry.find("unknown") is None
    assert len(registry) == 0

    store = registry.get("s1")
    assert registry.find("s1") is store


def test_registry_evicts_idle_sessions_only():
    clock = _FakeClock()
    registry = SessionRegistry(idle_timeout=60, clock=clock)
    registry.get("idle").set_from(_PIN_A)
    registry.get("busy")

    clock.now += 45
    registry.find("busy")
    clock.now += 30

    assert registry.evict_idle() == 1
    assert registry.find("idle") is None
    assert registry.find("busy") is not None


def test_registry_without_idle_timeout_keeps_sessions():
    clock = _FakeClock()
    registry = SessionRegistry(idle_timeout=None, clock=clock)
    registry.get("s1")
    clock.now += 10**6
    assert registry.evict_idle() == 0
    assert len(registry) == 1
