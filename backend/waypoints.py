"""From/To waypoint state for one commuter session.

A waypoint is stored immediately with the label hint (or a generic label) and
then upgraded in the background once reverse geocoding returns. Each
assignment carries a generation number; an upgrade only lands if the slot
still holds the waypoint it was started for, so a late answer can never
relabel a cleared or reassigned waypoint.
"""

import asyncio
import logging
import threading
import time
from typing import Awaitable, Callable

from errors import AlreadySetError, NoPinError
from models import GeoPoint, RouteMode, Waypoint, WaypointPair

logger = logging.getLogger(__name__)

FROM: str = "from"
TO: str = "to"

DEFAULT_LABELS: dict[str, str] = {
    FROM: "From Location",
    TO: "To Location",
}

# Sessions untouched for this long are dropped by SessionRegistry.evict_idle.
SESSION_IDLE_TIMEOUT_S: float = 3600.0

LabelResolver = Callable[[GeoPoint], Awaitable[str | None]]


class WaypointStore:
    """Holds a session's two waypoints with set-once protection.

    Args:
        resolve_label: Optional coroutine function mapping a point to a
            display address, e.g. ``ReverseGeocoder.resolve_label``. When
            omitted, labels are never upgraded.
    """

    def __init__(self, resolve_label: LabelResolver | None = None):
        self._resolve_label = resolve_label
        self._slots: dict[str, Waypoint | None] = {FROM: None, TO: None}
        self._mode = RouteMode.NONE
        self._generation = 0
        self._tasks: dict[str, asyncio.Task] = {}
        self._lock = threading.Lock()

    # -- Public API ----------------------------------------------------------

    def set_from(self, candidate: GeoPoint | None, label_hint: str | None = None) -> Waypoint:
        """Assigns the From waypoint.

        Raises:
            NoPinError: If ``candidate`` is None.
            AlreadySetError: If From is already set.
        """
        return self._assign(FROM, candidate, label_hint)

    def set_to(self, candidate: GeoPoint | None, label_hint: str | None = None) -> Waypoint:
        """Assigns the To waypoint. Same rules as ``set_from``."""
        return self._assign(TO, candidate, label_hint)

    def clear(self) -> None:
        """Resets both waypoints and drops any pending label upgrades."""
        with self._lock:
            self._slots = {FROM: None, TO: None}
            self._mode = RouteMode.NONE
            self._generation += 1
            tasks, self._tasks = self._tasks, {}
        for task in tasks.values():
            task.cancel()
        logger.info("Route cleared")

    def pair(self) -> WaypointPair:
        with self._lock:
            return WaypointPair(
                from_=self._slots[FROM], to=self._slots[TO], mode=self._mode
            )

    @property
    def from_waypoint(self) -> Waypoint | None:
        return self._slots[FROM]

    @property
    def to_waypoint(self) -> Waypoint | None:
        return self._slots[TO]

    @property
    def mode(self) -> RouteMode:
        return self._mode

    async def drain(self) -> None:
        """Waits for pending label upgrades to finish."""
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def close(self) -> None:
        """Cancels pending label upgrades. Called when the session ends."""
        with self._lock:
            tasks, self._tasks = self._tasks, {}
        for task in tasks.values():
            task.cancel()

    # -- Internals -----------------------------------------------------------

    def _assign(self, role: str, candidate: GeoPoint | None, label_hint: str | None) -> Waypoint:
        if candidate is None:
            logger.info("No pinned location for %s", role)
            raise NoPinError(role)

        with self._lock:
            if self._slots[role] is not None:
                logger.info("%s location is already set; ignoring", role.capitalize())
                raise AlreadySetError(role)
            self._generation += 1
            waypoint = Waypoint(
                point=candidate,
                label=label_hint or DEFAULT_LABELS[role],
                generation=self._generation,
            )
            self._slots[role] = waypoint
            self._mode = RouteMode.FROM if role == FROM else RouteMode.TO

        logger.info(
            "%s location set: %.6f,%.6f", role.capitalize(), candidate.lat, candidate.lng
        )
        self._schedule_upgrade(role, waypoint)
        return waypoint

    def _schedule_upgrade(self, role: str, waypoint: Waypoint) -> None:
        if self._resolve_label is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop; skipping label upgrade for %s", role)
            return
        task = loop.create_task(self._upgrade_label(role, waypoint))
        with self._lock:
            self._tasks[role] = task
        task.add_done_callback(lambda t, r=role: self._forget(r, t))

    def _forget(self, role: str, task: asyncio.Task) -> None:
        with self._lock:
            if self._tasks.get(role) is task:
                del self._tasks[role]

    async def _upgrade_label(self, role: str, waypoint: Waypoint) -> None:
        try:
            label = await self._resolve_label(waypoint.point)
        except Exception:  # noqa: BLE001
            logger.exception("Reverse geocode failed for %s location", role)
            return
        if not label:
            return

        with self._lock:
            current = self._slots[role]
            if current is None or current.generation != waypoint.generation:
                logger.info("Discarding stale label for %s location", role)
                return
            self._slots[role] = current.model_copy(update={"label": label})
        logger.info("%s label upgraded to %r", role.capitalize(), label)


class SessionRegistry:
    """One ``WaypointStore`` per session id.

    Only ``get`` creates a store; read paths use ``find`` so probing an
    unknown session id never allocates. Stores untouched for longer than
    ``idle_timeout`` seconds are dropped by ``evict_idle``.
    """

    def __init__(
        self,
        resolve_label: LabelResolver | None = None,
        *,
        idle_timeout: float | None = SESSION_IDLE_TIMEOUT_S,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._resolve_label = resolve_label
        self.idle_timeout = idle_timeout
        self._clock = clock
        self._stores: dict[str, WaypointStore] = {}
        self._last_used: dict[str, float] = {}
        self._lock = threading.Lock()

    def get(self, session_id: str) -> WaypointStore:
        """Returns the session's store, creating it on first use."""
        with self._lock:
            store = self._stores.get(session_id)
            if store is None:
                store = WaypointStore(self._resolve_label)
                self._stores[session_id] = store
            self._last_used[session_id] = self._clock()
            return store

    def find(self, session_id: str) -> WaypointStore | None:
        """Returns the session's store, or None if the session is unknown."""
        with self._lock:
            store = self._stores.get(session_id)
            if store is not None:
                self._last_used[session_id] = self._clock()
            return store

    def end(self, session_id: str) -> None:
        with self._lock:
            store = self._stores.pop(session_id, None)
            self._last_used.pop(session_id, None)
        if store is not None:
            store.close()

    def evict_idle(self) -> int:
        """Ends every session idle for longer than ``idle_timeout``.

        Returns how many sessions were removed.
        """
        if self.idle_timeout is None:
            return 0
        cutoff = self._clock() - self.idle_timeout
        with self._lock:
            idle = [sid for sid, used in self._last_used.items() if used <= cutoff]
            stores = [self._stores.pop(sid) for sid in idle]
            for sid in idle:
                del self._last_used[sid]
        for store in stores:
            store.close()
        if idle:
            logger.info("Evicted %d idle session(s)", len(idle))
        return len(idle)

    def close_all(self) -> None:
        with self._lock:
            stores, self._stores = list(self._stores.values()), {}
            self._last_used = {}
        for store in stores:
            store.close()

    def __len__(self) -> int:
        with self._lock:
            return len(self._stores)
