"""TTL cache for reverse-geocoded addresses.

Keys are coordinates rounded to six decimal places, so near-identical lookups
share an entry. One instance is created per process by ``main.py`` and passed
to whoever needs it.
"""

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable

from models import GeoPoint

DEFAULT_TTL_S: float = 60.0


def cache_key(point: GeoPoint) -> str:
    return f"{point.lat:.6f},{point.lng:.6f}"


@dataclass(frozen=True)
class GeocodeCacheEntry:
    """One memoised lookup and the clock reading at which it goes stale."""

    key: str
    address: Any
    expires_at: float


class GeocodeCache:
    """Thread-safe address memo with lazy and on-demand expiry.

    ``address`` is whatever the caller wants memoised for a point: a plain
    string, or the full ``AddressLookup`` as ``ReverseGeocoder`` stores it.
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_S,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, GeocodeCacheEntry] = {}
        self._lock = threading.Lock()

    def lookup(self, point: GeoPoint) -> Any | None:
        """Returns the cached address for ``point``, or None if absent or expired."""
        key = cache_key(point)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._clock() >= entry.expires_at:
                del self._entries[key]
                return None
            return entry.address

    def store(self, point: GeoPoint, address: Any, ttl: float | None = None) -> GeocodeCacheEntry:
        key = cache_key(point)
        entry = GeocodeCacheEntry(
            key=key,
            address=address,
            expires_at=self._clock() + (self.ttl_seconds if ttl is None else ttl),
        )
        with self._lock:
            self._entries[key] = entry
        return entry

    def sweep(self) -> int:
        """Evicts every expired entry. Returns how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [k for k, entry in self._entries.items() if now >= entry.expires_at]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
