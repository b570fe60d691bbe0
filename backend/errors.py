"""Typed errors raised by the Ruta backend components.

The HTTP layer in ``main.py`` maps each of these to a status code. The route
resolver never lets ``ProviderError`` or ``DecodeError`` escape; it always has
the straight-line fallback.
"""


class AlreadySetError(Exception):
    """A waypoint slot is occupied and must be cleared before reassignment."""

    def __init__(self, role: str):
        self.role = role
        super().__init__(
            f"{role.capitalize()} location is already set. "
            "Clear the route first if you want to change it."
        )


class NoPinError(Exception):
    """A waypoint was requested but no location is currently pinned."""

    def __init__(self, role: str):
        self.role = role
        super().__init__(f"Pin a location first, then set {role!r}.")


class DecodeError(ValueError):
    """An encoded polyline could not be decoded."""


class SuggestionError(Exception):
    """Base class for transit suggestion failures."""


class MissingWaypointError(SuggestionError):
    """From or To is missing, or one of its coordinates is absent."""


class ProviderError(SuggestionError):
    """An external provider call failed (network, timeout or non-2xx)."""

    def __init__(self, provider: str, message: str, status: int | None = None):
        self.provider = provider
        self.status = status
        self.message = message
        detail = f"{provider} failed"
        if status is not None:
            detail += f" with HTTP {status}"
        super().__init__(f"{detail}: {message}")


class MalformedResponseError(SuggestionError):
    """The provider answered, but not with the expected JSON shape."""
