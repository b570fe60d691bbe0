"""Pydantic domain, request and response models for the Ruta backend."""

from enum import Enum
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class GeoPoint(BaseModel):
    """A WGS84 coordinate pair. Immutable once constructed."""

    model_config = ConfigDict(frozen=True)

    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)

    def as_tuple(self) -> tuple[float, float]:
        return (self.lat, self.lng)


class RouteMode(str, Enum):
    """Which waypoint was assigned most recently. UI affordance only."""

    NONE = "none"
    FROM = "from"
    TO = "to"


class Waypoint(BaseModel):
    """A named routing endpoint.

    ``label`` is filled lazily by reverse geocoding; ``generation`` identifies
    the assignment so a late label upgrade can tell whether it is still
    talking about the same waypoint.
    """

    model_config = ConfigDict(frozen=True)

    point: GeoPoint
    label: str | None = None
    generation: int = 0

    def display_label(self, default: str) -> str:
        return self.label or default


class WaypointPair(BaseModel):
    """Snapshot of a session's From/To waypoints."""

    model_config = ConfigDict(populate_by_name=True)

    from_: Waypoint | None = Field(
        default=None,
        validation_alias=AliasChoices("from", "from_"),
        serialization_alias="from",
    )
    to: Waypoint | None = None
    mode: RouteMode = RouteMode.NONE


class RoutePath(BaseModel):
    """An ordered travel path of at least two points.

    ``is_fallback`` marks the straight-line degradation so callers can style
    it differently from a real road path.
    """

    model_config = ConfigDict(frozen=True)

    points: list[GeoPoint] = Field(min_length=2)
    provider: str
    is_fallback: bool = False


# ---------------------------------------------------------------------------
# Transit suggestion models
# ---------------------------------------------------------------------------


class TransitStep(BaseModel):
    """One jeepney leg: board ``jeepney_id`` at ``from`` and alight at ``to``."""

    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    from_: str = Field(
        min_length=1,
        validation_alias=AliasChoices("from", "from_"),
        serialization_alias="from",
    )
    jeepney_id: str = Field(
        min_length=1,
        validation_alias=AliasChoices("jeepney_id", "jeepneyId", "jeepney"),
    )
    to: str = Field(min_length=1)

    @field_validator("jeepney_id", mode="before")
    @classmethod
    def _route_code_as_text(cls, value):
        # Models sometimes answer with a bare number for codes like "17".
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value


class TransitSuggestion(BaseModel):
    """A validated transit narrative returned by the text-generation provider."""

    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    summary: str = Field(
        min_length=1,
        validation_alias=AliasChoices("route_summary", "summary"),
        serialization_alias="route_summary",
    )
    steps: list[TransitStep] = Field(min_length=1)
    alternatives: list[TransitStep] = Field(default_factory=list)


class Location(BaseModel):
    """A loosely specified endpoint as sent by a client.

    Coordinates are optional here so that a missing value can be reported as
    a ``MissingWaypointError`` rather than a validation failure.
    """

    lat: float | None = Field(default=None, ge=-90, le=90)
    lng: float | None = Field(default=None, ge=-180, le=180)
    name: str | None = None

    @classmethod
    def from_waypoint(cls, waypoint: Waypoint) -> "Location":
        return cls(lat=waypoint.point.lat, lng=waypoint.point.lng, name=waypoint.label)


# ---------------------------------------------------------------------------
# Request / response bodies
# ---------------------------------------------------------------------------


class SetWaypointRequest(BaseModel):
    """Request body for the set-from / set-to endpoints.

    ``pin`` is the currently pinned map location; ``None`` means nothing is
    pinned.
    """

    pin: GeoPoint | None = None
    label: str | None = None


class RouteRequest(BaseModel):
    """Request body for the /route endpoint."""

    origin: GeoPoint
    destination: GeoPoint


class ReverseGeocodeRequest(BaseModel):
    """Request body for the /reverse-geocode endpoint."""

    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)


class AddressLookup(BaseModel):
    """Result of a reverse-geocode lookup."""

    address: str
    """Short display address produced by ``format_address``."""

    display_name: str | None = None
    """Full provider address string."""

    source: str
    """``cache`` or the provider name."""

    raw_address: dict[str, Any] = Field(default_factory=dict)
    """Structured address components (road, suburb, city, ...) as returned by
    the provider."""


class SuggestRouteRequest(BaseModel):
    """Request body for the /suggest-route endpoint."""

    model_config = ConfigDict(populate_by_name=True)

    from_location: Location | None = Field(
        default=None,
        validation_alias=AliasChoices("from_location", "fromLocation"),
    )
    to_location: Location | None = Field(
        default=None,
        validation_alias=AliasChoices("to_location", "toLocation"),
    )


class TokenUsage(BaseModel):
    """Token accounting reported by the text-generation provider."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class SuggestRouteResponse(BaseModel):
    """Response from the /suggest-route endpoint."""

    success: bool = True
    suggestion: TransitSuggestion
    usage: TokenUsage | None = None
    """Provider token counts, so clients can track cost. ``None`` when the
    provider did not report them."""
