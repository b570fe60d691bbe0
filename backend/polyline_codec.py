"""Google Encoded Polyline codec.

See: https://developers.google.com/maps/documentation/utilities/polylinealgorithm

The format carries no checksum. A string encoded at a different precision
decodes to plausible-looking garbage, so callers should bound-check the
result with ``within_bounds`` before display.
"""

from errors import DecodeError

DEFAULT_PRECISION: int = 5


def decode(encoded: str, precision: int = DEFAULT_PRECISION) -> list[tuple[float, float]]:
    """Decodes a Google-encoded polyline string to a list of (lat, lng) points.

    Raises:
        DecodeError: If the string ends in the middle of a value.
    """
    factor = 10 ** precision
    result: list[tuple[float, float]] = []
    index = 0
    lat = 0
    lng = 0

    while index < len(encoded):
        index, lat_delta = _read_value(encoded, index)
        index, lng_delta = _read_value(encoded, index)
        lat += lat_delta
        lng += lng_delta
        result.append((lat / factor, lng / factor))

    return result


def _read_value(encoded: str, index: int) -> tuple[int, int]:
    """Reads one zig-zag encoded signed integer starting at ``index``."""
    shift = 0
    value = 0
    while True:
        if index >= len(encoded):
            raise DecodeError(f"Polyline truncated at offset {index}.")
        b = ord(encoded[index]) - 63
        index += 1
        if b < 0:
            raise DecodeError(
                f"Invalid polyline character {encoded[index - 1]!r} at offset {index - 1}."
            )
        value |= (b & 0x1F) << shift
        shift += 5
        if b < 0x20:
            break
    return index, (~(value >> 1) if (value & 1) else (value >> 1))


def encode(
    coordinates: list[tuple[float, float]], precision: int = DEFAULT_PRECISION
) -> str:
    """Encodes a list of (lat, lng) tuples into a Google-encoded polyline."""
    factor = 10 ** precision
    encoded: list[str] = []
    prev_lat = 0
    prev_lng = 0

    for lat, lng in coordinates:
        lat_i = round(lat * factor)
        lng_i = round(lng * factor)

        for delta in (lat_i - prev_lat, lng_i - prev_lng):
            value = ~(delta << 1) if delta < 0 else (delta << 1)
            while value >= 0x20:
                encoded.append(chr((0x20 | (value & 0x1F)) + 63))
                value >>= 5
            encoded.append(chr(value + 63))

        prev_lat = lat_i
        prev_lng = lng_i

    return "".join(encoded)


def within_bounds(
    points: list[tuple[float, float]],
    south: float = -90.0,
    west: float = -180.0,
    north: float = 90.0,
    east: float = 180.0,
) -> bool:
    """Returns True if every point lies inside the given envelope."""
    return all(south <= lat <= north and west <= lng <= east for lat, lng in points)
