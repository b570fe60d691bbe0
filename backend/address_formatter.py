"""Shortens verbose reverse-geocoded addresses for display.

Example:
  "123 Colon Street, Barangay Kalunasan, Cebu City, Cebu, Central Visayas, 6000, Philippines"
  becomes "123 Colon Street, Barangay Kalunasan, Cebu City".
"""

import re

# Segments that carry no useful information for a commuter in Cebu.
NOISE_PATTERNS: tuple[re.Pattern, ...] = (
    re.compile(r"^\d{4,}$"),                  # postal codes
    re.compile(r"^Philippines?$", re.I),      # country
    re.compile(r"^Cebu$", re.I),              # province
    re.compile(r"^Region VII", re.I),         # administrative region
    re.compile(r"^Central Visayas", re.I),    # regional grouping
    re.compile(r"^Visayas$", re.I),           # island group
)

MAX_SEGMENTS: int = 3


def format_address(raw: str | None) -> str | None:
    """Returns a short display form of ``raw``, or None if ``raw`` is empty.

    Keeps at most the first three non-noise segments. If filtering removes
    everything, falls back to the first two raw segments, and then to ``raw``
    itself, so information is never dropped without a replacement.
    """
    if not raw:
        return None

    parts = [part.strip() for part in raw.split(",")]
    parts = [part for part in parts if part]

    relevant = [
        part for part in parts
        if not any(pattern.search(part) for pattern in NOISE_PATTERNS)
    ][:MAX_SEGMENTS]

    if len(relevant) >= 2:
        return ", ".join(relevant)
    if len(relevant) == 1:
        return relevant[0]

    return ", ".join(parts[:2]) or raw


def truncate_address(address: str | None, max_length: int = 50) -> str:
    """Truncates ``address`` to ``max_length`` characters with an ellipsis."""
    if not address:
        return ""
    if len(address) <= max_length:
        return address
    return address[: max_length - 3] + "..."


def get_location_name(address: str | None) -> str:
    """Returns the primary place name (the part before the first comma)."""
    if not address:
        return ""
    first = address.split(",")[0].strip()
    return first or address
