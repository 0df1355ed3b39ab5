"""Coordinate decoding for place URLs."""

import re
from typing import NamedTuple, Optional
from urllib.parse import unquote

_AT_PATTERN = re.compile(r"@(-?\d{1,3}(?:\.\d+)?),(-?\d{1,3}(?:\.\d+)?)")
_DIRECTIVE_PATTERN = re.compile(r"!3d(-?\d{1,3}(?:\.\d+)?)!4d(-?\d{1,3}(?:\.\d+)?)")


class Coordinates(NamedTuple):
    latitude: float
    longitude: float


def valid_pair(latitude: Optional[float], longitude: Optional[float]) -> Optional[Coordinates]:
    """Return the pair when both values exist and are on the globe, else ``None``."""
    if latitude is None or longitude is None:
        return None
    try:
        lat = float(latitude)
        lon = float(longitude)
    except (TypeError, ValueError):
        return None
    if not (-90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0):
        return None
    return Coordinates(lat, lon)


def decode_coords(identifier_or_url: Optional[str]) -> Optional[Coordinates]:
    """Extract ``(lat, lon)`` from a maps URL.

    Patterns are tried in order: the ``@lat,lon`` viewport segment, then the
    ``!3d<lat>!4d<lon>`` data directive. The first pattern yielding a valid pair
    wins; values are never mixed across patterns.
    """
    if not identifier_or_url or not isinstance(identifier_or_url, str):
        return None
    text = unquote(identifier_or_url)
    for pattern in (_AT_PATTERN, _DIRECTIVE_PATTERN):
        match = pattern.search(text)
        if not match:
            continue
        coords = valid_pair(match.group(1), match.group(2))
        if coords is not None:
            return coords
    return None
