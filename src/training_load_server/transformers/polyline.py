"""Google encoded polyline codec.

Third-party activity services ship GPS routes as encoded polylines
(precision 1e-5). Routes are stored encoded; decoding is used to validate
an inbound route and to count its points.
"""

from dataclasses import dataclass

PRECISION = 1e5


@dataclass(frozen=True)
class RouteSummary:
    """Shape of a decoded route."""

    point_count: int
    start: tuple[float, float] | None
    end: tuple[float, float] | None


def _decode_value(polyline: str, index: int) -> tuple[int, int]:
    result = 0
    shift = 0
    while True:
        if index >= len(polyline):
            raise ValueError("Polyline ends in the middle of a coordinate")
        byte = ord(polyline[index]) - 63
        if byte < 0 or byte > 0x3F:
            raise ValueError(f"Invalid polyline character {polyline[index]!r} at {index}")
        index += 1
        result |= (byte & 0x1F) << shift
        shift += 5
        if byte < 0x20:
            break
    delta = ~(result >> 1) if result & 1 else result >> 1
    return delta, index


def decode(polyline: str) -> list[tuple[float, float]]:
    """Decode an encoded polyline into (latitude, longitude) pairs.

    Raises:
        ValueError: If the string is not a well-formed polyline
    """
    coordinates: list[tuple[float, float]] = []
    index = 0
    lat = 0
    lng = 0
    while index < len(polyline):
        delta_lat, index = _decode_value(polyline, index)
        delta_lng, index = _decode_value(polyline, index)
        lat += delta_lat
        lng += delta_lng
        coordinates.append((lat / PRECISION, lng / PRECISION))
    return coordinates


def _encode_value(value: int) -> str:
    value = ~(value << 1) if value < 0 else value << 1
    chunks = []
    while value >= 0x20:
        chunks.append(chr((0x20 | (value & 0x1F)) + 63))
        value >>= 5
    chunks.append(chr(value + 63))
    return "".join(chunks)


def encode(coordinates: list[tuple[float, float]]) -> str:
    """Encode (latitude, longitude) pairs as a polyline."""
    parts = []
    prev_lat = 0
    prev_lng = 0
    for latitude, longitude in coordinates:
        lat = round(latitude * PRECISION)
        lng = round(longitude * PRECISION)
        parts.append(_encode_value(lat - prev_lat))
        parts.append(_encode_value(lng - prev_lng))
        prev_lat, prev_lng = lat, lng
    return "".join(parts)


def summarize(polyline: str) -> RouteSummary:
    """Decode and summarize a route.

    Raises:
        ValueError: If the string is not a well-formed polyline
    """
    points = decode(polyline)
    if not points:
        return RouteSummary(point_count=0, start=None, end=None)
    return RouteSummary(point_count=len(points), start=points[0], end=points[-1])
