"""
geo_index.py — Pure coordinate math: geohash keys, great-circle distance,
neighbour cells and a longitude-based UTC offset estimate.

No I/O and no state, so every function is safe to call from request
handlers and scheduler ticks concurrently.

USAGE
─────
    from moodmap.services.geo_index import distance_km, encode, neighbors

    key = encode(27.7172, 85.3240)          # Kathmandu, precision 8
    distance_km(27.7172, 85.3240, 28.2096, 83.9856)   # ≈ 142 km to Pokhara
    neighbors(key)["north"]

Distances use the haversine formula over a spherical Earth of radius
6371 km. That is an approximation (up to ~0.5 % off the ellipsoid),
which is fine for clustering and radius filters.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

from moodmap.core.errors import InvalidInput

EARTH_RADIUS_KM = 6371.0

_BASE32 = "0123456789bcdefghjkmnpqrstuvwxyz"

MAX_PRECISION = 12


@dataclass(frozen=True)
class GeoBox:
    south: float
    west: float
    north: float
    east: float
    precision: int

    @property
    def center(self) -> tuple[float, float]:
        """(lat, lon) of the box center."""
        return (self.south + self.north) / 2, (self.west + self.east) / 2


def is_valid_coordinate(lat, lon) -> bool:
    return (
        isinstance(lat, (int, float)) and not isinstance(lat, bool)
        and isinstance(lon, (int, float)) and not isinstance(lon, bool)
        and -90 <= lat <= 90
        and -180 <= lon <= 180
    )


def encode(lat: float, lon: float, precision: int = 8) -> str:
    """Encode a coordinate as a base-32 geohash of `precision` characters."""
    if not is_valid_coordinate(lat, lon):
        raise InvalidInput(f"cannot geohash ({lat}, {lon})")

    lat_lo, lat_hi = -90.0, 90.0
    lon_lo, lon_hi = -180.0, 180.0
    chars: list[str] = []
    bits = 0
    value = 0
    even = True   # even bits refine longitude

    while len(chars) < precision:
        if even:
            mid = (lon_lo + lon_hi) / 2
            if lon >= mid:
                value = (value << 1) | 1
                lon_lo = mid
            else:
                value <<= 1
                lon_hi = mid
        else:
            mid = (lat_lo + lat_hi) / 2
            if lat >= mid:
                value = (value << 1) | 1
                lat_lo = mid
            else:
                value <<= 1
                lat_hi = mid
        even = not even
        bits += 1
        if bits == 5:
            chars.append(_BASE32[value])
            bits = 0
            value = 0

    return "".join(chars)


def decode(key: str) -> GeoBox:
    """Decode a geohash into its bounding box."""
    if not isinstance(key, str) or not key:
        raise InvalidInput("geohash must be a non-empty string")

    lat_lo, lat_hi = -90.0, 90.0
    lon_lo, lon_hi = -180.0, 180.0
    even = True

    for char in key:
        index = _BASE32.find(char)
        if index == -1:
            raise InvalidInput(f"invalid geohash character: {char!r}")
        for mask in (16, 8, 4, 2, 1):
            if even:
                mid = (lon_lo + lon_hi) / 2
                if index & mask:
                    lon_lo = mid
                else:
                    lon_hi = mid
            else:
                mid = (lat_lo + lat_hi) / 2
                if index & mask:
                    lat_lo = mid
                else:
                    lat_hi = mid
            even = not even

    return GeoBox(south=lat_lo, west=lon_lo, north=lat_hi, east=lon_hi, precision=len(key))


def _wrap_lon(lon: float) -> float:
    if lon > 180:
        return lon - 360
    if lon < -180:
        return lon + 360
    return lon


def _clamp_lat(lat: float) -> float:
    return max(-90.0, min(90.0, lat))


def neighbors(key: str) -> dict[str, str]:
    """Geohashes of the eight cells surrounding `key` at the same precision."""
    box = decode(key)
    lat, lon = box.center
    lat_step = box.north - box.south
    lon_step = box.east - box.west

    offsets = {
        "north": (1, 0),
        "south": (-1, 0),
        "east": (0, 1),
        "west": (0, -1),
        "northeast": (1, 1),
        "northwest": (1, -1),
        "southeast": (-1, 1),
        "southwest": (-1, -1),
    }
    return {
        name: encode(_clamp_lat(lat + dy * lat_step), _wrap_lon(lon + dx * lon_step), box.precision)
        for name, (dy, dx) in offsets.items()
    }


def step_size(precision: int) -> tuple[float, float]:
    """
    (lat_step, lon_step) in degrees of one cell at `precision`.

    Bits alternate starting with longitude, so longitude gets the extra
    bit on odd totals. Precisions outside 1..12 fall back to 6.
    """
    if not 1 <= precision <= MAX_PRECISION:
        precision = 6
    bits = precision * 5
    lon_bits = (bits + 1) // 2
    lat_bits = bits // 2
    return 180.0 / 2 ** lat_bits, 360.0 / 2 ** lon_bits


def bounding_box_keys(south: float, west: float, north: float, east: float, precision: int = 6) -> list[str]:
    """Every geohash at `precision` whose cell intersects the rectangle."""
    if south > north or west > east:
        raise InvalidInput("bounding box edges are inverted")
    lat_step, lon_step = step_size(precision)
    keys: dict[str, None] = {}

    lat = south
    while lat <= north:
        lon = west
        while lon <= east:
            keys[encode(lat, lon, precision)] = None
            lon += lon_step
        keys[encode(lat, east, precision)] = None
        lat += lat_step
    lon = west
    while lon <= east:
        keys[encode(north, lon, precision)] = None
        lon += lon_step
    keys[encode(north, east, precision)] = None
    return list(keys)


def distance_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Haversine great-circle distance in kilometres."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(max(0.0, 1 - a)))


def radius_box(lat: float, lon: float, radius_km: float) -> tuple[float, float, float, float]:
    """
    (south, west, north, east) rectangle enclosing the circle of
    `radius_km` around a point. Always a superset: circles reaching a
    pole or the antimeridian get the full longitude span instead of a
    wrapped box, and callers trim with distance_km afterwards.
    """
    if not is_valid_coordinate(lat, lon) or radius_km <= 0:
        raise InvalidInput(f"invalid radius query ({lat}, {lon}, {radius_km} km)")
    d_lat = math.degrees(radius_km / EARTH_RADIUS_KM)
    south, north = _clamp_lat(lat - d_lat), _clamp_lat(lat + d_lat)

    widest = max(abs(south), abs(north))
    if widest >= 90.0:
        return south, -180.0, north, 180.0
    d_lon = d_lat / math.cos(math.radians(widest))
    if lon - d_lon < -180.0 or lon + d_lon > 180.0:
        return south, -180.0, north, 180.0
    return south, lon - d_lon, north, lon + d_lon


def estimate_utc_offset(lat: float, lon: float) -> str:
    """Nominal offset from longitude alone: 15° per hour, no DST or borders."""
    if not is_valid_coordinate(lat, lon):
        return "UTC"
    offset = round(lon / 15)
    if offset == 0:
        return "UTC"
    return f"UTC+{offset}" if offset > 0 else f"UTC{offset}"
