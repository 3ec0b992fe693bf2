"""
Geohash codec: lat/lng <-> base-32 cell identifiers.

Decoding is deliberately lossy.  ``decode`` returns the centre of the cell, so
a stored point is only ever known to cell granularity.
"""

from __future__ import annotations

import math
from typing import NamedTuple

from bloodnode.errors import InvalidCoordinate, InvalidGeohash

BASE32 = "0123456789bcdefghjkmnpqrstuvwxyz"
_DECODE_MAP = {ch: i for i, ch in enumerate(BASE32)}


class GeoPoint(NamedTuple):
    latitude: float
    longitude: float


class CellBounds(NamedTuple):
    min_lat: float
    max_lat: float
    min_lng: float
    max_lng: float


def validate_point(latitude: float, longitude: float) -> None:
    if latitude is None or longitude is None:
        raise InvalidCoordinate("Latitude and longitude are required")
    if not (math.isfinite(latitude) and math.isfinite(longitude)):
        raise InvalidCoordinate("Latitude and longitude must be finite numbers")
    if not -90.0 <= latitude <= 90.0:
        raise InvalidCoordinate(f"Latitude {latitude} out of range [-90, 90]")
    if not -180.0 <= longitude <= 180.0:
        raise InvalidCoordinate(f"Longitude {longitude} out of range [-180, 180]")


def encode(latitude: float, longitude: float, precision: int = 7) -> str:
    """Encode a point as a geohash of *precision* characters."""
    validate_point(latitude, longitude)
    if precision < 1:
        raise ValueError("precision must be a positive integer")

    lat_lo, lat_hi = -90.0, 90.0
    lng_lo, lng_hi = -180.0, 180.0
    chars: list[str] = []
    bits = 0
    bit_count = 0
    even = True  # even bits refine longitude

    while len(chars) < precision:
        if even:
            mid = (lng_lo + lng_hi) / 2
            if longitude >= mid:
                bits = (bits << 1) | 1
                lng_lo = mid
            else:
                bits <<= 1
                lng_hi = mid
        else:
            mid = (lat_lo + lat_hi) / 2
            if latitude >= mid:
                bits = (bits << 1) | 1
                lat_lo = mid
            else:
                bits <<= 1
                lat_hi = mid
        even = not even
        bit_count += 1
        if bit_count == 5:
            chars.append(BASE32[bits])
            bits = 0
            bit_count = 0

    return "".join(chars)


def decode_bounds(geohash: str) -> CellBounds:
    """Return the rectangle covered by *geohash*."""
    if not geohash:
        raise InvalidGeohash("Geohash must be a non-empty string")

    lat_lo, lat_hi = -90.0, 90.0
    lng_lo, lng_hi = -180.0, 180.0
    even = True

    for ch in geohash.lower():
        value = _DECODE_MAP.get(ch)
        if value is None:
            raise InvalidGeohash(f"Invalid geohash character {ch!r}")
        for shift in range(4, -1, -1):
            bit = (value >> shift) & 1
            if even:
                mid = (lng_lo + lng_hi) / 2
                if bit:
                    lng_lo = mid
                else:
                    lng_hi = mid
            else:
                mid = (lat_lo + lat_hi) / 2
                if bit:
                    lat_lo = mid
                else:
                    lat_hi = mid
            even = not even

    return CellBounds(lat_lo, lat_hi, lng_lo, lng_hi)


def decode(geohash: str) -> GeoPoint:
    """Return the centre point of the cell identified by *geohash*."""
    b = decode_bounds(geohash)
    return GeoPoint((b.min_lat + b.max_lat) / 2, (b.min_lng + b.max_lng) / 2)


def cell_size(precision: int) -> tuple[float, float]:
    """Cell height and width in degrees ``(lat_deg, lng_deg)`` at *precision*."""
    total_bits = 5 * precision
    lng_bits = (total_bits + 1) // 2
    lat_bits = total_bits // 2
    return 180.0 / (1 << lat_bits), 360.0 / (1 << lng_bits)
