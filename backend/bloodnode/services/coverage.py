"""
Radius search planning: geohash precision selection and disk coverage.

``cover_circle`` samples the bounding box of the search disk on a grid finer
than one cell, encodes every sample and keeps the cells that can intersect the
disk.  The result is an over-approximation; it never misses a cell holding a
point within the radius.
"""

from __future__ import annotations

import math

from bloodnode.services.geohash import cell_size, decode_bounds, encode, validate_point

EARTH_RADIUS_KM = 6371.0

# Fraction of a cell used as sampling step; must stay below 1.0 so that
# consecutive samples can never straddle a whole cell.
_SAMPLE_STEP_FRACTION = 0.9
_MARGIN = 1.01


def choose_precision(radius_km: float) -> int:
    """Geohash length to search with for *radius_km*; wider radius, shorter hash."""
    if radius_km >= 100:
        return 3
    if radius_km >= 30:
        return 4
    if radius_km >= 5:
        return 6
    if radius_km >= 1:
        return 6
    return 7


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance in kilometres."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlmb = math.radians(lng2 - lng1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlmb / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(min(1.0, math.sqrt(a)))


def _normalize_lng(lng: float) -> float:
    if -180.0 <= lng <= 180.0:
        return lng
    return ((lng + 180.0) % 360.0) - 180.0


def _axis_samples(lo: float, hi: float, step: float) -> list[float]:
    samples = []
    value = lo
    while value < hi:
        samples.append(value)
        value += step
    samples.append(hi)
    return samples


def bounding_box(latitude: float, longitude: float, radius_km: float) -> tuple[float, float, float, float]:
    """``(min_lat, max_lat, min_lng, max_lng)`` enclosing the disk.

    Longitudes may fall outside [-180, 180] when the disk crosses the
    antimeridian; callers normalise.  A disk reaching a pole spans every
    longitude.
    """
    angular = radius_km / EARTH_RADIUS_KM * _MARGIN
    lat_r = math.radians(latitude)
    min_lat = lat_r - angular
    max_lat = lat_r + angular

    if min_lat <= -math.pi / 2 or max_lat >= math.pi / 2 or angular >= math.pi / 2:
        return (
            max(-90.0, math.degrees(min_lat)),
            min(90.0, math.degrees(max_lat)),
            -180.0,
            180.0,
        )

    dlng = math.asin(min(1.0, math.sin(angular) / math.cos(lat_r)))
    dlng_deg = math.degrees(dlng)
    if dlng_deg >= 180.0:
        return math.degrees(min_lat), math.degrees(max_lat), -180.0, 180.0
    return (
        math.degrees(min_lat),
        math.degrees(max_lat),
        longitude - dlng_deg,
        longitude + dlng_deg,
    )


def _cell_reach_km(geohash: str) -> tuple[float, float, float]:
    """Centre of the cell and the farthest distance from it to a corner."""
    b = decode_bounds(geohash)
    c_lat = (b.min_lat + b.max_lat) / 2
    c_lng = (b.min_lng + b.max_lng) / 2
    reach = max(
        haversine_km(c_lat, c_lng, lat, lng)
        for lat in (b.min_lat, b.max_lat)
        for lng in (b.min_lng, b.max_lng)
    )
    return c_lat, c_lng, reach


def cover_circle(latitude: float, longitude: float, radius_km: float, precision: int) -> set[str]:
    """Geohash prefixes of length *precision* covering the disk around the point."""
    validate_point(latitude, longitude)
    center_hash = encode(latitude, longitude, precision)
    if radius_km <= 0:
        return {center_hash}

    min_lat, max_lat, min_lng, max_lng = bounding_box(latitude, longitude, radius_km)
    lat_step, lng_step = cell_size(precision)
    lat_step *= _SAMPLE_STEP_FRACTION
    lng_step *= _SAMPLE_STEP_FRACTION

    candidates: set[str] = set()
    for lat in _axis_samples(min_lat, max_lat, lat_step):
        for lng in _axis_samples(min_lng, max_lng, lng_step):
            candidates.add(encode(lat, _normalize_lng(lng), precision))

    prefixes = {center_hash}
    for cell in candidates:
        c_lat, c_lng, reach = _cell_reach_km(cell)
        if haversine_km(latitude, longitude, c_lat, c_lng) <= (radius_km + reach) * _MARGIN:
            prefixes.add(cell)
    return prefixes
