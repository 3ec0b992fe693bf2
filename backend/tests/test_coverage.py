"""Tests for precision planning and radius coverage."""

import random

import pytest

from bloodnode.errors import InvalidCoordinate
from bloodnode.services.coverage import bounding_box, choose_precision, cover_circle, haversine_km
from bloodnode.services.geohash import encode

from conftest import CENTER, offset_point


class TestChoosePrecision:

    @pytest.mark.parametrize("radius,expected", [
        (500, 3),
        (100, 3),
        (99.999, 4),
        (30, 4),
        (29.999, 6),
        (5, 6),
        (4.999, 6),
        (1, 6),
        (0.999, 7),
        (0.1, 7),
    ])
    def test_threshold_table(self, radius, expected):
        assert choose_precision(radius) == expected

    def test_monotone(self):
        radii = [0.5, 1, 2, 5, 10, 30, 50, 100, 200]
        precisions = [choose_precision(r) for r in radii]
        assert precisions == sorted(precisions, reverse=True)


class TestHaversine:

    def test_one_degree_of_longitude_at_equator(self):
        assert haversine_km(0, 0, 0, 1) == pytest.approx(111.19, abs=0.01)

    def test_zero_distance(self):
        assert haversine_km(*CENTER, *CENTER) == 0

    def test_symmetry(self):
        a, b = (31.95, 35.91), (32.55, 35.85)
        assert haversine_km(*a, *b) == pytest.approx(haversine_km(*b, *a))


def _assert_covers(lat, lng, radius_km, precision, samples=400, seed=7):
    prefixes = cover_circle(lat, lng, radius_km, precision)
    rng = random.Random(seed)
    for _ in range(samples):
        d = radius_km * rng.random() ** 0.5
        p_lat, p_lng = offset_point(lat, lng, d, rng.uniform(0, 360))
        assert encode(p_lat, p_lng, precision) in prefixes, (p_lat, p_lng, d)
    # Points just inside the rim in every direction
    for bearing in range(0, 360, 5):
        p_lat, p_lng = offset_point(lat, lng, radius_km * 0.999, bearing)
        assert encode(p_lat, p_lng, precision) in prefixes, (bearing,)
    return prefixes


class TestCoverCircle:

    @pytest.mark.parametrize("radius", [0.5, 1, 5, 10, 29, 30, 60, 100])
    def test_contains_center_cell(self, radius):
        precision = choose_precision(radius)
        assert encode(*CENTER, precision) in cover_circle(*CENTER, radius, precision)

    @pytest.mark.parametrize("radius", [0.5, 3, 10, 45, 100])
    def test_covers_every_point_in_disk(self, radius):
        _assert_covers(*CENTER, radius, choose_precision(radius))

    def test_prefixes_have_requested_length(self):
        assert {len(p) for p in cover_circle(*CENTER, 10, 6)} == {6}

    def test_stays_small(self):
        """No cell far outside the disk is included."""
        radius = 10
        prefixes = cover_circle(*CENTER, radius, 5)
        from bloodnode.services.geohash import decode
        for p in prefixes:
            c = decode(p)
            assert haversine_km(*CENTER, c.latitude, c.longitude) < radius + 10

    def test_crosses_antimeridian(self):
        prefixes = _assert_covers(0.0, 179.95, 20, 4)
        assert any(encode(0.0, -179.95, 4) == p for p in prefixes)

    def test_near_pole(self):
        _assert_covers(89.8, 10.0, 50, 4, samples=150)

    def test_zero_radius_is_center_only(self):
        assert cover_circle(*CENTER, 0, 6) == {encode(*CENTER, 6)}

    def test_invalid_center(self):
        with pytest.raises(InvalidCoordinate):
            cover_circle(95, 0, 10, 6)


class TestBoundingBox:

    def test_box_contains_disk(self):
        min_lat, max_lat, min_lng, max_lng = bounding_box(*CENTER, 25)
        for bearing in range(0, 360, 15):
            lat, lng = offset_point(*CENTER, 25, bearing)
            assert min_lat <= lat <= max_lat
            assert min_lng <= lng <= max_lng

    def test_polar_disk_spans_all_longitudes(self):
        _, max_lat, min_lng, max_lng = bounding_box(89.9, 0, 50)
        assert max_lat == 90.0
        assert (min_lng, max_lng) == (-180.0, 180.0)
