# tests/test_geo.py
"""
Tests for the geo helpers (distance and ETA).
"""
from __future__ import annotations

import pytest

from techdispatch.core.dispatch.geo import (
    distance_between,
    estimate_eta,
    format_eta,
    haversine_km,
)
from techdispatch.core.domain import GeoPoint


DELHI = (28.6139, 77.2090)
MUMBAI = (19.0760, 72.8777)
BENGALURU = (12.9716, 77.5946)


class TestHaversine:
    @pytest.mark.parametrize("a,b", [
        (DELHI, MUMBAI),
        (MUMBAI, BENGALURU),
        ((0.0, 0.0), (-33.8688, 151.2093)),
    ])
    def test_symmetric(self, a, b):
        assert haversine_km(*a, *b) == pytest.approx(haversine_km(*b, *a))

    def test_same_point_is_zero(self):
        assert haversine_km(*DELHI, *DELHI) == 0.0

    def test_delhi_to_mumbai(self):
        assert haversine_km(*DELHI, *MUMBAI) == pytest.approx(1148, abs=10)

    def test_one_degree_of_latitude(self):
        assert haversine_km(10.0, 20.0, 11.0, 20.0) == pytest.approx(111.19, abs=0.01)

    def test_distance_between_unknown_point(self):
        assert distance_between(GeoPoint(*DELHI), None) is None
        assert distance_between(None, GeoPoint(*DELHI)) is None

    def test_distance_between_points(self):
        d = distance_between(GeoPoint(*DELHI), GeoPoint(*MUMBAI))
        assert d == pytest.approx(haversine_km(*DELHI, *MUMBAI))


class TestEta:
    def test_zero_distance(self):
        eta = estimate_eta(0)
        assert eta.minutes == 0
        assert eta.text == "0 mins"

    def test_fifteen_km_is_half_hour(self):
        eta = estimate_eta(15)
        assert eta.minutes == 30
        assert eta.text == "30 mins"

    def test_thirty_km_is_one_hour(self):
        eta = estimate_eta(30)
        assert eta.minutes == 60
        assert eta.text == "1h 0m"

    def test_rounds_up(self):
        assert estimate_eta(0.1).minutes == 1

    def test_custom_speed(self):
        assert estimate_eta(30, speed_kmh=60).minutes == 30

    def test_format_over_an_hour(self):
        assert format_eta(125) == "2h 5m"
        assert estimate_eta(45).text == "1h 30m"

    def test_format_under_an_hour(self):
        assert format_eta(59) == "59 mins"
