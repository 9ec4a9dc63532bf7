"""
VEIL - GeoAnonymizer Unit Tests
pytest test suite

Coverage:
  - Range contains the exact point at every privacy level
  - accuracy_km matches the level constant exactly
  - Center jitter stays within a quarter of the radius
  - Polar clamp keeps the longitude span finite
  - Invalid coordinates / levels are rejected
"""

import math
import os
import random
import sys

import pytest

# ── Path setup ────────────────────────────────────────────────────────────────
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from engine.errors import InvalidSubmissionError
from engine.geo_anonymizer import (
    ACCURACY_KM,
    KM_PER_DEGREE,
    GeoAnonymizer,
    LocationRange,
    PrivacyLevel,
)

POINTS = [
    (40.0, -74.0),
    (0.0, 0.0),
    (-33.8688, 151.2093),
    (89.95, 10.0),
    (-90.0, 180.0),
    (64.1466, -21.9426),
]


class TestContainment:

    def setup_method(self):
        self.geo = GeoAnonymizer(rng=random.Random(42))

    @pytest.mark.parametrize("level", list(PrivacyLevel))
    @pytest.mark.parametrize("lat,lng", POINTS)
    def test_range_contains_point(self, lat, lng, level):
        r = self.geo.anonymize(lat, lng, level)
        assert r.contains(lat, lng)
        assert r.lat_range[0] <= r.lat_range[1]
        assert r.lng_range[0] <= r.lng_range[1]

    @pytest.mark.parametrize("level,expected", [
        ("public", 0.1),
        ("anonymous", 1.0),
        ("private", 10.0),
    ])
    def test_accuracy_matches_level(self, level, expected):
        r = self.geo.anonymize(40.0, -74.0, level)
        assert r.accuracy_km == expected
        assert ACCURACY_KM[PrivacyLevel(level)] == expected

    def test_latitude_half_width(self):
        r = self.geo.anonymize(40.0, -74.0, PrivacyLevel.PRIVATE)
        assert r.lat_range[1] - 40.0 == pytest.approx(10.0 / KM_PER_DEGREE)

    def test_longitude_widens_with_latitude(self):
        equator = self.geo.anonymize(0.0, 0.0, "anonymous")
        north   = self.geo.anonymize(60.0, 0.0, "anonymous")
        eq_span = equator.lng_range[1] - equator.lng_range[0]
        n_span  = north.lng_range[1] - north.lng_range[0]
        assert n_span == pytest.approx(eq_span / math.cos(math.radians(60.0)))

    def test_latitude_range_clamped_at_pole(self):
        r = self.geo.anonymize(90.0, 0.0, "private")
        assert r.lat_range[1] == 90.0

    def test_polar_clamp_keeps_span_finite(self):
        r = self.geo.anonymize(90.0, 0.0, "anonymous")
        assert math.isfinite(r.lng_range[0]) and math.isfinite(r.lng_range[1])


class TestCenterJitter:

    def test_center_within_quarter_radius(self):
        geo = GeoAnonymizer(rng=random.Random(7))
        for _ in range(200):
            r = geo.anonymize(40.0, -74.0, "anonymous")
            lat_span = 1.0 / KM_PER_DEGREE
            assert abs(r.center_lat - 40.0) <= lat_span * 0.25 + 1e-12
            assert r.contains(r.center_lat, r.center_lng)

    def test_seeded_rng_is_reproducible(self):
        a = GeoAnonymizer(rng=random.Random(3)).anonymize(51.5, -0.12, "public")
        b = GeoAnonymizer(rng=random.Random(3)).anonymize(51.5, -0.12, "public")
        assert a == b

    def test_default_rng_produces_varied_centers(self):
        geo = GeoAnonymizer()
        centers = {geo.anonymize(51.5, -0.12, "private").center_lat for _ in range(10)}
        assert len(centers) > 1


class TestValidation:

    def setup_method(self):
        self.geo = GeoAnonymizer()

    @pytest.mark.parametrize("lat,lng", [
        (float("nan"), 0.0),
        (0.0, float("inf")),
        (90.5, 0.0),
        (0.0, -180.5),
    ])
    def test_invalid_coordinates(self, lat, lng):
        with pytest.raises(InvalidSubmissionError):
            self.geo.anonymize(lat, lng, "anonymous")

    def test_unknown_level(self):
        with pytest.raises(InvalidSubmissionError) as exc:
            self.geo.anonymize(10.0, 10.0, "secret")
        assert exc.value.field == "privacy_level"


class TestSerialization:

    def test_dict_round_trip(self):
        r = GeoAnonymizer(rng=random.Random(1)).anonymize(12.5, 99.1, "private")
        assert LocationRange.from_dict(r.to_dict()) == r
