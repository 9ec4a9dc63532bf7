"""
VEIL - Geo-Anonymizer

Turns an exact coordinate into a bounded LocationRange whose radius depends
on the privacy level:

    public     0.1 km
    anonymous  1.0 km
    private   10.0 km

One degree of latitude is taken as 111 km; the longitude span is widened by
1/cos(lat). The published center is jittered by at most a quarter of the
radius on each axis, so the exact point stays inside the range while the
center does not reveal it.
"""

import logging
import math
import os
import random
import secrets
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple, Union

from engine.errors import InvalidSubmissionError

logger = logging.getLogger("veil.geo")

# ── Configuration ──────────────────────────────────────────────────────────────
KM_PER_DEGREE   = 111.0
POLAR_CLAMP_LAT = float(os.getenv("VEIL_POLAR_CLAMP_LAT", "89.9"))
JITTER_FRACTION = 0.5   # offset = uniform(-0.5, 0.5) * span * JITTER_FRACTION


class PrivacyLevel(str, Enum):
    PUBLIC    = "public"
    ANONYMOUS = "anonymous"
    PRIVATE   = "private"


ACCURACY_KM = {
    PrivacyLevel.PUBLIC:    0.1,
    PrivacyLevel.ANONYMOUS: 1.0,
    PrivacyLevel.PRIVATE:   10.0,
}


@dataclass(frozen=True)
class LocationRange:
    lat_range:   Tuple[float, float]
    lng_range:   Tuple[float, float]
    center_lat:  float
    center_lng:  float
    accuracy_km: float

    def contains(self, lat: float, lng: float) -> bool:
        return (
            self.lat_range[0] <= lat <= self.lat_range[1]
            and self.lng_range[0] <= lng <= self.lng_range[1]
        )

    def to_dict(self) -> dict:
        return {
            "latRange":   list(self.lat_range),
            "lngRange":   list(self.lng_range),
            "centerLat":  self.center_lat,
            "centerLng":  self.center_lng,
            "accuracyKm": self.accuracy_km,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "LocationRange":
        return cls(
            lat_range   = tuple(data["latRange"]),
            lng_range   = tuple(data["lngRange"]),
            center_lat  = data["centerLat"],
            center_lng  = data["centerLng"],
            accuracy_km = data["accuracyKm"],
        )


def parse_privacy_level(level: Union[str, PrivacyLevel]) -> PrivacyLevel:
    try:
        return PrivacyLevel(level)
    except ValueError:
        raise InvalidSubmissionError(
            f"Unknown privacy level {level!r}; expected one of "
            f"{[p.value for p in PrivacyLevel]}",
            field="privacy_level",
        )


def validate_coordinates(lat: float, lng: float) -> None:
    if not (math.isfinite(lat) and math.isfinite(lng)):
        raise InvalidSubmissionError("Coordinates must be finite numbers", field="location")
    if abs(lat) > 90.0:
        raise InvalidSubmissionError(f"Latitude out of range: {lat}", field="latitude")
    if abs(lng) > 180.0:
        raise InvalidSubmissionError(f"Longitude out of range: {lng}", field="longitude")


class GeoAnonymizer:

    def __init__(self, rng: Optional[random.Random] = None):
        self._rng = rng or secrets.SystemRandom()

    def anonymize(
        self,
        lat:   float,
        lng:   float,
        level: Union[str, PrivacyLevel] = PrivacyLevel.ANONYMOUS,
    ) -> LocationRange:
        level = parse_privacy_level(level)
        validate_coordinates(lat, lng)

        accuracy_km = ACCURACY_KM[level]
        lat_span    = accuracy_km / KM_PER_DEGREE

        # cos() collapses toward zero at the poles
        clamped_lat = max(-POLAR_CLAMP_LAT, min(POLAR_CLAMP_LAT, lat))
        lng_span    = accuracy_km / (KM_PER_DEGREE * math.cos(math.radians(clamped_lat)))

        lat_range = (max(-90.0, lat - lat_span), min(90.0, lat + lat_span))
        lng_range = (lng - lng_span, lng + lng_span)

        center_lat = lat + (self._rng.random() - 0.5) * lat_span * JITTER_FRACTION
        center_lng = lng + (self._rng.random() - 0.5) * lng_span * JITTER_FRACTION
        center_lat = max(lat_range[0], min(lat_range[1], center_lat))

        logger.debug(f"[GEO] Anonymized at level={level.value} (±{accuracy_km} km)")
        return LocationRange(
            lat_range   = lat_range,
            lng_range   = lng_range,
            center_lat  = center_lat,
            center_lng  = center_lng,
            accuracy_km = accuracy_km,
        )
