"""Geo primitives shared by the trust engine: position types and haversine math."""

import math
from dataclasses import asdict, dataclass

EARTH_RADIUS_M = 6_371_000
METERS_PER_DEGREE_LAT = 111_195.0


def _is_sane(lat, lng, accuracy_m, timestamp) -> bool:
    """Finite values, coordinates in WGS-84 range, non-negative accuracy."""
    values = (lat, lng, accuracy_m, timestamp)
    if not all(isinstance(v, (int, float)) and math.isfinite(v) for v in values):
        return False
    return -90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0 and accuracy_m >= 0


@dataclass(frozen=True)
class PositionFix:
    """A raw sensor observation. ``timestamp`` is Unix epoch milliseconds."""

    lat: float
    lng: float
    accuracy_m: float
    timestamp: int

    def is_valid(self) -> bool:
        return _is_sane(self.lat, self.lng, self.accuracy_m, self.timestamp)


@dataclass(frozen=True)
class FilteredPosition:
    """A smoothed position estimate with a 0-100 trust score."""

    lat: float
    lng: float
    accuracy_m: float
    confidence: int
    source: str  # "raw", "fused" or "cached"
    timestamp: int

    def is_valid(self) -> bool:
        return _is_sane(self.lat, self.lng, self.accuracy_m, self.timestamp)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class GeofenceTarget:
    """A circular store/place area. Strict targets get the high-value policy."""

    id: str
    name: str
    lat: float
    lng: float
    radius_m: float
    strict_mode: bool = False


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Distance in metres between two WGS-84 points."""
    rlat1, rlat2 = math.radians(lat1), math.radians(lat2)
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)
    a = math.sin(dlat / 2) ** 2 + math.cos(rlat1) * math.cos(rlat2) * math.sin(dlon / 2) ** 2
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def distance_between(a, b) -> float:
    """Haversine distance between any two objects carrying ``lat``/``lng``."""
    return haversine_m(a.lat, a.lng, b.lat, b.lng)


def offset_m(lat: float, lng: float, north_m: float = 0.0, east_m: float = 0.0) -> tuple[float, float]:
    """Shift a point by a small number of metres (flat-earth approximation)."""
    dlat = north_m / METERS_PER_DEGREE_LAT
    dlng = east_m / (METERS_PER_DEGREE_LAT * math.cos(math.radians(lat)))
    return lat + dlat, lng + dlng


def clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))
