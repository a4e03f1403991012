"""Per-session GPS smoothing: a scalar-covariance Kalman-style filter.

One PositionSmoother tracks one session. Each raw fix is blended with a
constant-velocity prediction, weighted by the running error covariance, and
scored 0-100 for trust from three signals:

- accuracy of the blended estimate (50%)
- recency/accuracy weight of the new fix (30%)
- plausibility of the implied movement against walking speed (20%)

Sensor noise is expected, so nothing here raises: stale gaps, clock skew and
malformed fixes all reset the filter instead.
"""

import logging
import math
from dataclasses import dataclass, replace
from typing import Optional

from geo import FilteredPosition, PositionFix, clamp, haversine_m

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

PROCESS_NOISE = 1e-5
MEASUREMENT_NOISE = 1e-3
INITIAL_COVARIANCE = 1.0

MAX_GAP_S = 30.0                 # larger gaps are treated as a discontinuity
MIN_INITIAL_CONFIDENCE = 40
MAX_WALKING_SPEED_MS = 2.0       # movement-score ceiling
VELOCITY_SMOOTHING = 0.8         # share of the previous velocity kept per update
RECENCY_DECAY_S = 10.0
ACCURACY_WEIGHT_SCALE_M = 20.0


@dataclass(frozen=True)
class FilterState:
    lat: float
    lng: float
    accuracy_m: float
    timestamp: int
    velocity_lat: float = 0.0  # degrees per second
    velocity_lng: float = 0.0
    covariance: float = INITIAL_COVARIANCE


def initial_confidence(accuracy_m: float) -> int:
    return int(clamp(max(MIN_INITIAL_CONFIDENCE, 100 - accuracy_m)))


class PositionSmoother:
    """Turns one session's noisy fixes into a smoothed trajectory."""

    def __init__(self, max_gap_s: float = MAX_GAP_S):
        self.max_gap_s = max_gap_s
        self._state: Optional[FilterState] = None

    @property
    def state(self) -> Optional[FilterState]:
        return self._state

    def reset(self):
        self._state = None

    def update(self, obs: PositionFix) -> FilteredPosition:
        if not obs.is_valid():
            logger.debug("Discarding malformed fix %s; filter reset", obs)
            self.reset()
            return FilteredPosition(
                lat=obs.lat, lng=obs.lng, accuracy_m=obs.accuracy_m,
                confidence=0, source="raw", timestamp=obs.timestamp,
            )

        if self._state is None:
            return self._initialize(obs)

        dt = (obs.timestamp - self._state.timestamp) / 1000.0
        if dt <= 0 or dt > self.max_gap_s:
            logger.debug("Discontinuity of %.1fs; re-initialising filter", dt)
            self.reset()
            return self._initialize(obs)

        return self._fuse(obs, dt)

    def _initialize(self, obs: PositionFix) -> FilteredPosition:
        self._state = FilterState(
            lat=obs.lat, lng=obs.lng, accuracy_m=obs.accuracy_m, timestamp=obs.timestamp,
        )
        return FilteredPosition(
            lat=obs.lat,
            lng=obs.lng,
            accuracy_m=obs.accuracy_m,
            confidence=initial_confidence(obs.accuracy_m),
            source="raw",
            timestamp=obs.timestamp,
        )

    def _fuse(self, obs: PositionFix, dt: float) -> FilteredPosition:
        prev = self._state

        # Predict
        predicted_lat = prev.lat + prev.velocity_lat * dt
        predicted_lng = prev.lng + prev.velocity_lng * dt
        covariance = prev.covariance + PROCESS_NOISE * dt

        # Correct
        gain = covariance / (covariance + MEASUREMENT_NOISE)
        innovation_lat = obs.lat - predicted_lat
        innovation_lng = obs.lng - predicted_lng
        filtered_lat = predicted_lat + gain * innovation_lat
        filtered_lng = predicted_lng + gain * innovation_lng

        velocity_lat = (VELOCITY_SMOOTHING * prev.velocity_lat
                        + (1 - VELOCITY_SMOOTHING) * (innovation_lat / dt * gain))
        velocity_lng = (VELOCITY_SMOOTHING * prev.velocity_lng
                        + (1 - VELOCITY_SMOOTHING) * (innovation_lng / dt * gain))
        covariance = (1 - gain) * covariance

        weight = math.exp(-dt / RECENCY_DECAY_S) / (1 + obs.accuracy_m / ACCURACY_WEIGHT_SCALE_M)
        filtered_accuracy = obs.accuracy_m * (1 - weight) + prev.accuracy_m * weight

        accuracy_score = max(0.0, 100 - filtered_accuracy * 2)
        consistency_score = weight * 100
        movement_score = _movement_score(prev, filtered_lat, filtered_lng, dt)
        confidence = round(accuracy_score * 0.5 + consistency_score * 0.3 + movement_score * 0.2)

        self._state = replace(
            prev,
            lat=filtered_lat,
            lng=filtered_lng,
            accuracy_m=filtered_accuracy,
            timestamp=obs.timestamp,
            velocity_lat=velocity_lat,
            velocity_lng=velocity_lng,
            covariance=covariance,
        )

        return FilteredPosition(
            lat=filtered_lat,
            lng=filtered_lng,
            accuracy_m=filtered_accuracy,
            confidence=int(clamp(confidence)),
            source="fused",
            timestamp=obs.timestamp,
        )


def _movement_score(prev: FilterState, lat: float, lng: float, dt: float) -> float:
    """100 for no movement, 50 at walking speed, 0 beyond it (impossible jump)."""
    distance = haversine_m(prev.lat, prev.lng, lat, lng)
    ceiling = dt * MAX_WALKING_SPEED_MS
    if distance > ceiling:
        return 0.0
    return max(0.0, 100 - (distance / ceiling) * 50)
