"""Presence validation: classify a smoothed position against store geofences.

Every function here is pure. The thresholds for regular targets come from a
ThresholdConfig (usually the learner's context-adjusted one); strict targets
use a fixed, tighter policy meant for high-value offers.
"""

import logging
from dataclasses import asdict, dataclass
from typing import Optional

from geo import FilteredPosition, GeofenceTarget, clamp, distance_between, haversine_m
from thresholds import DEFAULT_CONFIG, ThresholdConfig

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

STRICT_ALLOW_CONFIDENCE = 80
STRICT_WARN_CONFIDENCE = 60
STRICT_WARN_RADIUS_FACTOR = 1.5
WARN_RADIUS_FACTOR = 2.0

WALKING_SPEED_MS = 1.4

MESSAGES = {
    "en": {
        "confirmed": "Location confirmed. You can use this offer.",
        "strict_low_accuracy": "Location accuracy is low. Move closer and try again.",
        "strict_too_far": "You are not near the store. Try again once you arrive.",
        "weak_signal": "GPS signal is weak. Try moving outdoors or near a window.",
        "remaining": "About {meters}m to the store.",
        "too_far_m": "You are {meters}m away from the store.",
        "too_far_km": "You are {km}km away from the store.",
        "enable_gps": "Please enable GPS.",
        "accuracy": "Accuracy {meters}m",
        "eta_under_minute": "under 1 min",
        "eta_minutes": "{minutes} min",
        "eta_hours": "{hours} h",
        "eta_hours_minutes": "{hours} h {minutes} min",
    },
    "ko": {
        "confirmed": "위치 확인됨. 체험권을 사용할 수 있습니다.",
        "strict_low_accuracy": "위치 정확도가 낮습니다. 가까이 이동 후 다시 시도하세요.",
        "strict_too_far": "매장 근처가 아닙니다. 매장에 도착 후 시도하세요.",
        "weak_signal": "GPS 신호가 약합니다. 실외나 창가로 이동해보세요.",
        "remaining": "매장까지 약 {meters}m 남았습니다.",
        "too_far_m": "매장까지 {meters}m 떨어져 있습니다.",
        "too_far_km": "매장까지 {km}km 떨어져 있습니다.",
        "enable_gps": "GPS를 활성화해주세요.",
        "accuracy": "정확도 {meters}m",
        "eta_under_minute": "1분 이내",
        "eta_minutes": "{minutes}분",
        "eta_hours": "{hours}시간",
        "eta_hours_minutes": "{hours}시간 {minutes}분",
    },
}


def _message(locale: str, key: str, **kwargs) -> str:
    catalog = MESSAGES.get(locale, MESSAGES["en"])
    return catalog[key].format(**kwargs)


@dataclass(frozen=True)
class ValidationResult:
    status: str  # "allow", "warn" or "block"
    distance_m: int
    confidence: int
    recommendation: str

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class GPSQuality:
    level: str  # "excellent", "good", "acceptable" or "poor"
    description: str


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def validate(
    position: FilteredPosition,
    target: GeofenceTarget,
    config: Optional[ThresholdConfig] = None,
    locale: str = "en",
) -> ValidationResult:
    """Classify one position against one target as allow, warn or block.

    The position's accuracy is credited towards the radius for the allow
    decision (``effective distance = distance - accuracy``), while the warn
    band is measured on the raw distance. A malformed position (non-finite or
    out-of-range values) is blocked with distance -1.
    """
    if not position.is_valid():
        logger.debug("Blocking malformed position for target=%s", target.id)
        return ValidationResult(
            status="block",
            distance_m=-1,
            confidence=0,
            recommendation=_message(locale, "weak_signal"),
        )

    distance = distance_between(position, target)
    effective_distance = max(0.0, distance - position.accuracy_m)
    confidence = position.confidence

    if target.strict_mode:
        radius = target.radius_m
        if confidence >= STRICT_ALLOW_CONFIDENCE and effective_distance <= radius:
            status, key = "allow", "confirmed"
        elif confidence >= STRICT_WARN_CONFIDENCE and distance <= radius * STRICT_WARN_RADIUS_FACTOR:
            status, key = "warn", "strict_low_accuracy"
        else:
            status, key = "block", "strict_too_far"
        recommendation = _message(locale, key)
    else:
        config = config or DEFAULT_CONFIG
        radius = target.radius_m * config.radius_multiplier
        if confidence >= config.confidence_threshold.allow and effective_distance <= radius:
            status = "allow"
            recommendation = _message(locale, "confirmed")
        elif confidence >= config.confidence_threshold.warn and distance <= radius * WARN_RADIUS_FACTOR:
            status = "warn"
            if position.accuracy_m > config.accuracy_threshold.acceptable:
                recommendation = _message(locale, "weak_signal")
            else:
                recommendation = _message(locale, "remaining", meters=round(effective_distance))
        else:
            status = "block"
            if distance > 1000:
                recommendation = _message(locale, "too_far_km", km=f"{distance / 1000:.1f}")
            else:
                recommendation = _message(locale, "too_far_m", meters=round(distance))

    logger.debug(
        "Validated target=%s status=%s distance=%.0fm confidence=%d",
        target.id, status, distance, confidence,
    )
    return ValidationResult(
        status=status,
        distance_m=round(distance),
        confidence=confidence,
        recommendation=recommendation,
    )


def pre_validate_batch(
    position: Optional[FilteredPosition],
    targets: list[GeofenceTarget],
    config: Optional[ThresholdConfig] = None,
    locale: str = "en",
) -> dict[str, ValidationResult]:
    """Validate one position against many targets, keyed by target id."""
    if position is None:
        return {
            t.id: ValidationResult(
                status="warn",
                distance_m=-1,
                confidence=0,
                recommendation=_message(locale, "enable_gps"),
            )
            for t in targets
        }
    return {t.id: validate(position, t, config, locale) for t in targets}


def should_revalidate(
    old: FilteredPosition,
    new: FilteredPosition,
    threshold_meters: float = 10,
    threshold_seconds: float = 30,
) -> bool:
    """True once the user has moved or enough time has passed to distrust a cached result."""
    if not (old.is_valid() and new.is_valid()):
        return True
    moved = distance_between(old, new)
    elapsed = (new.timestamp - old.timestamp) / 1000
    return moved > threshold_meters or elapsed > threshold_seconds


def is_within_geofence(
    position: FilteredPosition, center_lat: float, center_lng: float, radius_m: float,
) -> tuple[bool, float, float]:
    """Lenient containment check that widens the radius by the fix's accuracy.

    Returns (inside, distance_m, confidence) where confidence shrinks as the
    accuracy approaches the radius.
    """
    if not position.is_valid():
        return False, -1.0, 0.0
    distance = haversine_m(position.lat, position.lng, center_lat, center_lng)
    inside = distance <= radius_m + position.accuracy_m
    if radius_m <= 0:
        return inside, distance, 0.0
    confidence = clamp(100 - position.accuracy_m / radius_m * 100)
    return inside, distance, confidence


# ---------------------------------------------------------------------------
# Display helpers
# ---------------------------------------------------------------------------

def get_gps_quality(
    accuracy: float, config: Optional[ThresholdConfig] = None, locale: str = "en",
) -> GPSQuality:
    thresholds = (config or DEFAULT_CONFIG).accuracy_threshold
    if accuracy <= thresholds.excellent:
        level = "excellent"
    elif accuracy <= thresholds.good:
        level = "good"
    elif accuracy <= thresholds.acceptable:
        level = "acceptable"
    else:
        level = "poor"
    return GPSQuality(level=level, description=_message(locale, "accuracy", meters=round(accuracy)))


def calculate_walking_eta(distance_m: float) -> int:
    """Walking time in seconds at an average 1.4 m/s."""
    return round(max(0.0, distance_m) / WALKING_SPEED_MS)


def format_eta(seconds: int, locale: str = "en") -> str:
    if seconds < 60:
        return _message(locale, "eta_under_minute")
    if seconds < 3600:
        return _message(locale, "eta_minutes", minutes=round(seconds / 60))
    hours = seconds // 3600
    minutes = round((seconds % 3600) / 60)
    if minutes > 0:
        return _message(locale, "eta_hours_minutes", hours=hours, minutes=minutes)
    return _message(locale, "eta_hours", hours=hours)
