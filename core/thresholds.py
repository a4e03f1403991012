"""Online tuning of presence-validation thresholds from recorded outcomes.

Callers report whether each validation turned out to be legitimate. The
learner keeps a capped log of those outcomes and uses it in two ways:

1. Per store, an EMA pattern (accuracy, confidence, success rate), the hours
   that reliably succeed, and a hill-climbed optimal radius. These give a
   context-adjusted config on read.
2. Globally, every Nth record re-scores a small grid of candidate configs on
   the most recent outcomes and nudges the live config towards the best one.

Reads never lock: the live config is an immutable value that writers replace
wholesale.
"""

import datetime
import logging
import threading
from concurrent.futures import Executor
from dataclasses import asdict, dataclass, field, replace
from typing import Optional

from geo import clamp
from schemas import LearnerSnapshot
from storage import InMemoryPatternStore, PatternStore

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

MAX_HISTORY = 10_000
TRIMMED_HISTORY = 5_000
MIN_DATA_POINTS = 100
LEARNING_RATE = 0.1
OPTIMIZE_EVERY = 50
OPTIMIZATION_WINDOW = 500

EMA_ALPHA = 0.1
PEAK_MIN_SAMPLES = 10
PEAK_MIN_SUCCESS_RATE = 0.7

BASELINE_RADIUS_M = 120.0
MIN_RADIUS_M = 80.0
MAX_RADIUS_M = 200.0
RADIUS_GROWTH = 1.1
RADIUS_SHRINK = 0.95
LOW_SUCCESS_RATE = 0.7
HIGH_SUCCESS_RATE = 0.9

BASELINE_ACCURACY_M = 20.0
PEAK_ALLOW_FACTOR = 1.1
MAX_PEAK_ALLOW = 90.0
LOW_SUCCESS_WARN_FACTOR = 0.8
MIN_RELAXED_WARN = 30.0

CONFIDENCE_CANDIDATES = (60, 65, 70, 75, 80)
ACCURACY_CANDIDATES = (15, 20, 25, 30)


@dataclass(frozen=True)
class ConfidenceThreshold:
    allow: float = 70.0
    warn: float = 40.0


@dataclass(frozen=True)
class AccuracyThreshold:
    excellent: float = 10.0
    good: float = 20.0
    acceptable: float = 50.0


@dataclass(frozen=True)
class ThresholdConfig:
    confidence_threshold: ConfidenceThreshold = field(default_factory=ConfidenceThreshold)
    accuracy_threshold: AccuracyThreshold = field(default_factory=AccuracyThreshold)
    radius_multiplier: float = 1.0

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "ThresholdConfig":
        return cls(
            confidence_threshold=ConfidenceThreshold(**data["confidence_threshold"]),
            accuracy_threshold=AccuracyThreshold(**data["accuracy_threshold"]),
            radius_multiplier=data.get("radius_multiplier", 1.0),
        )

    def blend(self, other: "ThresholdConfig", rate: float) -> "ThresholdConfig":
        """Move ``rate`` of the way towards ``other``; the radius multiplier is kept."""
        def mix(a, b):
            return a * (1 - rate) + b * rate

        return ThresholdConfig(
            confidence_threshold=ConfidenceThreshold(
                allow=mix(self.confidence_threshold.allow, other.confidence_threshold.allow),
                warn=mix(self.confidence_threshold.warn, other.confidence_threshold.warn),
            ),
            accuracy_threshold=AccuracyThreshold(
                excellent=mix(self.accuracy_threshold.excellent, other.accuracy_threshold.excellent),
                good=mix(self.accuracy_threshold.good, other.accuracy_threshold.good),
                acceptable=mix(self.accuracy_threshold.acceptable, other.accuracy_threshold.acceptable),
            ),
            radius_multiplier=self.radius_multiplier,
        )


DEFAULT_CONFIG = ThresholdConfig()


@dataclass(frozen=True)
class RegionalPattern:
    store_id: str
    avg_accuracy: float
    avg_confidence: float
    success_rate: float
    peak_hours: tuple[int, ...] = ()
    optimal_radius: float = BASELINE_RADIUS_M

    def to_dict(self) -> dict:
        data = asdict(self)
        data["peak_hours"] = list(self.peak_hours)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "RegionalPattern":
        return cls(
            store_id=data["store_id"],
            avg_accuracy=data["avg_accuracy"],
            avg_confidence=data["avg_confidence"],
            success_rate=data["success_rate"],
            peak_hours=tuple(data.get("peak_hours", ())),
            optimal_radius=data.get("optimal_radius", BASELINE_RADIUS_M),
        )


@dataclass(frozen=True)
class ValidationRecord:
    """One validation attempt and whether it proved legitimate."""

    timestamp: int  # epoch milliseconds
    hour: int
    day_of_week: int  # 0 = Sunday
    accuracy: float
    confidence: float
    success: bool
    store_id: str
    lat: float
    lng: float
    weather: Optional[str] = None

    @classmethod
    def from_outcome(cls, position, store_id: str, success: bool, weather: Optional[str] = None):
        """Build a record from a FilteredPosition, deriving hour and weekday in UTC."""
        hour, day_of_week = time_context(position.timestamp)
        return cls(
            timestamp=position.timestamp,
            hour=hour,
            day_of_week=day_of_week,
            accuracy=position.accuracy_m,
            confidence=position.confidence,
            success=success,
            store_id=store_id,
            lat=position.lat,
            lng=position.lng,
            weather=weather,
        )


@dataclass(frozen=True)
class ThresholdContext:
    store_id: str
    hour: int
    day_of_week: int
    weather: Optional[str] = None


def time_context(timestamp_ms: int) -> tuple[int, int]:
    """(hour, day_of_week with 0 = Sunday) of an epoch-millisecond timestamp, in UTC."""
    moment = datetime.datetime.fromtimestamp(timestamp_ms / 1000, tz=datetime.timezone.utc)
    return moment.hour, moment.isoweekday() % 7


def evaluate_config(config: ThresholdConfig, data: list[ValidationRecord]) -> float:
    """Score how well ``config`` would have separated successes from failures.

    Returns ``0.3 * accuracy + 0.7 * F1`` over the confusion matrix of
    "would allow" against the recorded outcome.
    """
    tp = fp = tn = fn = 0
    for record in data:
        would_allow = (
            record.confidence >= config.confidence_threshold.allow
            and record.accuracy <= config.accuracy_threshold.acceptable
        )
        if would_allow and record.success:
            tp += 1
        elif would_allow:
            fp += 1
        elif not record.success:
            tn += 1
        else:
            fn += 1

    total = tp + fp + tn + fn
    if total == 0:
        return 0.0

    accuracy = (tp + tn) / total
    precision = tp / ((tp + fp) or 1)
    recall = tp / ((tp + fn) or 1)
    f1 = 2 * precision * recall / ((precision + recall) or 1)
    return accuracy * 0.3 + f1 * 0.7


def candidate_configs() -> list[ThresholdConfig]:
    return [
        ThresholdConfig(
            confidence_threshold=ConfidenceThreshold(allow=conf, warn=conf - 30),
            accuracy_threshold=AccuracyThreshold(excellent=acc * 0.5, good=acc, acceptable=acc * 2),
            radius_multiplier=1.0,
        )
        for conf in CONFIDENCE_CANDIDATES
        for acc in ACCURACY_CANDIDATES
    ]


class ThresholdLearner:
    """Feedback loop from validation outcomes to the thresholds the validator uses."""

    evaluate_config = staticmethod(evaluate_config)

    def __init__(
        self,
        initial_config: Optional[ThresholdConfig] = None,
        pattern_store: Optional[PatternStore] = None,
        min_data_points: int = MIN_DATA_POINTS,
        learning_rate: float = LEARNING_RATE,
        optimize_every: int = OPTIMIZE_EVERY,
        executor: Optional[Executor] = None,
    ):
        self._config = initial_config or DEFAULT_CONFIG
        self.patterns = pattern_store or InMemoryPatternStore()
        self.min_data_points = min_data_points
        self.learning_rate = learning_rate
        self.optimize_every = optimize_every
        self.executor = executor
        self._history: list[ValidationRecord] = []
        self._recorded = 0
        self._write_lock = threading.Lock()

    @property
    def data_size(self) -> int:
        return len(self._history)

    # -----------------------------------------------------------------------
    # Writes
    # -----------------------------------------------------------------------

    def record_validation(self, record: ValidationRecord):
        with self._write_lock:
            self._history.append(record)
            if len(self._history) > MAX_HISTORY:
                self._history = self._history[-TRIMMED_HISTORY:]
            self._update_pattern(record)
            self._recorded += 1
            due = self._recorded % self.optimize_every == 0

        if due:
            if self.executor is not None:
                future = self.executor.submit(self.optimize_thresholds)
                future.add_done_callback(_log_optimisation_failure)
            else:
                self.optimize_thresholds()

    def _update_pattern(self, record: ValidationRecord):
        outcome = 1.0 if record.success else 0.0
        stored = self.patterns.get(record.store_id)
        if stored is None:
            pattern = RegionalPattern(
                store_id=record.store_id,
                avg_accuracy=record.accuracy,
                avg_confidence=record.confidence,
                success_rate=outcome,
            )
            self.patterns.put(record.store_id, pattern.to_dict())
            return

        pattern = RegionalPattern.from_dict(stored)
        success_rate = _ema(pattern.success_rate, outcome)
        pattern = replace(
            pattern,
            avg_accuracy=_ema(pattern.avg_accuracy, record.accuracy),
            avg_confidence=_ema(pattern.avg_confidence, record.confidence),
            success_rate=success_rate,
        )

        if record.hour not in pattern.peak_hours:
            samples = [
                r for r in self._history
                if r.store_id == record.store_id and r.hour == record.hour
            ]
            if len(samples) > PEAK_MIN_SAMPLES:
                hour_success = sum(1 for r in samples if r.success) / len(samples)
                if hour_success > PEAK_MIN_SUCCESS_RATE:
                    pattern = replace(pattern, peak_hours=pattern.peak_hours + (record.hour,))

        if success_rate < LOW_SUCCESS_RATE:
            pattern = replace(pattern, optimal_radius=min(MAX_RADIUS_M, pattern.optimal_radius * RADIUS_GROWTH))
        elif success_rate > HIGH_SUCCESS_RATE:
            pattern = replace(pattern, optimal_radius=max(MIN_RADIUS_M, pattern.optimal_radius * RADIUS_SHRINK))

        self.patterns.put(record.store_id, pattern.to_dict())

    def optimize_thresholds(self):
        """Grid-search the candidate configs on recent outcomes and damp the winner in."""
        with self._write_lock:
            if len(self._history) < self.min_data_points:
                return
            recent = self._history[-OPTIMIZATION_WINDOW:]
            current = self._config

            best, best_score = current, evaluate_config(current, recent)
            for candidate in candidate_configs():
                score = evaluate_config(candidate, recent)
                if score > best_score:
                    best, best_score = candidate, score

            self._config = current.blend(best, self.learning_rate)
            logger.info(
                "Thresholds optimised on %d records: score=%.3f allow=%.1f warn=%.1f acceptable=%.1f",
                len(recent), best_score,
                self._config.confidence_threshold.allow,
                self._config.confidence_threshold.warn,
                self._config.accuracy_threshold.acceptable,
            )

    def reset(self):
        with self._write_lock:
            self._history = []
            self._recorded = 0
            self.patterns.clear()

    # -----------------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------------

    def get_current_config(self) -> ThresholdConfig:
        return self._config

    def get_regional_patterns(self) -> list[RegionalPattern]:
        return [RegionalPattern.from_dict(p) for p in self.patterns.values()]

    def get_optimized_threshold(self, context: ThresholdContext) -> ThresholdConfig:
        config = self._config
        stored = self.patterns.get(context.store_id)
        if stored is None or len(self._history) < self.min_data_points:
            return config

        pattern = RegionalPattern.from_dict(stored)
        allow = config.confidence_threshold.allow
        warn = config.confidence_threshold.warn

        if context.hour in pattern.peak_hours:
            allow = max(allow, min(MAX_PEAK_ALLOW, allow * PEAK_ALLOW_FACTOR))
        if pattern.success_rate < LOW_SUCCESS_RATE:
            warn = min(warn, max(MIN_RELAXED_WARN, warn * LOW_SUCCESS_WARN_FACTOR))

        accuracy_factor = max(0.0, pattern.avg_accuracy) / BASELINE_ACCURACY_M
        return ThresholdConfig(
            confidence_threshold=ConfidenceThreshold(allow=clamp(allow), warn=clamp(warn)),
            accuracy_threshold=AccuracyThreshold(
                excellent=config.accuracy_threshold.excellent * accuracy_factor,
                good=config.accuracy_threshold.good * accuracy_factor,
                acceptable=config.accuracy_threshold.acceptable * accuracy_factor,
            ),
            radius_multiplier=pattern.optimal_radius / BASELINE_RADIUS_M,
        )

    # -----------------------------------------------------------------------
    # Persistence hooks
    # -----------------------------------------------------------------------

    def export_data(self) -> dict:
        snapshot = LearnerSnapshot(
            config=self._config.to_dict(),
            patterns=[p.to_dict() for p in self.get_regional_patterns()],
            data_size=len(self._history),
        )
        return snapshot.model_dump()

    def import_data(self, data: dict):
        snapshot = LearnerSnapshot.model_validate(data)
        with self._write_lock:
            self._config = ThresholdConfig.from_dict(snapshot.config.model_dump())
            self.patterns.replace_all({p.store_id: p.model_dump() for p in snapshot.patterns})
        logger.info("Imported threshold learner state (%d patterns)", len(snapshot.patterns))


def _log_optimisation_failure(future):
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.error("Background threshold optimisation failed", exc_info=exc)


def _ema(previous: float, value: float) -> float:
    return previous * (1 - EMA_ALPHA) + value * EMA_ALPHA
