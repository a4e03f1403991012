"""Wiring of the trust engine: raw fix in, smoothed position + verdicts out.

Pipeline per fix (see TrustVerifier.verify):
1. Smooth the fix with the session's PositionSmoother
2. Score the raw fix for spoofing with the shared FraudDetector
3. Ask the ThresholdLearner for the target's context-adjusted config
4. Classify presence with geofence.validate

The caller later reports whether the attempt was legitimate through
record_outcome, which feeds the learner. Combining the two verdicts into a
final grant/deny is left to the caller.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session, sessionmaker

from config import load_tunables
from geo import FilteredPosition, GeofenceTarget, PositionFix
from geofence import ValidationResult, validate
from smoothing import PositionSmoother
from spoofing import AnomalyScore, FraudDetector
from storage import SqlHistoryStore, SqlPatternStore, SqlUserFlagStore
from thresholds import ThresholdContext, ThresholdLearner, ValidationRecord, time_context

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Verification:
    session_id: str
    user_id: str
    target_id: str
    position: FilteredPosition
    validation: ValidationResult
    anomaly: AnomalyScore

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "user_id": self.user_id,
            "target_id": self.target_id,
            "position": self.position.to_dict(),
            "validation": self.validation.to_dict(),
            "anomaly": self.anomaly.to_dict(),
        }


class TrustVerifier:
    def __init__(
        self,
        detector: Optional[FraudDetector] = None,
        learner: Optional[ThresholdLearner] = None,
        max_gap_s: float = 30.0,
        locale: str = "en",
    ):
        self.detector = detector or FraudDetector()
        self.learner = learner or ThresholdLearner()
        self.max_gap_s = max_gap_s
        self.locale = locale
        self._smoothers: dict[str, PositionSmoother] = {}
        self._sessions_lock = threading.Lock()

    def smoother_for(self, session_id: str) -> PositionSmoother:
        with self._sessions_lock:
            smoother = self._smoothers.get(session_id)
            if smoother is None:
                smoother = self._smoothers[session_id] = PositionSmoother(max_gap_s=self.max_gap_s)
            return smoother

    def end_session(self, session_id: str):
        with self._sessions_lock:
            self._smoothers.pop(session_id, None)

    @property
    def active_sessions(self) -> int:
        return len(self._smoothers)

    def verify(
        self,
        session_id: str,
        user_id: str,
        fix: PositionFix,
        target: GeofenceTarget,
        weather: Optional[str] = None,
    ) -> Verification:
        position = self.smoother_for(session_id).update(fix)
        anomaly = self.detector.detect_spoofing(user_id, fix)

        if fix.is_valid():
            hour, day_of_week = time_context(fix.timestamp)
            config = self.learner.get_optimized_threshold(
                ThresholdContext(store_id=target.id, hour=hour, day_of_week=day_of_week, weather=weather)
            )
        else:
            config = self.learner.get_current_config()
        validation = validate(position, target, config, self.locale)

        logger.info(
            "Verified user=%s target=%s status=%s confidence=%d anomaly=%d (%s)",
            user_id, target.id, validation.status, position.confidence, anomaly.score, anomaly.severity,
        )
        return Verification(
            session_id=session_id,
            user_id=user_id,
            target_id=target.id,
            position=position,
            validation=validation,
            anomaly=anomaly,
        )

    def record_outcome(self, verification: Verification, success: bool, weather: Optional[str] = None):
        if not verification.position.is_valid():
            logger.debug("Skipping outcome for malformed position (user=%s)", verification.user_id)
            return
        record = ValidationRecord.from_outcome(
            verification.position, verification.target_id, success, weather=weather,
        )
        self.learner.record_validation(record)


def build_verifier(
    db: Session | None = None,
    session_factory: sessionmaker | None = None,
    locale: str = "en",
) -> TrustVerifier:
    """Create a verifier from Config-table tunables.

    With a session factory, fraud state and store patterns live in the
    database; otherwise everything is held in memory.
    """
    tunables = load_tunables(db)
    history_size = tunables["fraud_history_size"]

    if session_factory is not None:
        detector = FraudDetector(
            history_store=SqlHistoryStore(session_factory, capacity=history_size),
            flag_store=SqlUserFlagStore(session_factory),
        )
        pattern_store = SqlPatternStore(session_factory)
    else:
        detector = FraudDetector(history_size=history_size)
        pattern_store = None

    learner = ThresholdLearner(
        pattern_store=pattern_store,
        min_data_points=tunables["learner_min_data_points"],
        learning_rate=tunables["learner_learning_rate"],
        optimize_every=tunables["learner_optimize_every"],
    )
    logger.info("Built trust verifier (persistent=%s)", session_factory is not None)
    return TrustVerifier(
        detector=detector,
        learner=learner,
        max_gap_s=tunables["smoother_max_gap_s"],
        locale=locale,
    )
